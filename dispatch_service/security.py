import json
from dataclasses import dataclass, field

from fastapi import Header, HTTPException, status


@dataclass(frozen=True)
class Actor:
    sub: str
    roles: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


def _parse_roles(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        roles = json.loads(raw)
    except ValueError:
        roles = raw.split(",")
    if isinstance(roles, str):
        roles = [roles]
    if not isinstance(roles, list):
        return []
    return [str(r).strip().lower() for r in roles if str(r).strip()]


def get_current_actor(
    x_user_sub: str | None = Header(default=None),
    x_user_roles: str | None = Header(default=None),
) -> Actor:
    """
    Identity forwarded by the gateway after it verified the bearer token.
    """
    if not x_user_sub:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Sub header",
        )
    return Actor(sub=x_user_sub, roles=_parse_roles(x_user_roles))


def require_role(actor: Actor, allowed_roles: list[str]):
    allowed = {r.lower() for r in allowed_roles}
    if not actor.roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Roles missing in token",
        )
    if allowed.isdisjoint(actor.roles):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access forbidden for this role",
        )
