import time

from fastapi import Depends, HTTPException

from .config import EMERGENCY_RATE_LIMIT_PER_MINUTE, SERVICE_NAME
from .redis_client import redis_client
from .security import Actor, get_current_actor


class EmergencyRateLimiter:
    """
    Fixed-window counter per customer, shared across instances through Redis.
    Disabled when no Redis client is configured.
    """

    def __init__(self, client, max_per_minute: int = EMERGENCY_RATE_LIMIT_PER_MINUTE):
        self.client = client
        self.max_per_minute = max_per_minute

    async def hit(self, identity: str) -> bool:
        if self.client is None:
            return True

        epoch_minute = int(time.time() // 60)
        key = f"rl:emergency:{identity}:{epoch_minute}"

        try:
            count = await self.client.incr(key)
            if count == 1:
                await self.client.expire(key, 70)
        except Exception as e:
            # availability of dispatch beats strict limiting
            print(f"[{SERVICE_NAME}] rate limiter unavailable: {e}")
            return True

        return count <= self.max_per_minute


emergency_limiter = EmergencyRateLimiter(redis_client)


async def limit_emergency_requests(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not await emergency_limiter.hit(actor.sub):
        raise HTTPException(
            status_code=429,
            detail="Too many emergency booking requests, please try again later.",
        )
    return actor
