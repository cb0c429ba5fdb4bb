import os

SERVICE_NAME = "dispatch-service"


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    try:
        value = float(raw) if raw else default
    except ValueError:
        return default
    return value if value > 0 else default


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    try:
        value = int(raw) if raw else default
    except ValueError:
        return default
    return value if value > 0 else default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


DATABASE_URL = os.getenv("DISPATCH_DB")
SQL_ECHO = _bool_env("SQL_ECHO", False)

RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events
REDIS_URL = os.getenv("REDIS_URL")  # optional; emergency rate limiting is off without it

# ---- Emergency dispatch ----
EMERGENCY_MAX_DISTANCE_KM = _float_env("EMERGENCY_MAX_DISTANCE_KM", 50.0)
EMERGENCY_LOCK_TIMEOUT_SECONDS = _int_env("EMERGENCY_LOCK_TIMEOUT_SECONDS", 300)  # 5 minutes
EMERGENCY_CANDIDATES = _int_env("EMERGENCY_CANDIDATES", 1)
EMERGENCY_REQUIRE_VERIFIED = _bool_env("EMERGENCY_REQUIRE_VERIFIED", True)
EMERGENCY_RATE_LIMIT_PER_MINUTE = _int_env("EMERGENCY_RATE_LIMIT_PER_MINUTE", 3)

# ---- Lock reaper ----
LOCK_REAPER_INTERVAL_SECONDS = _float_env("LOCK_REAPER_INTERVAL_SECONDS", 300.0)
