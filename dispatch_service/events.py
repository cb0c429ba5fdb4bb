import json
import uuid
from datetime import datetime, timezone

BOOKING_STATUS_CHANGED = "booking.status_changed"
BOOKING_PROVIDER_ASSIGNED = "booking.provider_assigned"
LOCK_RELEASED = "lock.released"
LOCK_EXPIRED = "lock.expired"

def build_event(event_type: str, data: dict) -> dict:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }

def to_json(event: dict) -> str:
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=str)
