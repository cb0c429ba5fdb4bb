from .config import SERVICE_NAME
from .events import (
    BOOKING_PROVIDER_ASSIGNED,
    BOOKING_STATUS_CHANGED,
    LOCK_EXPIRED,
    LOCK_RELEASED,
    build_event,
    to_json,
)


def booking_payload(booking) -> dict:
    return {
        "booking_id": booking.booking_id,
        "status": booking.status,
        "emergency": booking.emergency,
        "customer_id": booking.customer_id,
        "provider_id": booking.provider_id,
        "service": booking.service,
        "total_amount": booking.total_amount,
        "is_locked": booking.is_locked,
        "locked_until": booking.locked_until.isoformat() if booking.locked_until else None,
    }


class Notifier:
    """
    Publishes booking and reservation events after the state change has
    been committed. Delivery is best effort: nothing here ever raises back
    into the booking flow.
    """

    def __init__(self, publisher):
        self.publisher = publisher

    async def _emit(self, event_type: str, data: dict):
        try:
            await self.publisher.publish(event_type, to_json(build_event(event_type, data)))
        except Exception as e:
            print(f"[{SERVICE_NAME}] dropping {event_type} event: {e}")

    async def booking_status_changed(self, booking_id: str, status: str, payload: dict | None = None):
        data = dict(payload or {})
        data.update({"booking_id": booking_id, "status": status})
        await self._emit(BOOKING_STATUS_CHANGED, data)

    async def provider_assigned(self, booking_id: str, provider_id: str):
        await self._emit(BOOKING_PROVIDER_ASSIGNED, {"booking_id": booking_id, "provider_id": provider_id})

    async def lock_released(self, booking_id: str, provider_id: str, reason: str):
        await self._emit(LOCK_RELEASED, {"booking_id": booking_id, "provider_id": provider_id, "reason": reason})

    async def lock_expired(self, booking_id: str, provider_id: str):
        await self._emit(LOCK_EXPIRED, {"booking_id": booking_id, "provider_id": provider_id})
