import uuid
from datetime import datetime

from sqlalchemy import select

from shared.database import atomic_update_if

from .errors import Forbidden, InvalidRequest, InvalidTransition, NotFound
from .geo import ServiceLocation
from .models import (
    ACCEPTED,
    Booking,
    CANCELLED,
    COMPLETED,
    Customer,
    DISPUTED,
    MAX_NOTES_LENGTH,
    MIN_DURATION_MINUTES,
    NormalBooking,
    PENDING,
    Provider,
    STARTED,
    TERMINAL_STATUSES,
    utcnow,
)
from .notifier import booking_payload

BOOKING_TRANSITIONS = {
    PENDING: {ACCEPTED, CANCELLED, DISPUTED},
    ACCEPTED: {STARTED, CANCELLED, DISPUTED},
    STARTED: {COMPLETED, DISPUTED},
    COMPLETED: set(),
    CANCELLED: set(),
    DISPUTED: set(),
}


def new_booking_id() -> str:
    return str(uuid.uuid4())


def compute_amount(hourly_rate: float, duration_minutes: int) -> float:
    return (hourly_rate * duration_minutes) / 60


def is_admin(roles) -> bool:
    return "admin" in {(r or "").strip().lower() for r in (roles or [])}


def validate_booking_request(service: str, location: ServiceLocation, estimated_duration: int, notes: str | None):
    if not (service or "").strip():
        raise InvalidRequest("Service is required")
    if not (-180 <= location.longitude <= 180) or not (-90 <= location.latitude <= 90):
        raise InvalidRequest("Location coordinates are out of range")
    if not (location.address or "").strip():
        raise InvalidRequest("Address is required")
    if estimated_duration is None or estimated_duration < MIN_DURATION_MINUTES:
        raise InvalidRequest(f"Minimum duration is {MIN_DURATION_MINUTES} minutes")
    if notes and len(notes) > MAX_NOTES_LENGTH:
        raise InvalidRequest(f"Notes cannot exceed {MAX_NOTES_LENGTH} characters")


async def get_customer(session, customer_id: str) -> Customer:
    res = await session.execute(select(Customer).where(Customer.customer_id == customer_id))
    customer = res.scalar_one_or_none()
    if not customer:
        raise NotFound("Customer not found")
    return customer


async def get_provider(session, provider_id: str) -> Provider:
    res = await session.execute(select(Provider).where(Provider.provider_id == provider_id))
    provider = res.scalar_one_or_none()
    if not provider:
        raise NotFound("Provider not found")
    return provider


class LifecycleController:
    """
    Booking state machine shared by normal and emergency bookings:

        pending -> accepted -> started -> completed
        pending | accepted -> cancelled
        pending | accepted | started -> disputed (admin)

    Every transition is a conditional UPDATE on (booking_id, current status),
    so two racing callers cannot both move the same booking. Accepting an
    emergency booking turns its timed hold into an engagement, which keeps
    the provider out of dispatch until the booking reaches a terminal
    status. That frees the provider in the same transaction.
    """

    def __init__(self, ledger, notifier, clock=utcnow):
        self.ledger = ledger
        self.notifier = notifier
        self.clock = clock

    async def get_booking(self, session, booking_id: str) -> Booking:
        res = await session.execute(
            select(Booking)
            .where(Booking.booking_id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = res.scalar_one_or_none()
        if not booking:
            raise NotFound("Booking not found")
        return await self.ledger.attach(session, booking)

    async def create_booking(
        self,
        session,
        customer_id: str,
        provider_id: str,
        service: str,
        location: ServiceLocation,
        estimated_duration: int,
        scheduled_at: datetime | None = None,
        notes: str | None = None,
    ) -> NormalBooking:
        validate_booking_request(service, location, estimated_duration, notes)
        await get_customer(session, customer_id)
        provider = await get_provider(session, provider_id)

        if not provider.is_available or await self.ledger.is_provider_held(session, provider_id):
            raise InvalidRequest("Provider is not available")
        if not provider.is_verified:
            raise InvalidRequest("Provider is not verified")

        booking = NormalBooking(
            booking_id=new_booking_id(),
            customer_id=customer_id,
            provider_id=provider_id,
            service=service.strip(),
            status=PENDING,
            longitude=location.longitude,
            latitude=location.latitude,
            address=location.address.strip(),
            scheduled_at=scheduled_at or self.clock(),
            estimated_duration=estimated_duration,
            total_amount=compute_amount(provider.hourly_rate, estimated_duration),
            payment_status="pending",
            notes=notes,
        )
        session.add(booking)
        try:
            await session.commit()
            await session.refresh(booking)
        except Exception:
            await session.rollback()
            raise

        await self.notifier.booking_status_changed(booking.booking_id, PENDING, booking_payload(booking))
        await self.notifier.provider_assigned(booking.booking_id, provider_id)
        return booking

    async def accept_booking(self, session, booking_id: str, actor_id: str, roles=()) -> Booking:
        booking = await self.get_booking(session, booking_id)
        self._require_assigned_provider(booking, actor_id, "accept")
        return await self._apply(session, booking, ACCEPTED, {})

    async def start_booking(self, session, booking_id: str, actor_id: str, roles=()) -> Booking:
        booking = await self.get_booking(session, booking_id)
        self._require_assigned_provider(booking, actor_id, "start")
        return await self._apply(session, booking, STARTED, {"started_at": self.clock()})

    async def complete_booking(
        self,
        session,
        booking_id: str,
        actor_id: str,
        roles=(),
        actual_duration: int | None = None,
    ) -> Booking:
        booking = await self.get_booking(session, booking_id)
        self._require_assigned_provider(booking, actor_id, "complete")

        values = {"completed_at": self.clock()}
        if actual_duration is not None:
            if actual_duration <= 0:
                raise InvalidRequest("Actual duration must be positive")
            values["actual_duration"] = actual_duration
            # priced at the provider's rate as of completion
            res = await session.execute(select(Provider).where(Provider.provider_id == booking.provider_id))
            provider = res.scalar_one_or_none()
            if provider:
                values["total_amount"] = compute_amount(provider.hourly_rate, actual_duration)

        return await self._apply(session, booking, COMPLETED, values)

    async def cancel_booking(self, session, booking_id: str, actor_id: str, roles=()) -> Booking:
        booking = await self.get_booking(session, booking_id)
        if actor_id not in (booking.customer_id, booking.provider_id) and not is_admin(roles):
            raise Forbidden("You are not authorized to cancel this booking")
        return await self._apply(session, booking, CANCELLED, {})

    async def dispute_booking(
        self,
        session,
        booking_id: str,
        actor_id: str,
        roles=(),
        resolution: str = "",
        refund_amount: float | None = None,
    ) -> Booking:
        booking = await self.get_booking(session, booking_id)
        if not is_admin(roles):
            raise Forbidden("Only an admin can open a dispute")

        values = {}
        if resolution:
            values["notes"] = f"{booking.notes or ''}\n\nDispute Resolution: {resolution}"
        if refund_amount:
            if refund_amount < 0:
                raise InvalidRequest("Refund amount cannot be negative")
            values["payment_status"] = "refunded"
            values["total_amount"] = max(booking.total_amount - refund_amount, 0.0)

        return await self._apply(session, booking, DISPUTED, values)

    async def release_lock(self, session, booking_id: str) -> Booking:
        booking = await self.get_booking(session, booking_id)
        try:
            released = await self.ledger.release(session, booking_id)
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        if released:
            await self.notifier.lock_released(booking_id, released.provider_id, "manual")
        return await self.get_booking(session, booking_id)

    @staticmethod
    def _require_assigned_provider(booking: Booking, actor_id: str, action: str):
        if booking.provider_id != actor_id:
            raise Forbidden(f"You are not authorized to {action} this booking")

    async def _apply(self, session, booking: Booking, requested: str, values: dict) -> Booking:
        current = booking.status
        if requested not in BOOKING_TRANSITIONS.get(current, set()):
            raise InvalidTransition(current, requested)

        booking_id = booking.booking_id
        released = None
        try:
            applied = await atomic_update_if(
                session,
                Booking,
                [Booking.booking_id == booking_id, Booking.status == current],
                {**values, "status": requested, "updated_at": self.clock()},
            )
            if applied and requested == ACCEPTED:
                released = await self.ledger.engage(session, booking)
            elif applied and requested in TERMINAL_STATUSES:
                released = await self.ledger.release(session, booking_id)

            if applied:
                await session.commit()
            else:
                await session.rollback()
        except Exception:
            await session.rollback()
            raise

        if not applied:
            # someone else moved it first
            latest = await self.get_booking(session, booking_id)
            raise InvalidTransition(latest.status, requested)

        updated = await self.get_booking(session, booking_id)
        await self.notifier.booking_status_changed(booking_id, requested, booking_payload(updated))
        if released:
            await self.notifier.lock_released(booking_id, released.provider_id, requested)
        return updated
