from datetime import timedelta

from .config import (
    EMERGENCY_CANDIDATES,
    EMERGENCY_LOCK_TIMEOUT_SECONDS,
    EMERGENCY_MAX_DISTANCE_KM,
    EMERGENCY_REQUIRE_VERIFIED,
    SERVICE_NAME,
)
from .errors import NoProviderAvailable, ProviderLocked
from .geo import ServiceLocation
from .lifecycle import compute_amount, get_customer, new_booking_id, validate_booking_request
from .models import EmergencyBooking, PENDING, utcnow
from .notifier import booking_payload


class DispatchEngine:
    """
    Emergency matching: nearest qualified provider first, reserved before
    the booking becomes visible.

    With candidates=1 a lost race on the nearest provider is reported to the
    caller as ProviderLocked. With candidates>1 the engine walks down the
    ranked list and only gives up once every candidate was taken.
    """

    def __init__(
        self,
        geo_index,
        ledger,
        notifier,
        max_distance_km: float = EMERGENCY_MAX_DISTANCE_KM,
        lock_timeout: timedelta = timedelta(seconds=EMERGENCY_LOCK_TIMEOUT_SECONDS),
        candidates: int = EMERGENCY_CANDIDATES,
        require_verified: bool = EMERGENCY_REQUIRE_VERIFIED,
        clock=utcnow,
    ):
        self.geo_index = geo_index
        self.ledger = ledger
        self.notifier = notifier
        self.max_distance_km = max_distance_km
        self.lock_timeout = lock_timeout
        self.candidates = max(1, candidates)
        self.require_verified = require_verified
        self.clock = clock

    async def create_emergency_booking(
        self,
        session,
        customer_id: str,
        service: str,
        location: ServiceLocation,
        estimated_duration: int,
        notes: str | None = None,
    ) -> EmergencyBooking:
        validate_booking_request(service, location, estimated_duration, notes)
        await get_customer(session, customer_id)

        candidates = await self.geo_index.find_candidates(
            session,
            location.point,
            max_distance_m=self.max_distance_km * 1000,
            service_tag=service,
            require_available=True,
            require_verified=self.require_verified,
            limit=self.candidates,
        )
        if not candidates:
            raise NoProviderAvailable()

        for candidate in candidates:
            booking = EmergencyBooking(
                booking_id=new_booking_id(),
                customer_id=customer_id,
                provider_id=candidate.provider_id,
                service=service.strip(),
                status=PENDING,
                longitude=location.longitude,
                latitude=location.latitude,
                address=location.address.strip(),
                scheduled_at=self.clock(),
                estimated_duration=estimated_duration,
                total_amount=compute_amount(candidate.hourly_rate, estimated_duration),
                payment_status="pending",
                notes=notes,
            )

            if not await self.ledger.acquire(session, booking, self.lock_timeout):
                continue

            try:
                await session.refresh(booking)
                booking = await self.ledger.attach(session, booking)
            except Exception:
                # never leave a reservation behind a booking nobody was told about
                await self._release_after_failure(session, booking.booking_id)
                raise

            await self.notifier.booking_status_changed(
                booking.booking_id, PENDING, booking_payload(booking)
            )
            await self.notifier.provider_assigned(booking.booking_id, candidate.provider_id)
            return booking

        raise ProviderLocked(candidates[-1].provider_id)

    async def _release_after_failure(self, session, booking_id: str):
        try:
            await session.rollback()
            await self.ledger.release(session, booking_id)
            await session.commit()
        except Exception as e:
            await session.rollback()
            print(f"[{SERVICE_NAME}] could not release reservation for {booking_id}: {e}")
