"""
Provider reservations for emergency dispatch.

Each provider owns exactly one row in provider_locks (the provider id is
the primary key). The row is in one of three states:

    free      booking_id NULL
    reserved  booking_id set, locked_until set (a timed hold on a pending booking)
    engaged   booking_id set, locked_until NULL (the provider accepted the job)

Claiming it is a conditional UPDATE whose predicate reads only that row,
so two dispatchers racing for the same provider are serialized by the
row lock, not by this process.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from shared.database import atomic_update_if

from .models import ProviderLock, as_utc, utcnow


@dataclass(frozen=True)
class Reservation:
    provider_id: str
    booking_id: str
    # None once the provider has accepted the job
    locked_until: datetime | None
    acquired_at: datetime | None = None

    @property
    def engaged(self) -> bool:
        return self.locked_until is None


def is_held(now: datetime):
    """SQL predicate: the row keeps its provider out of dispatch right now."""
    return and_(
        ProviderLock.booking_id.is_not(None),
        or_(ProviderLock.locked_until.is_(None), ProviderLock.locked_until > now),
    )


def is_claimable(now: datetime):
    """SQL predicate: free, or a timed hold that has lapsed."""
    return or_(
        ProviderLock.booking_id.is_(None),
        and_(ProviderLock.locked_until.is_not(None), ProviderLock.locked_until <= now),
    )


def held_provider_ids(now: datetime):
    return select(ProviderLock.provider_id).where(is_held(now))


def _insert_ignore(session, provider_id: str):
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(ProviderLock)
    elif dialect == "sqlite":
        stmt = sqlite_insert(ProviderLock)
    else:
        raise RuntimeError(f"Unsupported database dialect for provider locks: {dialect}")
    return stmt.values(provider_id=provider_id).on_conflict_do_nothing(index_elements=["provider_id"])


class LockLedger:
    def __init__(self, clock=utcnow):
        self.clock = clock

    async def acquire(self, session, booking, timeout: timedelta) -> bool:
        """
        Persist `booking` and reserve its provider in one transaction.

        Returns False (after rolling back) if another booking holds the
        provider, either by an unexpired hold or as an accepted job.
        Nothing is written in that case.
        """
        now = self.clock()
        locked_until = now + timeout
        try:
            await session.execute(_insert_ignore(session, booking.provider_id))

            session.add(booking)
            await session.flush()

            claimed = await atomic_update_if(
                session,
                ProviderLock,
                [ProviderLock.provider_id == booking.provider_id, is_claimable(now)],
                {"booking_id": booking.booking_id, "locked_until": locked_until, "acquired_at": now},
            )
            if not claimed:
                await session.rollback()
                return False

            await session.commit()
        except Exception:
            await session.rollback()
            raise

        booking.reservation = Reservation(
            provider_id=booking.provider_id,
            booking_id=booking.booking_id,
            locked_until=locked_until,
            acquired_at=now,
        )
        return True

    async def release(self, session, booking_id: str) -> Reservation | None:
        """
        Free whatever hold or engagement `booking_id` has. No-op if it has none.
        Runs inside the caller's transaction; the caller commits.
        """
        held = await self.reservation_for(session, booking_id)
        if held is None:
            return None

        released = await atomic_update_if(
            session,
            ProviderLock,
            [ProviderLock.provider_id == held.provider_id, ProviderLock.booking_id == booking_id],
            {"booking_id": None, "locked_until": None, "acquired_at": None},
        )
        return held if released else None

    async def engage(self, session, booking) -> Reservation | None:
        """
        Keep an accepted emergency job's provider out of dispatch until the
        booking finishes: the timed hold becomes an engagement with no expiry.
        Returns the hold it replaced when that hold was still this booking's.
        Runs inside the caller's transaction; the caller commits.
        """
        if not booking.emergency:
            return None

        previous = await self.reservation_for(session, booking.booking_id)
        now = self.clock()
        await session.execute(_insert_ignore(session, booking.provider_id))

        engaged = await atomic_update_if(
            session,
            ProviderLock,
            [
                ProviderLock.provider_id == booking.provider_id,
                or_(ProviderLock.booking_id == booking.booking_id, is_claimable(now)),
            ],
            {
                "booking_id": booking.booking_id,
                "locked_until": None,
                "acquired_at": previous.acquired_at if previous else now,
            },
        )
        if not engaged or previous is None or previous.engaged:
            return None
        return previous

    async def expire(self, session) -> list[Reservation]:
        """
        Free every timed hold whose locked_until has passed. Engagements never
        expire. Each row is cleared only if it still matches the expiry
        predicate at write time.
        """
        now = self.clock()
        res = await session.execute(
            select(ProviderLock).where(
                ProviderLock.booking_id.is_not(None),
                ProviderLock.locked_until < now,
            )
        )
        expired = [self._to_reservation(row) for row in res.scalars().all()]

        released = []
        for reservation in expired:
            ok = await atomic_update_if(
                session,
                ProviderLock,
                [
                    ProviderLock.provider_id == reservation.provider_id,
                    ProviderLock.booking_id == reservation.booking_id,
                    ProviderLock.locked_until < now,
                ],
                {"booking_id": None, "locked_until": None, "acquired_at": None},
            )
            if ok:
                released.append(reservation)

        await session.commit()
        return released

    async def reservation_for(self, session, booking_id: str) -> Reservation | None:
        res = await session.execute(
            select(ProviderLock)
            .where(ProviderLock.booking_id == booking_id)
            .execution_options(populate_existing=True)
        )
        row = res.scalar_one_or_none()
        return self._to_reservation(row) if row else None

    async def attach(self, session, booking):
        if booking is not None and booking.emergency:
            booking.reservation = await self.reservation_for(session, booking.booking_id)
        return booking

    async def is_provider_held(self, session, provider_id: str) -> bool:
        res = await session.execute(
            select(ProviderLock.provider_id).where(
                ProviderLock.provider_id == provider_id,
                is_held(self.clock()),
            )
        )
        return res.first() is not None

    @staticmethod
    def _to_reservation(row: ProviderLock) -> Reservation:
        return Reservation(
            provider_id=row.provider_id,
            booking_id=row.booking_id,
            locked_until=as_utc(row.locked_until),
            acquired_at=as_utc(row.acquired_at),
        )
