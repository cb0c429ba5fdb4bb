from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)

from shared.database import Base

# Booking statuses
PENDING = "pending"
ACCEPTED = "accepted"
STARTED = "started"
COMPLETED = "completed"
CANCELLED = "cancelled"
DISPUTED = "disputed"

BOOKING_STATUSES = (PENDING, ACCEPTED, STARTED, COMPLETED, CANCELLED, DISPUTED)
TERMINAL_STATUSES = frozenset({COMPLETED, CANCELLED, DISPUTED})
PAYMENT_STATUSES = ("pending", "paid", "refunded")

MIN_DURATION_MINUTES = 15
MAX_NOTES_LENGTH = 1000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True)
    customer_id = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, unique=True, nullable=False)
    full_name = Column(String, nullable=True)


class Provider(Base):
    __tablename__ = "providers"

    id = Column(Integer, primary_key=True)
    provider_id = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, unique=True, nullable=False)
    services = Column(JSON, nullable=False)
    hourly_rate = Column(Float, nullable=False)
    is_verified = Column(Boolean, nullable=False, default=False)
    # the provider's own toggle; reservations are layered on top (see locks.py)
    is_available = Column(Boolean, nullable=False, default=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    location_updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_providers_verified_available", "is_verified", "is_available"),
        Index("ix_providers_lat_lon", "latitude", "longitude"),
        CheckConstraint("hourly_rate >= 0", name="ck_providers_hourly_rate"),
    )


class ProviderLock(Base):
    """
    One reservation slot per provider. booking_id NULL means the slot is free.
    """

    __tablename__ = "provider_locks"

    provider_id = Column(String, ForeignKey("providers.provider_id", ondelete="CASCADE"), primary_key=True)
    booking_id = Column(String, nullable=True, unique=True)
    locked_until = Column(DateTime(timezone=True), nullable=True, index=True)
    acquired_at = Column(DateTime(timezone=True), nullable=True)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, unique=True, nullable=False, index=True)
    kind = Column(String(16), nullable=False)

    customer_id = Column(String, nullable=False, index=True)
    provider_id = Column(String, nullable=False, index=True)
    service = Column(String, nullable=False)

    status = Column(String, nullable=False, default=PENDING, index=True)

    longitude = Column(Float, nullable=False)
    latitude = Column(Float, nullable=False)
    address = Column(String, nullable=False)

    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    estimated_duration = Column(Integer, nullable=False)
    actual_duration = Column(Integer, nullable=True)
    total_amount = Column(Float, nullable=False)
    payment_status = Column(String, nullable=False, default="pending")
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_bookings_provider_status", "provider_id", "status"),
        CheckConstraint("estimated_duration >= 15", name="ck_bookings_min_duration"),
        CheckConstraint("total_amount >= 0", name="ck_bookings_amount"),
    )

    __mapper_args__ = {"polymorphic_on": kind}

    emergency = False

    @property
    def is_locked(self) -> bool:
        return False

    @property
    def locked_until(self) -> datetime | None:
        return None


class NormalBooking(Booking):
    __mapper_args__ = {"polymorphic_identity": "normal"}


class EmergencyBooking(Booking):
    __mapper_args__ = {"polymorphic_identity": "emergency"}

    emergency = True

    # Filled by LockLedger.attach(); not a column.
    reservation = None

    @property
    def is_locked(self) -> bool:
        return self.reservation is not None and not self.reservation.engaged

    @property
    def locked_until(self) -> datetime | None:
        if self.reservation is None:
            return None
        return self.reservation.locked_until
