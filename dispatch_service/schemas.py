from datetime import datetime
from typing import List

from pydantic import BaseModel, Field

from .geo import ServiceLocation
from .models import MAX_NOTES_LENGTH, MIN_DURATION_MINUTES


class CreateCustomer(BaseModel):
    customer_id: str
    email: str
    full_name: str | None = None


class CreateProvider(BaseModel):
    provider_id: str
    email: str
    services: List[str]
    hourly_rate: float = Field(ge=0)
    is_verified: bool = False
    is_available: bool = True
    latitude: float | None = None
    longitude: float | None = None


class UpdateLocation(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class UpdateAvailability(BaseModel):
    is_available: bool


class ProviderResponse(BaseModel):
    provider_id: str
    email: str
    services: List[str]
    hourly_rate: float
    is_verified: bool
    is_available: bool
    latitude: float | None = None
    longitude: float | None = None


class NearbyProvider(BaseModel):
    provider_id: str
    email: str
    hourly_rate: float
    distance_km: float
    latitude: float
    longitude: float


class Location(BaseModel):
    # [longitude, latitude], the same order GeoJSON uses
    coordinates: List[float] = Field(min_length=2, max_length=2)
    address: str

    def to_service_location(self) -> ServiceLocation:
        longitude, latitude = self.coordinates
        return ServiceLocation(longitude=longitude, latitude=latitude, address=self.address)


class CreateBookingRequest(BaseModel):
    provider_id: str
    service: str
    location: Location
    estimated_duration: int = Field(ge=MIN_DURATION_MINUTES)
    scheduled_at: datetime | None = None
    notes: str | None = Field(default=None, max_length=MAX_NOTES_LENGTH)


class EmergencyBookingRequest(BaseModel):
    service: str
    location: Location
    estimated_duration: int = Field(ge=MIN_DURATION_MINUTES)
    notes: str | None = Field(default=None, max_length=MAX_NOTES_LENGTH)


class CompleteBookingRequest(BaseModel):
    actual_duration: int | None = Field(default=None, gt=0)


class DisputeBookingRequest(BaseModel):
    resolution: str
    refund_amount: float | None = Field(default=None, ge=0)


class BookingLocation(BaseModel):
    coordinates: List[float]
    address: str


class BookingResponse(BaseModel):
    booking_id: str
    customer_id: str
    provider_id: str
    service: str
    status: str
    location: BookingLocation
    scheduled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_duration: int
    actual_duration: int | None = None
    total_amount: float
    payment_status: str
    notes: str | None = None
    emergency: bool
    is_locked: bool
    locked_until: datetime | None = None


class SweepResponse(BaseModel):
    released: List[str]


def booking_response(booking) -> BookingResponse:
    return BookingResponse(
        booking_id=booking.booking_id,
        customer_id=booking.customer_id,
        provider_id=booking.provider_id,
        service=booking.service,
        status=booking.status,
        location=BookingLocation(
            coordinates=[booking.longitude, booking.latitude],
            address=booking.address,
        ),
        scheduled_at=booking.scheduled_at,
        started_at=booking.started_at,
        completed_at=booking.completed_at,
        estimated_duration=booking.estimated_duration,
        actual_duration=booking.actual_duration,
        total_amount=booking.total_amount,
        payment_status=booking.payment_status,
        notes=booking.notes,
        emergency=booking.emergency,
        is_locked=booking.is_locked,
        locked_until=booking.locked_until,
    )
