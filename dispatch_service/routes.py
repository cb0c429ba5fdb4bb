from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import EMERGENCY_MAX_DISTANCE_KM
from .db import SessionLocal
from .dispatch import DispatchEngine
from .geo import GeoIndex, GeoPoint
from .lifecycle import LifecycleController
from .locks import LockLedger
from .models import Customer, Provider
from .notifier import Notifier
from .rate_limit import limit_emergency_requests
from .reaper import run_lock_reaper_sweep
from .schemas import (
    BookingResponse,
    CompleteBookingRequest,
    CreateBookingRequest,
    CreateCustomer,
    CreateProvider,
    DisputeBookingRequest,
    EmergencyBookingRequest,
    NearbyProvider,
    ProviderResponse,
    SweepResponse,
    UpdateAvailability,
    UpdateLocation,
    booking_response,
)
from .security import Actor, get_current_actor, require_role
from .services import get_dispatcher, get_geo_index, get_ledger, get_lifecycle, get_notifier

router = APIRouter()


async def get_db():
    async with SessionLocal() as session:
        yield session


async def _get_provider_or_404(db: AsyncSession, provider_id: str) -> Provider:
    result = await db.execute(select(Provider).where(Provider.provider_id == provider_id))
    provider = result.scalar_one_or_none()

    if not provider:
        raise HTTPException(status_code=404, detail="Provider not found")
    return provider


async def _provider_response(db: AsyncSession, provider: Provider, ledger: LockLedger) -> ProviderResponse:
    held = await ledger.is_provider_held(db, provider.provider_id)
    return ProviderResponse(
        provider_id=provider.provider_id,
        email=provider.email,
        services=provider.services,
        hourly_rate=provider.hourly_rate,
        is_verified=provider.is_verified,
        is_available=bool(provider.is_available) and not held,
        latitude=provider.latitude,
        longitude=provider.longitude,
    )


def _require_self_or_admin(actor: Actor, provider_id: str):
    if actor.sub != provider_id and not actor.is_admin:
        raise HTTPException(status_code=403, detail="Access forbidden for this provider")


# ================= CUSTOMERS =================

@router.post("/customers", status_code=201)
async def create_customer(data: CreateCustomer, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Customer).where(Customer.customer_id == data.customer_id))
    if result.scalar_one_or_none():
        raise HTTPException(status_code=400, detail="Customer already exists")

    db.add(Customer(customer_id=data.customer_id, email=data.email, full_name=data.full_name))
    await db.commit()

    return {"message": "Customer created"}


# ================= PROVIDERS =================

@router.post("/providers", status_code=201)
async def create_provider(data: CreateProvider, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Provider).where(Provider.provider_id == data.provider_id))
    if result.scalar_one_or_none():
        raise HTTPException(status_code=400, detail="Provider already exists")

    has_location = data.latitude is not None and data.longitude is not None
    provider = Provider(
        provider_id=data.provider_id,
        email=data.email,
        services=data.services,
        hourly_rate=data.hourly_rate,
        is_verified=data.is_verified,
        is_available=data.is_available,
        latitude=data.latitude,
        longitude=data.longitude,
        location_updated_at=datetime.now(timezone.utc) if has_location else None,
    )
    db.add(provider)
    await db.commit()

    return {"message": "Provider created"}


@router.get("/providers/nearby", response_model=list[NearbyProvider])
async def nearby_providers(
    lat: float = Query(ge=-90, le=90),
    lng: float = Query(ge=-180, le=180),
    service: str | None = None,
    radius_km: float = Query(default=EMERGENCY_MAX_DISTANCE_KM, gt=0),
    verified_only: bool = False,
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    geo_index: GeoIndex = Depends(get_geo_index),
):
    candidates = await geo_index.find_candidates(
        db,
        GeoPoint(longitude=lng, latitude=lat),
        max_distance_m=radius_km * 1000,
        service_tag=service,
        require_available=True,
        require_verified=verified_only,
        limit=limit,
    )
    return [
        NearbyProvider(
            provider_id=c.provider_id,
            email=c.email,
            hourly_rate=c.hourly_rate,
            distance_km=round(c.distance_km, 2),
            latitude=c.latitude,
            longitude=c.longitude,
        )
        for c in candidates
    ]


@router.get("/providers/{provider_id}", response_model=ProviderResponse)
async def get_provider(
    provider_id: str,
    db: AsyncSession = Depends(get_db),
    ledger: LockLedger = Depends(get_ledger),
):
    provider = await _get_provider_or_404(db, provider_id)
    return await _provider_response(db, provider, ledger)


@router.put("/providers/{provider_id}/location", response_model=ProviderResponse)
async def update_provider_location(
    provider_id: str,
    data: UpdateLocation,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    ledger: LockLedger = Depends(get_ledger),
):
    _require_self_or_admin(actor, provider_id)
    provider = await _get_provider_or_404(db, provider_id)

    provider.latitude = data.latitude
    provider.longitude = data.longitude
    provider.location_updated_at = datetime.now(timezone.utc)
    await db.commit()

    return await _provider_response(db, provider, ledger)


@router.put("/providers/{provider_id}/availability", response_model=ProviderResponse)
async def update_provider_availability(
    provider_id: str,
    data: UpdateAvailability,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    ledger: LockLedger = Depends(get_ledger),
):
    _require_self_or_admin(actor, provider_id)
    provider = await _get_provider_or_404(db, provider_id)

    provider.is_available = data.is_available
    await db.commit()

    return await _provider_response(db, provider, ledger)


# ================= BOOKINGS =================

@router.post("/bookings", response_model=BookingResponse, status_code=201)
async def create_booking(
    data: CreateBookingRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    lifecycle: LifecycleController = Depends(get_lifecycle),
):
    booking = await lifecycle.create_booking(
        db,
        customer_id=actor.sub,
        provider_id=data.provider_id,
        service=data.service,
        location=data.location.to_service_location(),
        estimated_duration=data.estimated_duration,
        scheduled_at=data.scheduled_at,
        notes=data.notes,
    )
    return booking_response(booking)


@router.post("/bookings/emergency", response_model=BookingResponse, status_code=201)
async def create_emergency_booking(
    data: EmergencyBookingRequest,
    actor: Actor = Depends(limit_emergency_requests),
    db: AsyncSession = Depends(get_db),
    dispatcher: DispatchEngine = Depends(get_dispatcher),
):
    booking = await dispatcher.create_emergency_booking(
        db,
        customer_id=actor.sub,
        service=data.service,
        location=data.location.to_service_location(),
        estimated_duration=data.estimated_duration,
        notes=data.notes,
    )
    return booking_response(booking)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    lifecycle: LifecycleController = Depends(get_lifecycle),
):
    booking = await lifecycle.get_booking(db, booking_id)
    if actor.sub not in (booking.customer_id, booking.provider_id) and not actor.is_admin:
        raise HTTPException(status_code=403, detail="Access forbidden for this booking")
    return booking_response(booking)


@router.post("/bookings/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    lifecycle: LifecycleController = Depends(get_lifecycle),
):
    booking = await lifecycle.accept_booking(db, booking_id, actor.sub, actor.roles)
    return booking_response(booking)


@router.post("/bookings/{booking_id}/start", response_model=BookingResponse)
async def start_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    lifecycle: LifecycleController = Depends(get_lifecycle),
):
    booking = await lifecycle.start_booking(db, booking_id, actor.sub, actor.roles)
    return booking_response(booking)


@router.post("/bookings/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: str,
    data: CompleteBookingRequest | None = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    lifecycle: LifecycleController = Depends(get_lifecycle),
):
    booking = await lifecycle.complete_booking(
        db,
        booking_id,
        actor.sub,
        actor.roles,
        actual_duration=data.actual_duration if data else None,
    )
    return booking_response(booking)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    lifecycle: LifecycleController = Depends(get_lifecycle),
):
    booking = await lifecycle.cancel_booking(db, booking_id, actor.sub, actor.roles)
    return booking_response(booking)


@router.post("/bookings/{booking_id}/dispute", response_model=BookingResponse)
async def dispute_booking(
    booking_id: str,
    data: DisputeBookingRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    lifecycle: LifecycleController = Depends(get_lifecycle),
):
    require_role(actor, ["admin"])
    booking = await lifecycle.dispute_booking(
        db,
        booking_id,
        actor.sub,
        actor.roles,
        resolution=data.resolution,
        refund_amount=data.refund_amount,
    )
    return booking_response(booking)


@router.post("/bookings/{booking_id}/release-lock", response_model=BookingResponse)
async def release_booking_lock(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    lifecycle: LifecycleController = Depends(get_lifecycle),
):
    require_role(actor, ["admin"])
    booking = await lifecycle.release_lock(db, booking_id)
    return booking_response(booking)


# ================= LOCKS =================

@router.post("/locks/sweep", response_model=SweepResponse)
async def sweep_expired_locks(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    ledger: LockLedger = Depends(get_ledger),
    notifier: Notifier = Depends(get_notifier),
):
    require_role(actor, ["admin"])
    released = await run_lock_reaper_sweep(db, ledger, notifier)
    return SweepResponse(released=released)
