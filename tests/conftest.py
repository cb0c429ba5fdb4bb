import asyncio
import json
import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

_bootstrap_dir = tempfile.mkdtemp(prefix="dispatch-tests-")
os.environ["DISPATCH_DB"] = f"sqlite+aiosqlite:///{os.path.join(_bootstrap_dir, 'bootstrap.db')}"
os.environ.pop("RABBIT_URL", None)
os.environ.pop("REDIS_URL", None)

from sqlalchemy import select
from sqlalchemy.pool import NullPool

from shared.database import Base, get_engine, get_session

from dispatch_service.dispatch import DispatchEngine
from dispatch_service.geo import GeoIndex, ServiceLocation
from dispatch_service.lifecycle import LifecycleController
from dispatch_service.locks import LockLedger
from dispatch_service.models import Customer, EmergencyBooking, PENDING, Provider
from dispatch_service.notifier import Notifier


def run(coro):
    return asyncio.run(coro)


class FakeClock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingPublisher:
    enabled = True

    def __init__(self):
        self.events = []

    async def publish(self, routing_key: str, message_body: str):
        self.events.append((routing_key, json.loads(message_body)))

    def types(self):
        return [rk for rk, _ in self.events]

    def of_type(self, event_type):
        return [body["data"] for rk, body in self.events if rk == event_type]


class Stack:
    def __init__(self, session_factory, clock, publisher, candidates=1):
        self.session_factory = session_factory
        self.clock = clock
        self.publisher = publisher
        self.ledger = LockLedger(clock=clock)
        self.geo_index = GeoIndex(clock=clock)
        self.notifier = Notifier(publisher)
        self.lifecycle = LifecycleController(self.ledger, self.notifier, clock=clock)
        self.dispatcher = self.make_dispatcher(candidates=candidates)

    def make_dispatcher(self, **kwargs):
        kwargs.setdefault("clock", self.clock)
        kwargs.setdefault("lock_timeout", timedelta(minutes=5))
        kwargs.setdefault("max_distance_km", 50.0)
        return DispatchEngine(self.geo_index, self.ledger, self.notifier, **kwargs)

    async def add_customer(self, customer_id="cust-1"):
        async with self.session_factory() as session:
            session.add(Customer(customer_id=customer_id, email=f"{customer_id}@example.com", full_name=customer_id))
            await session.commit()

    async def add_provider(
        self,
        provider_id="prov-1",
        latitude=12.9716,
        longitude=77.5946,
        services=("Plumbing",),
        hourly_rate=600.0,
        is_verified=True,
        is_available=True,
    ):
        async with self.session_factory() as session:
            session.add(
                Provider(
                    provider_id=provider_id,
                    email=f"{provider_id}@example.com",
                    services=list(services),
                    hourly_rate=hourly_rate,
                    is_verified=is_verified,
                    is_available=is_available,
                    latitude=latitude,
                    longitude=longitude,
                )
            )
            await session.commit()

    async def emergency(self, customer_id="cust-1", service="Plumbing", location=None, duration=60, dispatcher=None):
        dispatcher = dispatcher or self.dispatcher
        async with self.session_factory() as session:
            return await dispatcher.create_emergency_booking(
                session,
                customer_id=customer_id,
                service=service,
                location=location or X,
                estimated_duration=duration,
                notes="Pipe burst under the sink",
            )

    async def call(self, method, *args, **kwargs):
        async with self.session_factory() as session:
            return await getattr(self.lifecycle, method)(session, *args, **kwargs)

    async def provider_available(self, provider_id="prov-1"):
        async with self.session_factory() as session:
            res = await session.execute(select(Provider).where(Provider.provider_id == provider_id))
            provider = res.scalar_one()
            held = await self.ledger.is_provider_held(session, provider_id)
            return bool(provider.is_available) and not held


# Bangalore MG Road
X = ServiceLocation(longitude=77.5946, latitude=12.9716, address="1 MG Road, Bangalore")


@pytest.fixture
def session_factory(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}"
    engine = get_engine(url, poolclass=NullPool, connect_args={"timeout": 30})

    async def create():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    run(create())
    yield get_session(engine)
    run(engine.dispose())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def stack(session_factory, clock, publisher):
    return Stack(session_factory, clock, publisher)


def emergency_booking(provider_id="prov-1", booking_id=None, customer_id="cust-1", status=PENDING):
    return EmergencyBooking(
        booking_id=booking_id or f"held-{provider_id}",
        customer_id=customer_id,
        provider_id=provider_id,
        service="Plumbing",
        status=status,
        longitude=X.longitude,
        latitude=X.latitude,
        address=X.address,
        estimated_duration=60,
        total_amount=600.0,
        payment_status="pending",
    )


async def reserve(stack, booking, timeout=timedelta(minutes=5)):
    async with stack.session_factory() as session:
        return await stack.ledger.acquire(session, booking, timeout)
