import asyncio

import pytest

from conftest import X, run

from dispatch_service.errors import Forbidden, InvalidRequest, InvalidTransition, NoProviderAvailable, NotFound
from dispatch_service.lifecycle import BOOKING_TRANSITIONS, compute_amount
from dispatch_service.models import (
    ACCEPTED,
    CANCELLED,
    COMPLETED,
    DISPUTED,
    PENDING,
    STARTED,
    TERMINAL_STATUSES,
)


@pytest.fixture
def booked(stack):
    """A customer, a provider and a fresh emergency booking between them."""
    run(stack.add_customer())
    run(stack.add_provider())
    booking = run(stack.emergency())
    stack.publisher.events.clear()
    return booking


def _status(stack, booking_id):
    return run(stack.call("get_booking", booking_id)).status


def test_compute_amount_is_prorated_hourly_rate():
    assert compute_amount(600.0, 60) == 600.0
    assert compute_amount(600.0, 90) == 900.0
    assert compute_amount(500.0, 15) == 125.0


def test_terminal_statuses_have_no_exits():
    for status in TERMINAL_STATUSES:
        assert BOOKING_TRANSITIONS[status] == set()


def test_accept_ends_the_timed_hold_but_keeps_provider_busy(stack, booked, publisher):
    accepted = run(stack.call("accept_booking", booked.booking_id, "prov-1"))

    assert accepted.status == ACCEPTED
    assert accepted.is_locked is False
    assert accepted.locked_until is None
    assert run(stack.provider_available()) is False
    assert publisher.types() == ["booking.status_changed", "lock.released"]
    assert publisher.of_type("lock.released")[0] == {
        "booking_id": booked.booking_id,
        "provider_id": "prov-1",
        "reason": ACCEPTED,
    }


def test_accepted_provider_is_not_dispatched_again(stack, booked, clock):
    run(stack.add_customer("cust-2"))
    run(stack.call("accept_booking", booked.booking_id, "prov-1"))
    clock.advance(hours=2)

    with pytest.raises(NoProviderAvailable):
        run(stack.emergency(customer_id="cust-2"))

    run(stack.call("start_booking", booked.booking_id, "prov-1"))
    with pytest.raises(NoProviderAvailable):
        run(stack.emergency(customer_id="cust-2"))

    run(stack.call("complete_booking", booked.booking_id, "prov-1"))
    assert run(stack.provider_available()) is True
    second = run(stack.emergency(customer_id="cust-2"))
    assert second.provider_id == "prov-1"


@pytest.mark.parametrize(
    "finish",
    [
        lambda stack, bid: stack.call("cancel_booking", bid, "cust-1"),
        lambda stack, bid: stack.call("dispute_booking", bid, "ops", ["admin"], resolution="No-show"),
        lambda stack, bid: stack.call("release_lock", bid),
    ],
    ids=["cancel", "dispute", "manual-release"],
)
def test_accepted_provider_freed_by_cancel_dispute_or_release(stack, booked, finish):
    run(stack.call("accept_booking", booked.booking_id, "prov-1"))
    assert run(stack.provider_available()) is False

    run(finish(stack, booked.booking_id))

    assert run(stack.provider_available()) is True


def test_full_happy_path(stack, booked, clock):
    run(stack.call("accept_booking", booked.booking_id, "prov-1"))
    clock.advance(minutes=10)
    started = run(stack.call("start_booking", booked.booking_id, "prov-1"))
    assert started.status == STARTED
    assert started.started_at is not None

    clock.advance(minutes=60)
    completed = run(stack.call("complete_booking", booked.booking_id, "prov-1"))

    assert completed.status == COMPLETED
    assert completed.completed_at is not None
    assert completed.total_amount == 600.0
    assert completed.actual_duration is None


def test_complete_with_actual_duration_reprices(stack, booked):
    run(stack.call("accept_booking", booked.booking_id, "prov-1"))
    run(stack.call("start_booking", booked.booking_id, "prov-1"))

    completed = run(stack.call("complete_booking", booked.booking_id, "prov-1", actual_duration=90))

    assert completed.actual_duration == 90
    assert completed.total_amount == 900.0


def test_complete_rejects_non_positive_duration(stack, booked):
    run(stack.call("accept_booking", booked.booking_id, "prov-1"))
    run(stack.call("start_booking", booked.booking_id, "prov-1"))

    with pytest.raises(InvalidRequest):
        run(stack.call("complete_booking", booked.booking_id, "prov-1", actual_duration=0))
    assert _status(stack, booked.booking_id) == STARTED


def test_out_of_order_transition_leaves_booking_untouched(stack, booked, publisher):
    run(stack.call("accept_booking", booked.booking_id, "prov-1"))
    run(stack.call("start_booking", booked.booking_id, "prov-1"))
    publisher.events.clear()

    with pytest.raises(InvalidTransition) as exc:
        run(stack.call("accept_booking", booked.booking_id, "prov-1"))

    assert exc.value.current == STARTED
    assert exc.value.requested == ACCEPTED
    assert _status(stack, booked.booking_id) == STARTED
    assert publisher.events == []


def test_start_requires_acceptance_first(stack, booked):
    with pytest.raises(InvalidTransition):
        run(stack.call("start_booking", booked.booking_id, "prov-1"))
    assert _status(stack, booked.booking_id) == PENDING


def test_only_the_assigned_provider_drives_the_job(stack, booked):
    with pytest.raises(Forbidden):
        run(stack.call("accept_booking", booked.booking_id, "someone-else"))
    with pytest.raises(Forbidden):
        run(stack.call("accept_booking", booked.booking_id, "cust-1"))
    assert _status(stack, booked.booking_id) == PENDING


def test_customer_cancel_releases_reservation(stack, booked, publisher):
    cancelled = run(stack.call("cancel_booking", booked.booking_id, "cust-1"))

    assert cancelled.status == CANCELLED
    assert run(stack.provider_available()) is True
    assert publisher.of_type("lock.released")[0]["reason"] == CANCELLED


def test_admin_may_cancel_and_strangers_may_not(stack, booked):
    with pytest.raises(Forbidden):
        run(stack.call("cancel_booking", booked.booking_id, "nosy", ["customer"]))

    cancelled = run(stack.call("cancel_booking", booked.booking_id, "ops", ["Admin"]))
    assert cancelled.status == CANCELLED


def test_cancel_after_start_is_not_allowed(stack, booked):
    run(stack.call("accept_booking", booked.booking_id, "prov-1"))
    run(stack.call("start_booking", booked.booking_id, "prov-1"))

    with pytest.raises(InvalidTransition):
        run(stack.call("cancel_booking", booked.booking_id, "cust-1"))
    assert _status(stack, booked.booking_id) == STARTED


def test_dispute_with_refund(stack, booked):
    disputed = run(
        stack.call(
            "dispute_booking",
            booked.booking_id,
            "ops",
            ["admin"],
            resolution="Leak came back the same day",
            refund_amount=200.0,
        )
    )

    assert disputed.status == DISPUTED
    assert disputed.payment_status == "refunded"
    assert disputed.total_amount == 400.0
    assert disputed.notes.endswith("\n\nDispute Resolution: Leak came back the same day")
    assert run(stack.provider_available()) is True


def test_refund_never_drives_amount_negative(stack, booked):
    disputed = run(stack.call("dispute_booking", booked.booking_id, "ops", ["admin"], refund_amount=10_000.0))
    assert disputed.total_amount == 0.0


def test_dispute_requires_admin(stack, booked):
    with pytest.raises(Forbidden):
        run(stack.call("dispute_booking", booked.booking_id, "cust-1", ["customer"], resolution="no"))
    assert _status(stack, booked.booking_id) == PENDING


def test_unknown_booking(stack):
    with pytest.raises(NotFound):
        run(stack.call("get_booking", "nope"))
    with pytest.raises(NotFound):
        run(stack.call("accept_booking", "nope", "prov-1"))


def test_release_lock_is_idempotent(stack, booked, publisher):
    released = run(stack.call("release_lock", booked.booking_id))
    again = run(stack.call("release_lock", booked.booking_id))

    assert released.is_locked is False
    assert again.status == PENDING
    assert publisher.types() == ["lock.released"]
    assert publisher.of_type("lock.released")[0]["reason"] == "manual"
    assert run(stack.provider_available()) is True


def test_racing_accepts_have_one_winner(stack, booked):
    async def race():
        return await asyncio.gather(
            stack.call("accept_booking", booked.booking_id, "prov-1"),
            stack.call("accept_booking", booked.booking_id, "prov-1"),
            return_exceptions=True,
        )

    results = run(race())

    assert sum(1 for r in results if isinstance(r, InvalidTransition)) == 1
    assert _status(stack, booked.booking_id) == ACCEPTED


def test_stale_read_is_reported_with_the_latest_status(stack, booked):
    async def scenario():
        async with stack.session_factory() as session:
            stale = await stack.lifecycle.get_booking(session, booked.booking_id)
            await stack.call("cancel_booking", booked.booking_id, "cust-1")
            await stack.lifecycle._apply(session, stale, ACCEPTED, {})

    with pytest.raises(InvalidTransition) as exc:
        run(scenario())
    assert exc.value.current == CANCELLED


# ---------------- normal bookings ----------------

def _create(stack, provider_id="prov-1", **kwargs):
    kwargs.setdefault("service", "Plumbing")
    kwargs.setdefault("location", X)
    kwargs.setdefault("estimated_duration", 120)
    return run(stack.call("create_booking", customer_id="cust-1", provider_id=provider_id, **kwargs))


def test_normal_booking_is_priced_and_never_locked(stack, publisher):
    run(stack.add_customer())
    run(stack.add_provider(hourly_rate=450.0))

    booking = _create(stack, notes="Kitchen tap")

    assert booking.emergency is False
    assert booking.is_locked is False
    assert booking.status == PENDING
    assert booking.total_amount == 900.0
    assert booking.scheduled_at is not None
    assert run(stack.provider_available()) is True
    assert publisher.types() == ["booking.status_changed", "booking.provider_assigned"]


def test_normal_booking_requires_an_open_provider(stack):
    run(stack.add_customer())
    run(stack.add_provider("offline", is_available=False))
    run(stack.add_provider("unverified", is_verified=False))

    with pytest.raises(InvalidRequest):
        _create(stack, "offline")
    with pytest.raises(InvalidRequest):
        _create(stack, "unverified")
    with pytest.raises(NotFound):
        _create(stack, "missing")


def test_normal_booking_rejected_while_provider_reserved(stack, booked):
    with pytest.raises(InvalidRequest):
        _create(stack)


def test_normal_booking_validation(stack):
    run(stack.add_customer())
    run(stack.add_provider())

    with pytest.raises(InvalidRequest):
        _create(stack, estimated_duration=14)
    with pytest.raises(InvalidRequest):
        _create(stack, notes="x" * 1001)
