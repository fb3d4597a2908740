import threading

import pytest
from sqlalchemy import select

from conftest import DESTINATION, PICKUP, seed_driver, seed_user
from src.api.models.ride import RideEvent, RideStatus
from src.api.models.user import UserRole
from src.api.services import live_views, ride_lifecycle
from src.api.services.exceptions import (
    ActiveRideExistsError,
    DriverBusyError,
    DriverUnavailableError,
    InvalidTransitionError,
    NotRideParticipantError,
    RideAlreadyTakenError,
    RideNotFoundError,
)


@pytest.fixture
def people(database):
    seed_user(database, "cust-1", UserRole.customer, "Asha")
    seed_user(database, "cust-2", UserRole.customer, "Meena")
    seed_driver(database, "drv-x", "Ravi")
    seed_driver(database, "drv-y", "Imran")
    seed_driver(database, "drv-off", "Sunil", online=False)
    return database


def _request(database, customer_id="cust-1", name="Asha"):
    return ride_lifecycle.request_ride(
        database,
        customer_id=customer_id,
        customer_name=name,
        pickup=PICKUP,
        pickup_address="MG Road",
        destination=DESTINATION,
        destination_address="Indiranagar",
    )


def _stored(database, ride_id):
    with database.SessionLocal() as db:
        return ride_lifecycle.ride_to_public(ride_lifecycle.get_ride_for(db, ride_id, "cust-1", UserRole.customer))


def test_state_machine_edges():
    assert ride_lifecycle.allowed_transitions() == {
        RideStatus.pending: {RideStatus.accepted, RideStatus.rejected, RideStatus.cancelled},
        RideStatus.accepted: {RideStatus.in_progress, RideStatus.cancelled},
        RideStatus.in_progress: {RideStatus.completed},
        RideStatus.rejected: set(),
        RideStatus.completed: set(),
        RideStatus.cancelled: set(),
    }


def test_request_creates_pending_ride(people):
    ride = _request(people)

    assert ride.status == RideStatus.pending
    assert ride.driver_id is None and ride.driver_name is None
    assert ride.pickup == PICKUP
    assert ride.destination == DESTINATION
    assert ride.customer_name == "Asha"
    assert ride.fare is None
    assert ride.requested_at.tzinfo is not None

    stored = _stored(people, ride.id)
    assert stored == ride


def test_requested_at_is_monotonic(people):
    first = _request(people, "cust-1", "Asha")
    second = _request(people, "cust-2", "Meena")
    assert second.requested_at > first.requested_at

    with people.SessionLocal() as db:
        pending = live_views.pending_requests(db)
    assert [r.id for r in pending] == [second.id, first.id]


def test_full_ride_lifecycle(people):
    ride = _request(people)

    accepted = ride_lifecycle.accept_ride(people, ride.id, driver_id="drv-x", driver_name="Ravi")
    assert accepted.status == RideStatus.accepted
    assert accepted.driver_id == "drv-x"
    assert accepted.driver_name == "Ravi"
    assert accepted.accepted_at is not None

    started = ride_lifecycle.update_ride_status(people, ride.id, driver_id="drv-x", status=RideStatus.in_progress)
    assert started.status == RideStatus.in_progress
    assert started.started_at >= accepted.accepted_at

    done = ride_lifecycle.update_ride_status(people, ride.id, driver_id="drv-x", status=RideStatus.completed)
    assert done.status == RideStatus.completed
    assert done.completed_at >= done.started_at
    assert done.driver_id == "drv-x"

    with people.SessionLocal() as db:
        events = db.scalars(
            select(RideEvent).where(RideEvent.ride_id == ride.id).order_by(RideEvent.created_at)
        ).all()
    assert [e.event_type for e in events] == ["ride_requested"] + ["status_changed"] * 3
    assert [e.payload["to"] for e in events[1:]] == ["accepted", "in_progress", "completed"]
    assert events[1].payload["expected"] == ["pending"]
    assert events[1].payload["by_user_id"] == "drv-x"


@pytest.mark.parametrize(
    "setup, action",
    [
        ([], lambda db, rid: ride_lifecycle.update_ride_status(db, rid, driver_id="drv-x", status=RideStatus.completed)),
        (["accept"], lambda db, rid: ride_lifecycle.reject_ride(db, rid, driver_id="drv-x")),
        (["accept", "start"], lambda db, rid: ride_lifecycle.cancel_ride(db, rid, customer_id="cust-1")),
        (["accept", "start", "complete"], lambda db, rid: ride_lifecycle.cancel_ride(db, rid, customer_id="cust-1")),
        (
            ["accept", "start", "complete"],
            lambda db, rid: ride_lifecycle.update_ride_status(db, rid, driver_id="drv-x", status=RideStatus.in_progress),
        ),
    ],
    ids=["complete-pending", "reject-accepted", "cancel-in-progress", "cancel-completed", "restart-completed"],
)
def test_illegal_transitions_leave_ride_untouched(people, setup, action):
    ride = _request(people)
    steps = {
        "accept": lambda: ride_lifecycle.accept_ride(people, ride.id, driver_id="drv-x", driver_name="Ravi"),
        "start": lambda: ride_lifecycle.update_ride_status(
            people, ride.id, driver_id="drv-x", status=RideStatus.in_progress
        ),
        "complete": lambda: ride_lifecycle.update_ride_status(
            people, ride.id, driver_id="drv-x", status=RideStatus.completed
        ),
    }
    for step in setup:
        steps[step]()
    before = _stored(people, ride.id)

    with pytest.raises(InvalidTransitionError):
        action(people, ride.id)

    assert _stored(people, ride.id) == before


def test_drivers_cannot_set_arbitrary_status(people):
    ride = _request(people)
    with pytest.raises(InvalidTransitionError):
        ride_lifecycle.update_ride_status(people, ride.id, driver_id="drv-x", status=RideStatus.cancelled)


def test_reject_is_terminal_and_clears_driver(people):
    ride = _request(people)
    rejected = ride_lifecycle.reject_ride(people, ride.id, driver_id="drv-x")

    assert rejected.status == RideStatus.rejected
    assert rejected.driver_id is None and rejected.driver_name is None
    with pytest.raises(InvalidTransitionError):
        ride_lifecycle.accept_ride(people, ride.id, driver_id="drv-y", driver_name="Imran")

    # A rejected ride no longer blocks the customer.
    assert _request(people).status == RideStatus.pending


def test_accept_by_second_driver_is_rejected(people):
    ride = _request(people)
    ride_lifecycle.accept_ride(people, ride.id, driver_id="drv-x", driver_name="Ravi")

    with pytest.raises(RideAlreadyTakenError):
        ride_lifecycle.accept_ride(people, ride.id, driver_id="drv-y", driver_name="Imran")
    assert _stored(people, ride.id).driver_id == "drv-x"


def test_concurrent_accept_has_exactly_one_winner(people):
    ride = _request(people)
    barrier = threading.Barrier(2)
    outcomes = {}

    def attempt(driver_id, name):
        barrier.wait()
        try:
            outcomes[driver_id] = ride_lifecycle.accept_ride(people, ride.id, driver_id=driver_id, driver_name=name)
        except InvalidTransitionError as exc:
            outcomes[driver_id] = exc

    threads = [
        threading.Thread(target=attempt, args=("drv-x", "Ravi")),
        threading.Thread(target=attempt, args=("drv-y", "Imran")),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    winners = [d for d, o in outcomes.items() if not isinstance(o, Exception)]
    losers = [o for o in outcomes.values() if isinstance(o, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], RideAlreadyTakenError)

    stored = _stored(people, ride.id)
    assert stored.status == RideStatus.accepted
    assert stored.driver_id == winners[0]


def test_customer_cannot_hold_two_active_rides(people):
    ride = _request(people)
    with pytest.raises(ActiveRideExistsError):
        _request(people)

    ride_lifecycle.accept_ride(people, ride.id, driver_id="drv-x", driver_name="Ravi")
    with pytest.raises(ActiveRideExistsError):
        _request(people)

    ride_lifecycle.cancel_ride(people, ride.id, customer_id="cust-1")
    assert _request(people).status == RideStatus.pending


def test_driver_cannot_hold_two_active_rides(people):
    first = _request(people, "cust-1", "Asha")
    second = _request(people, "cust-2", "Meena")
    ride_lifecycle.accept_ride(people, first.id, driver_id="drv-x", driver_name="Ravi")

    with pytest.raises(DriverBusyError):
        ride_lifecycle.accept_ride(people, second.id, driver_id="drv-x", driver_name="Ravi")

    with people.SessionLocal() as db:
        assert [r.id for r in live_views.pending_requests(db)] == [second.id]


def test_offline_driver_cannot_accept(people):
    ride = _request(people)
    with pytest.raises(DriverUnavailableError):
        ride_lifecycle.accept_ride(people, ride.id, driver_id="drv-off", driver_name="Sunil")
    assert _stored(people, ride.id).status == RideStatus.pending


def test_only_requesting_customer_may_cancel(people):
    ride = _request(people)
    with pytest.raises(NotRideParticipantError):
        ride_lifecycle.cancel_ride(people, ride.id, customer_id="cust-2")

    cancelled = ride_lifecycle.cancel_ride(people, ride.id, customer_id="cust-1")
    assert cancelled.status == RideStatus.cancelled


def test_only_assigned_driver_may_progress(people):
    ride = _request(people)
    ride_lifecycle.accept_ride(people, ride.id, driver_id="drv-x", driver_name="Ravi")

    with pytest.raises(NotRideParticipantError):
        ride_lifecycle.update_ride_status(people, ride.id, driver_id="drv-y", status=RideStatus.in_progress)


def test_unknown_ride(people):
    with pytest.raises(RideNotFoundError):
        ride_lifecycle.accept_ride(people, "missing", driver_id="drv-x", driver_name="Ravi")
