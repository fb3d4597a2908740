import pytest

from conftest import DESTINATION, PICKUP, seed_driver, seed_user
from src.api.models.ride import RideStatus
from src.api.models.user import UserRole
from src.api.realtime import DRIVERS, RIDES
from src.api.schemas.driver import LatLng
from src.api.services import live_views, profiles, ride_lifecycle


class Recorder:
    """Collects every snapshot a live view delivers."""

    def __init__(self):
        self.snapshots = []
        self.errors = []

    def __call__(self, items):
        self.snapshots.append(list(items))

    @property
    def last(self):
        return self.snapshots[-1]


@pytest.fixture
def people(database):
    seed_user(database, "cust-1", UserRole.customer, "Asha")
    seed_driver(database, "drv-x", "Ravi")
    seed_driver(database, "drv-y", "Imran")
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


def test_initial_snapshot_is_delivered_on_subscribe(people):
    seen = Recorder()
    live_views.watch_pending_requests(people.hub, seen)
    assert seen.snapshots == [[]]

    ride = _request(people)
    later = Recorder()
    live_views.watch_pending_requests(people.hub, later)
    assert [r.id for r in later.last] == [ride.id]


def test_accepted_ride_leaves_other_drivers_pending_view(people):
    x_pending, y_pending = Recorder(), Recorder()
    customer_view, x_active = Recorder(), Recorder()
    live_views.watch_pending_requests(people.hub, x_pending)
    live_views.watch_pending_requests(people.hub, y_pending)
    live_views.watch_customer_active_ride(people.hub, "cust-1", customer_view)
    live_views.watch_driver_active_ride(people.hub, "drv-x", x_active)

    ride = _request(people)
    assert [r.id for r in y_pending.last] == [ride.id]
    assert customer_view.last[0].status == RideStatus.pending
    assert customer_view.last[0].pickup == LatLng(latitude=12.9, longitude=77.6)
    assert customer_view.last[0].destination == LatLng(latitude=12.91, longitude=77.61)

    ride_lifecycle.accept_ride(people, ride.id, driver_id="drv-x", driver_name="Ravi")

    assert y_pending.last == []
    assert x_pending.last == []
    assert len(customer_view.last) == 1
    assert customer_view.last[0].status == RideStatus.accepted
    assert customer_view.last[0].driver_name == "Ravi"
    assert [r.id for r in x_active.last] == [ride.id]


def test_cancelled_pending_ride_disappears_everywhere(people):
    pending, customer_view = Recorder(), Recorder()
    live_views.watch_pending_requests(people.hub, pending)
    live_views.watch_customer_active_ride(people.hub, "cust-1", customer_view)

    ride = _request(people)
    cancelled = ride_lifecycle.cancel_ride(people, ride.id, customer_id="cust-1")

    assert cancelled.status == RideStatus.cancelled
    assert pending.last == []
    assert customer_view.last == []


def test_no_delivery_after_unsubscribe(people):
    seen = Recorder()
    sub = live_views.watch_pending_requests(people.hub, seen)
    assert people.hub.subscriber_count(RIDES) == 1

    sub.unsubscribe()
    sub.unsubscribe()
    assert not sub.active
    assert people.hub.subscriber_count(RIDES) == 0

    _request(people)
    assert seen.snapshots == [[]]


def test_callback_may_unsubscribe_its_own_view(people):
    calls = []
    holder = {}

    def callback(items):
        calls.append(items)
        if items and "sub" in holder:
            holder["sub"].unsubscribe()

    holder["sub"] = live_views.watch_pending_requests(people.hub, callback)
    first = _request(people)
    ride_lifecycle.cancel_ride(people, first.id, customer_id="cust-1")

    assert len(calls) == 2
    assert not holder["sub"].active


def test_failed_view_reports_error_and_reads_empty(people):
    seen = Recorder()

    def broken(db):
        raise RuntimeError("index missing")

    people.hub.subscribe(RIDES, broken, seen, on_error=seen.errors.append, name="broken")

    assert seen.snapshots == [[]]
    assert len(seen.errors) == 1
    assert isinstance(seen.errors[0], RuntimeError)


def test_failed_view_does_not_disturb_other_views(people):
    good = Recorder()
    people.hub.subscribe(RIDES, lambda db: 1 / 0, Recorder())
    live_views.watch_pending_requests(people.hub, good)

    ride = _request(people)
    assert [r.id for r in good.last] == [ride.id]


def test_nearby_drivers_tracks_online_flag_and_location(people):
    seed_driver(people, "drv-offline", "Sunil", online=False)
    seed_driver(people, "drv-nowhere", "Kiran", location=None)
    seen = Recorder()
    live_views.watch_nearby_drivers(people.hub, seen)

    assert {d.id for d in seen.last} == {"drv-x", "drv-y"}
    assert all(d.is_online for d in seen.last)
    names = {d.id: d.display_name for d in seen.last}
    assert names["drv-x"] == "Ravi"

    profiles.set_online(people, "drv-y", False)
    assert {d.id for d in seen.last} == {"drv-x"}

    profiles.update_location(people, "drv-x", 12.95, 77.65)
    assert seen.last[0].current_location == LatLng(latitude=12.95, longitude=77.65)
    assert seen.last[0].is_online


def test_nearby_drivers_radius_filter(people):
    profiles.update_location(people, "drv-y", 13.2, 77.9)
    seen = Recorder()
    live_views.watch_nearby_drivers(people.hub, seen, near=PICKUP, radius_km=5)
    assert [d.id for d in seen.last] == ["drv-x"]

    everyone = Recorder()
    live_views.watch_nearby_drivers(people.hub, everyone)
    assert {d.id for d in everyone.last} == {"drv-x", "drv-y"}


def test_views_only_refresh_for_their_collection(people):
    rides_view = Recorder()
    live_views.watch_pending_requests(people.hub, rides_view)

    profiles.set_online(people, "drv-x", False)
    people.hub.publish(DRIVERS)
    assert rides_view.snapshots == [[]]


def test_haversine_distance():
    assert live_views.distance_km_haversine(12.9, 77.6, 12.9, 77.6) == 0
    # One degree of latitude is roughly 111 km.
    assert 110 < live_views.distance_km_haversine(12.0, 77.6, 13.0, 77.6) < 112
