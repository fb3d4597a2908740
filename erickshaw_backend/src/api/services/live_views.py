"""
Standing queries behind the live views, plus helpers to subscribe to them.

Each query function is also what the REST snapshot endpoints call, so a view
and its REST counterpart always agree.
"""

from __future__ import annotations

import math
from typing import Callable, List, Optional

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from src.api.models.driver import DriverProfile
from src.api.models.ride import CUSTOMER_ACTIVE_STATUSES, DRIVER_ACTIVE_STATUSES, RideRequest, RideStatus
from src.api.realtime import DRIVERS, RIDES, ErrorCallback, LiveQueryHub, Subscription
from src.api.schemas.driver import DriverPublic, LatLng
from src.api.schemas.ride import RidePublic
from src.api.services.profiles import driver_to_public
from src.api.services.ride_lifecycle import ride_to_public


def distance_km_haversine(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Haversine distance in km.

    We do proximity filtering in Python to avoid adding PostGIS as a dependency.
    """
    r = 6371.0
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = math.sin(dlat / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dlng / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return r * c


def online_drivers(
    db: Session,
    near: Optional[LatLng] = None,
    radius_km: Optional[float] = None,
) -> List[DriverPublic]:
    """
    Online drivers that have reported a position, most recently updated first.

    Without `near`/`radius_km` every online driver is returned regardless of
    distance. With both, drivers farther than radius_km are dropped.
    """
    stmt = (
        select(DriverProfile)
        .where(
            DriverProfile.is_online.is_(True),
            DriverProfile.location_lat.is_not(None),
            DriverProfile.location_lng.is_not(None),
        )
        .order_by(desc(DriverProfile.updated_at))
    )
    drivers = list(db.scalars(stmt).unique().all())

    if near is not None and radius_km is not None:
        drivers = [
            d
            for d in drivers
            if distance_km_haversine(near.latitude, near.longitude, d.location_lat, d.location_lng) <= radius_km
        ]
    return [driver_to_public(d) for d in drivers]


def customer_active_rides(db: Session, customer_id: str) -> List[RidePublic]:
    stmt = (
        select(RideRequest)
        .where(RideRequest.customer_id == customer_id, RideRequest.status.in_(CUSTOMER_ACTIVE_STATUSES))
        .order_by(desc(RideRequest.requested_at))
    )
    return [ride_to_public(r) for r in db.scalars(stmt).all()]


def pending_requests(db: Session) -> List[RidePublic]:
    """Every pending ride system-wide, newest first; not scoped to any driver."""
    stmt = (
        select(RideRequest)
        .where(RideRequest.status == RideStatus.pending)
        .order_by(desc(RideRequest.requested_at))
    )
    return [ride_to_public(r) for r in db.scalars(stmt).all()]


def driver_active_rides(db: Session, driver_id: str) -> List[RidePublic]:
    stmt = (
        select(RideRequest)
        .where(RideRequest.driver_id == driver_id, RideRequest.status.in_(DRIVER_ACTIVE_STATUSES))
        .order_by(desc(RideRequest.accepted_at))
    )
    return [ride_to_public(r) for r in db.scalars(stmt).all()]


# PUBLIC_INTERFACE
def watch_nearby_drivers(
    hub: LiveQueryHub,
    callback: Callable[[List[DriverPublic]], None],
    *,
    near: Optional[LatLng] = None,
    radius_km: Optional[float] = None,
    on_error: Optional[ErrorCallback] = None,
) -> Subscription:
    """Live view of online drivers (customers)."""
    return hub.subscribe(
        DRIVERS,
        lambda db: online_drivers(db, near, radius_km),
        callback,
        on_error=on_error,
        name="nearby_drivers",
    )


# PUBLIC_INTERFACE
def watch_customer_active_ride(
    hub: LiveQueryHub,
    customer_id: str,
    callback: Callable[[List[RidePublic]], None],
    *,
    on_error: Optional[ErrorCallback] = None,
) -> Subscription:
    """Live view of the customer's pending/accepted/in-progress ride."""
    return hub.subscribe(
        RIDES,
        lambda db: customer_active_rides(db, customer_id),
        callback,
        on_error=on_error,
        name="customer_active_ride",
    )


# PUBLIC_INTERFACE
def watch_pending_requests(
    hub: LiveQueryHub,
    callback: Callable[[List[RidePublic]], None],
    *,
    on_error: Optional[ErrorCallback] = None,
) -> Subscription:
    """Live view of all pending requests (drivers)."""
    return hub.subscribe(RIDES, pending_requests, callback, on_error=on_error, name="pending_requests")


# PUBLIC_INTERFACE
def watch_driver_active_ride(
    hub: LiveQueryHub,
    driver_id: str,
    callback: Callable[[List[RidePublic]], None],
    *,
    on_error: Optional[ErrorCallback] = None,
) -> Subscription:
    """Live view of the driver's accepted/in-progress ride."""
    return hub.subscribe(
        RIDES,
        lambda db: driver_active_rides(db, driver_id),
        callback,
        on_error=on_error,
        name="driver_active_ride",
    )
