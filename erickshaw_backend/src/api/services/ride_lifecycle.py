"""
Core ride lifecycle operations.

Every transition is a single conditional UPDATE keyed on the statuses the
ride may currently be in. If the row no longer matches, because another
driver accepted first or the customer cancelled meanwhile, nothing is
written and the caller gets a conflict error. Operations return the
confirmed ride as stored after commit.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.api.db import Database
from src.api.models.driver import DriverProfile
from src.api.models.ride import (
    CUSTOMER_ACTIVE_STATUSES,
    DRIVER_ACTIVE_STATUSES,
    RideEvent,
    RideRequest,
    RideStatus,
)
from src.api.models.user import UserRole
from src.api.realtime import RIDES
from src.api.schemas.driver import LatLng
from src.api.schemas.ride import RideEventPublic, RidePublic
from src.api.services.exceptions import (
    ActiveRideExistsError,
    DriverBusyError,
    DriverUnavailableError,
    InvalidTransitionError,
    NotRideParticipantError,
    RideAlreadyTakenError,
    RideNotFoundError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    """One edge set of the ride state machine."""
    name: str
    target: RideStatus
    sources: tuple[RideStatus, ...]
    actor: UserRole
    stamp: Optional[str] = None


ACCEPT = Transition("accept", RideStatus.accepted, (RideStatus.pending,), UserRole.driver, "accepted_at")
REJECT = Transition("reject", RideStatus.rejected, (RideStatus.pending,), UserRole.driver)
START = Transition("start", RideStatus.in_progress, (RideStatus.accepted,), UserRole.driver, "started_at")
COMPLETE = Transition("complete", RideStatus.completed, (RideStatus.in_progress,), UserRole.driver, "completed_at")
CANCEL = Transition(
    "cancel", RideStatus.cancelled, (RideStatus.pending, RideStatus.accepted), UserRole.customer
)

TRANSITIONS = (ACCEPT, REJECT, START, COMPLETE, CANCEL)
PROGRESS_TRANSITIONS = {RideStatus.in_progress: START, RideStatus.completed: COMPLETE}


def allowed_transitions() -> Dict[RideStatus, set[RideStatus]]:
    """
    Transition rules.

    pending -> accepted | rejected | cancelled
    accepted -> in_progress | cancelled
    in_progress -> completed
    rejected, completed, cancelled are terminal.
    """
    rules: Dict[RideStatus, set[RideStatus]] = {s: set() for s in RideStatus}
    for t in TRANSITIONS:
        for source in t.sources:
            rules[source].add(t.target)
    return rules


def ride_to_public(ride: RideRequest) -> RidePublic:
    """Convert ORM RideRequest row to public schema."""
    return RidePublic(
        id=ride.id,
        customer_id=ride.customer_id,
        customer_name=ride.customer_name,
        pickup=LatLng(latitude=float(ride.pickup_lat), longitude=float(ride.pickup_lng)),
        pickup_address=ride.pickup_address,
        destination=LatLng(latitude=float(ride.destination_lat), longitude=float(ride.destination_lng)),
        destination_address=ride.destination_address,
        driver_id=ride.driver_id,
        driver_name=ride.driver_name,
        status=ride.status,
        fare=ride.fare,
        requested_at=ride.requested_at,
        accepted_at=ride.accepted_at,
        started_at=ride.started_at,
        completed_at=ride.completed_at,
        updated_at=ride.updated_at,
    )


def event_to_public(ev: RideEvent) -> RideEventPublic:
    """Convert ORM RideEvent row to public schema."""
    return RideEventPublic(
        id=ev.id,
        ride_id=ev.ride_id,
        event_type=ev.event_type,
        payload=dict(ev.payload or {}),
        created_at=ev.created_at,
    )


def _add_event(db: Session, database: Database, ride_id: str, event_type: str, payload: Dict[str, Any]) -> None:
    """Persist a ride event row."""
    db.add(
        RideEvent(
            id=uuid.uuid4().hex,
            ride_id=ride_id,
            event_type=event_type,
            payload=payload,
            created_at=database.clock.now(),
        )
    )


def find_active_customer_ride(db: Session, customer_id: str) -> Optional[RideRequest]:
    """Return the customer's pending/accepted/in-progress ride, if any."""
    return db.scalar(
        select(RideRequest)
        .where(RideRequest.customer_id == customer_id, RideRequest.status.in_(CUSTOMER_ACTIVE_STATUSES))
        .limit(1)
    )


def find_active_driver_ride(db: Session, driver_id: str) -> Optional[RideRequest]:
    """Return the driver's accepted/in-progress ride, if any."""
    return db.scalar(
        select(RideRequest)
        .where(RideRequest.driver_id == driver_id, RideRequest.status.in_(DRIVER_ACTIVE_STATUSES))
        .limit(1)
    )


# PUBLIC_INTERFACE
def request_ride(
    database: Database,
    *,
    customer_id: str,
    customer_name: str,
    pickup: LatLng,
    pickup_address: str,
    destination: LatLng,
    destination_address: str,
) -> RidePublic:
    """
    Create a pending ride request.

    Raises:
        ActiveRideExistsError: if the customer already has an active ride.
            Checked up front and again by the store's unique index, so two
            racing requests cannot both be created.
    """
    ride_id = uuid.uuid4().hex
    try:
        with database.session_scope() as db:
            if find_active_customer_ride(db, customer_id) is not None:
                raise ActiveRideExistsError()

            now = database.clock.now()
            ride = RideRequest(
                id=ride_id,
                customer_id=customer_id,
                customer_name=customer_name,
                pickup_lat=pickup.latitude,
                pickup_lng=pickup.longitude,
                pickup_address=pickup_address,
                destination_lat=destination.latitude,
                destination_lng=destination.longitude,
                destination_address=destination_address,
                driver_id=None,
                driver_name=None,
                status=RideStatus.pending,
                fare=None,
                requested_at=now,
                updated_at=now,
            )
            db.add(ride)
            db.flush()
            _add_event(
                db,
                database,
                ride_id,
                "ride_requested",
                {
                    "customer_id": customer_id,
                    "pickup": {"lat": pickup.latitude, "lng": pickup.longitude},
                    "destination": {"lat": destination.latitude, "lng": destination.longitude},
                },
            )
            public = ride_to_public(ride)
    except IntegrityError:
        logger.warning("Customer %s raced a second ride request", customer_id)
        raise ActiveRideExistsError()

    database.hub.publish(RIDES)
    logger.info("Ride %s requested by customer %s", ride_id, customer_id)
    return public


def _diagnose(db: Session, ride_id: str, transition: Transition, actor_id: str) -> Exception:
    """Explain why a conditional update matched no row."""
    ride = db.get(RideRequest, ride_id, populate_existing=True)
    if ride is None:
        return RideNotFoundError()

    # Status matched, so the actor condition is what failed.
    if ride.status in transition.sources:
        if transition.actor == UserRole.customer:
            return NotRideParticipantError("Only the customer who requested this ride may cancel it.")
        if transition in (START, COMPLETE):
            return NotRideParticipantError("This ride is not assigned to the current driver.")
    if transition is ACCEPT and ride.status == RideStatus.accepted and ride.driver_id != actor_id:
        return RideAlreadyTakenError()

    return InvalidTransitionError(
        f"Invalid status transition from '{ride.status.value}' to '{transition.target.value}'."
    )


def _apply(
    db: Session,
    database: Database,
    ride_id: str,
    transition: Transition,
    *,
    actor_id: str,
    values: Optional[Dict[str, Any]] = None,
) -> RidePublic:
    """
    Run one transition as a check-and-set inside the given session.

    The UPDATE only matches while the ride is still in one of the
    transition's source statuses (and, for driver progress and customer
    cancellation, still belongs to the actor).
    """
    now = database.clock.now()
    changes: Dict[str, Any] = {"status": transition.target, "updated_at": now}
    if transition.stamp:
        changes[transition.stamp] = now
    if values:
        changes.update(values)

    stmt = update(RideRequest).where(
        RideRequest.id == ride_id,
        RideRequest.status.in_(transition.sources),
    )
    if transition.actor == UserRole.customer:
        stmt = stmt.where(RideRequest.customer_id == actor_id)
    elif transition in (START, COMPLETE):
        stmt = stmt.where(RideRequest.driver_id == actor_id)

    result = db.execute(stmt.values(**changes).execution_options(synchronize_session=False))
    if result.rowcount != 1:
        raise _diagnose(db, ride_id, transition, actor_id)

    ride = db.get(RideRequest, ride_id, populate_existing=True)
    _add_event(
        db,
        database,
        ride_id,
        "status_changed",
        {
            "expected": [s.value for s in transition.sources],
            "to": transition.target.value,
            "by_user_id": actor_id,
            "driver_id": ride.driver_id,
        },
    )
    return ride_to_public(ride)


def _run(database: Database, ride_id: str, transition: Transition, actor_id: str, **kwargs: Any) -> RidePublic:
    try:
        with database.session_scope() as db:
            public = _apply(db, database, ride_id, transition, actor_id=actor_id, **kwargs)
    except InvalidTransitionError as exc:
        logger.warning("Ride %s %s by %s rejected: %s", ride_id, transition.name, actor_id, exc.detail)
        raise
    database.hub.publish(RIDES)
    logger.info("Ride %s -> %s by %s", ride_id, transition.target.value, actor_id)
    return public


# PUBLIC_INTERFACE
def accept_ride(database: Database, ride_id: str, *, driver_id: str, driver_name: str) -> RidePublic:
    """
    pending -> accepted, binding the driver.

    Raises:
        DriverUnavailableError: driver has no profile or is offline.
        DriverBusyError: driver already has an accepted/in-progress ride.
        RideAlreadyTakenError: another driver accepted first.
        InvalidTransitionError: ride is no longer pending.
        RideNotFoundError: unknown ride id.
    """
    try:
        with database.session_scope() as db:
            driver = db.get(DriverProfile, driver_id)
            if driver is None or not driver.is_online:
                raise DriverUnavailableError()
            if find_active_driver_ride(db, driver_id) is not None:
                raise DriverBusyError()
            public = _apply(
                db,
                database,
                ride_id,
                ACCEPT,
                actor_id=driver_id,
                values={"driver_id": driver_id, "driver_name": driver_name},
            )
    except IntegrityError:
        logger.warning("Driver %s raced a second acceptance", driver_id)
        raise DriverBusyError()
    except InvalidTransitionError as exc:
        logger.warning("Ride %s accept by %s rejected: %s", ride_id, driver_id, exc.detail)
        raise

    database.hub.publish(RIDES)
    logger.info("Ride %s accepted by driver %s", ride_id, driver_id)
    return public


# PUBLIC_INTERFACE
def reject_ride(database: Database, ride_id: str, *, driver_id: str) -> RidePublic:
    """pending -> rejected; clears any driver binding. Rejected rides are terminal."""
    return _run(database, ride_id, REJECT, driver_id, values={"driver_id": None, "driver_name": None})


# PUBLIC_INTERFACE
def update_ride_status(database: Database, ride_id: str, *, driver_id: str, status: RideStatus) -> RidePublic:
    """
    Driver progress: accepted -> in_progress, in_progress -> completed.

    Stamps started_at / completed_at respectively. Only the assigned driver
    may move the ride forward.
    """
    transition = PROGRESS_TRANSITIONS.get(RideStatus(status))
    if transition is None:
        raise InvalidTransitionError(f"Drivers cannot set status '{RideStatus(status).value}' directly.")
    return _run(database, ride_id, transition, driver_id)


# PUBLIC_INTERFACE
def cancel_ride(database: Database, ride_id: str, *, customer_id: str) -> RidePublic:
    """pending | accepted -> cancelled, by the customer who requested the ride."""
    return _run(database, ride_id, CANCEL, customer_id)


def get_ride_for(db: Session, ride_id: str, user_id: str, role: Optional[UserRole]) -> RideRequest:
    """
    Return the ride if `user_id` may see it.

    Customers see their own rides, drivers see rides bound to them plus every
    pending request (the same set the pending-requests view shows).
    """
    ride = db.get(RideRequest, ride_id)
    if ride is None:
        raise RideNotFoundError()
    if ride.customer_id == user_id:
        return ride
    if ride.driver_id is not None and ride.driver_id == user_id:
        return ride
    if role == UserRole.driver and ride.status == RideStatus.pending:
        return ride
    raise NotRideParticipantError()
