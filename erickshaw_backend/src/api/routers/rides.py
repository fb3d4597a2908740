from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from src.api.db import Database, get_database, get_db
from src.api.deps import get_current_user, require_customer, require_driver
from src.api.models.ride import RideEvent, RideRequest, RideStatus
from src.api.models.user import UserProfile, UserRole
from src.api.schemas.ride import (
    RideCreateRequest,
    RideHistoryResponse,
    RidePublic,
    RideStatusUpdateRequest,
)
from src.api.services import live_views, ride_lifecycle
from src.api.services.exceptions import RoleRequiredError
from src.api.services.profiles import display_name_for

router = APIRouter(prefix="/rides", tags=["rides"])


@router.post(
    "",
    response_model=RidePublic,
    status_code=status.HTTP_201_CREATED,
    summary="Request a ride",
    description="Customer requests a new ride (status=pending). Rejected with 409 while another ride is active.",
    operation_id="rides_request",
)
def request_ride(
    payload: RideCreateRequest,
    database: Database = Depends(get_database),
    current_user: UserProfile = Depends(require_customer),
) -> RidePublic:
    """
    Create a new ride request.

    Auth:
    - Bearer JWT required
    - role must be 'customer'
    """
    return ride_lifecycle.request_ride(
        database,
        customer_id=current_user.id,
        customer_name=display_name_for(current_user),
        pickup=payload.pickup,
        pickup_address=payload.pickup_address,
        destination=payload.destination,
        destination_address=payload.destination_address,
    )


@router.get(
    "",
    response_model=List[RidePublic],
    summary="List rides for current user",
    description="Customers see rides they requested, drivers see rides bound to them. Newest first.",
    operation_id="rides_list",
)
def list_rides(
    status_filter: Optional[RideStatus] = Query(default=None, alias="status", description="Optional ride status filter."),
    limit: int = Query(default=50, ge=1, le=200, description="Max rides to return."),
    offset: int = Query(default=0, ge=0, description="Offset for pagination."),
    db: Session = Depends(get_db),
    current_user: UserProfile = Depends(get_current_user),
) -> List[RidePublic]:
    """
    List rides for current user.

    Auth:
    - Bearer JWT required
    - a role must have been chosen
    """
    stmt = select(RideRequest)
    if current_user.role == UserRole.customer:
        stmt = stmt.where(RideRequest.customer_id == current_user.id)
    elif current_user.role == UserRole.driver:
        stmt = stmt.where(RideRequest.driver_id == current_user.id)
    else:
        raise RoleRequiredError()

    if status_filter is not None:
        stmt = stmt.where(RideRequest.status == status_filter)

    stmt = stmt.order_by(desc(RideRequest.requested_at)).limit(limit).offset(offset)
    return [ride_lifecycle.ride_to_public(r) for r in db.scalars(stmt).all()]


@router.get(
    "/active",
    response_model=Optional[RidePublic],
    summary="Get the current user's active ride",
    description=(
        "Customers: pending/accepted/in-progress ride. Drivers: accepted/in-progress ride. "
        "Returns null when there is none."
    ),
    operation_id="rides_get_active",
)
def get_active_ride(
    db: Session = Depends(get_db),
    current_user: UserProfile = Depends(get_current_user),
) -> Optional[RidePublic]:
    if current_user.role == UserRole.customer:
        rides = live_views.customer_active_rides(db, current_user.id)
    elif current_user.role == UserRole.driver:
        rides = live_views.driver_active_rides(db, current_user.id)
    else:
        raise RoleRequiredError()
    return rides[0] if rides else None


@router.get(
    "/pending",
    response_model=List[RidePublic],
    summary="List pending ride requests",
    description="Snapshot of the pending-requests view: every pending ride, newest first.",
    operation_id="rides_list_pending",
)
def list_pending_rides(
    db: Session = Depends(get_db),
    _: UserProfile = Depends(require_driver),
) -> List[RidePublic]:
    return live_views.pending_requests(db)


@router.get(
    "/{ride_id}",
    response_model=RidePublic,
    summary="Get ride by id",
    description="Return ride details to its customer, its driver, or any driver while it is pending.",
    operation_id="rides_get_by_id",
)
def get_ride(
    ride_id: str,
    db: Session = Depends(get_db),
    current_user: UserProfile = Depends(get_current_user),
) -> RidePublic:
    ride = ride_lifecycle.get_ride_for(db, ride_id, current_user.id, current_user.role)
    return ride_lifecycle.ride_to_public(ride)


@router.post(
    "/{ride_id}/accept",
    response_model=RidePublic,
    summary="Accept a pending ride",
    description="Online driver accepts a pending ride. Exactly one of several racing drivers succeeds; others get 409.",
    operation_id="rides_accept",
)
def accept_ride(
    ride_id: str,
    database: Database = Depends(get_database),
    current_user: UserProfile = Depends(require_driver),
) -> RidePublic:
    """
    Accept a ride.

    Rules:
    - Ride must still be pending at write time.
    - Driver must be online and must not hold another active ride.
    """
    return ride_lifecycle.accept_ride(
        database,
        ride_id,
        driver_id=current_user.id,
        driver_name=display_name_for(current_user),
    )


@router.post(
    "/{ride_id}/reject",
    response_model=RidePublic,
    summary="Reject a pending ride",
    description="Driver rejects a pending ride. Rejected rides are terminal and are not offered again.",
    operation_id="rides_reject",
)
def reject_ride(
    ride_id: str,
    database: Database = Depends(get_database),
    current_user: UserProfile = Depends(require_driver),
) -> RidePublic:
    return ride_lifecycle.reject_ride(database, ride_id, driver_id=current_user.id)


@router.post(
    "/{ride_id}/cancel",
    response_model=RidePublic,
    summary="Cancel a ride",
    description="Customer cancels their own pending or accepted ride.",
    operation_id="rides_cancel",
)
def cancel_ride(
    ride_id: str,
    database: Database = Depends(get_database),
    current_user: UserProfile = Depends(require_customer),
) -> RidePublic:
    return ride_lifecycle.cancel_ride(database, ride_id, customer_id=current_user.id)


@router.patch(
    "/{ride_id}/status",
    response_model=RidePublic,
    summary="Advance ride status",
    description="Assigned driver moves the ride accepted -> in_progress -> completed.",
    operation_id="rides_update_status",
)
def update_ride_status(
    ride_id: str,
    payload: RideStatusUpdateRequest,
    database: Database = Depends(get_database),
    current_user: UserProfile = Depends(require_driver),
) -> RidePublic:
    return ride_lifecycle.update_ride_status(
        database,
        ride_id,
        driver_id=current_user.id,
        status=RideStatus(payload.status),
    )


@router.get(
    "/{ride_id}/history",
    response_model=RideHistoryResponse,
    summary="Get ride event history",
    description="Return ride_events for a ride (oldest to newest) if authorized.",
    operation_id="rides_get_history",
)
def get_ride_history(
    ride_id: str,
    db: Session = Depends(get_db),
    current_user: UserProfile = Depends(get_current_user),
) -> RideHistoryResponse:
    ride_lifecycle.get_ride_for(db, ride_id, current_user.id, current_user.role)
    events = list(
        db.scalars(
            select(RideEvent).where(RideEvent.ride_id == ride_id).order_by(RideEvent.created_at.asc())
        ).all()
    )
    return RideHistoryResponse(ride_id=ride_id, events=[ride_lifecycle.event_to_public(e) for e in events])
