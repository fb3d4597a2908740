from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from src.api.db import Database, get_database, get_db
from src.api.deps import get_current_user, require_driver
from src.api.models.user import UserProfile
from src.api.schemas.driver import (
    DriverAvailabilityUpdate,
    DriverLocationUpdate,
    DriverProfileUpsert,
    DriverPublic,
    LatLng,
)
from src.api.services import live_views, profiles

router = APIRouter(prefix="/drivers", tags=["drivers"])

MAX_RADIUS_KM = 200


def validate_proximity_args(
    lat: Optional[float], lng: Optional[float], radius_km: Optional[float]
) -> Optional[LatLng]:
    """Validate that proximity params are provided consistently; return the center if any."""
    any_prox = lat is not None or lng is not None or radius_km is not None
    if not any_prox:
        return None
    if lat is None or lng is None or radius_km is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="lat, lng, and radius_km must be provided together for proximity filtering.",
        )
    if not 0 < radius_km <= MAX_RADIUS_KM:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"radius_km must be greater than 0 and at most {MAX_RADIUS_KM}.",
        )
    try:
        return LatLng(latitude=lat, longitude=lng)
    except ValidationError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="lat must be within [-90, 90] and lng within [-180, 180].",
        )


@router.get(
    "/me",
    response_model=DriverPublic,
    summary="Get current driver's profile",
    description="Return the authenticated driver's live-state record, creating an offline one on first visit.",
    operation_id="drivers_get_me",
)
def get_my_driver_profile(
    current_user: UserProfile = Depends(require_driver),
    database: Database = Depends(get_database),
) -> DriverPublic:
    """
    Get (or lazily create) the current driver's profile.

    Auth:
    - Bearer JWT
    - role must be 'driver'
    """
    return profiles.get_or_create_driver_profile(database, current_user.id)


@router.put(
    "/me",
    response_model=DriverPublic,
    summary="Create or update driver details",
    description="Upsert the authenticated driver's license and vehicle details.",
    operation_id="drivers_upsert_me",
)
def upsert_my_driver_profile(
    payload: DriverProfileUpsert,
    current_user: UserProfile = Depends(require_driver),
    database: Database = Depends(get_database),
) -> DriverPublic:
    return profiles.upsert_driver_details(database, current_user.id, payload)


@router.patch(
    "/me/availability",
    response_model=DriverPublic,
    summary="Go online / offline",
    description=(
        "Toggle whether the authenticated driver is online. Going offline stops any running "
        "location reporting for the driver before the flag is written."
    ),
    operation_id="drivers_update_availability",
)
def update_my_availability(
    payload: DriverAvailabilityUpdate,
    request: Request,
    current_user: UserProfile = Depends(require_driver),
    database: Database = Depends(get_database),
) -> DriverPublic:
    """
    Set the driver's online flag.

    Creates the driver profile if absent (common during onboarding).
    """
    profiles.get_or_create_driver_profile(database, current_user.id)
    if not payload.is_online:
        request.app.state.reporters.stop_driver(current_user.id)
    return profiles.set_online(database, current_user.id, payload.is_online)


@router.patch(
    "/me/location",
    response_model=DriverPublic,
    summary="Report a one-shot location fix",
    description="Persist the authenticated driver's last known lat/lng and refresh updated_at.",
    operation_id="drivers_update_location",
)
def update_my_location(
    payload: DriverLocationUpdate,
    current_user: UserProfile = Depends(require_driver),
    database: Database = Depends(get_database),
) -> DriverPublic:
    """
    Update driver's last known location.

    Note:
    - Location updates do not change is_online; use the availability endpoint.
    """
    profiles.get_or_create_driver_profile(database, current_user.id)
    return profiles.update_location(database, current_user.id, payload.lat, payload.lng)


@router.get(
    "/online",
    response_model=List[DriverPublic],
    summary="List online drivers",
    description=(
        "Snapshot of the nearby-drivers view: every online driver with a known position. Optionally filter "
        "by proximity using lat/lng/radius_km (Haversine computed server-side)."
    ),
    operation_id="drivers_list_online",
)
def list_online_drivers(
    lat: Optional[float] = Query(default=None, ge=-90, le=90, description="Filter center latitude."),
    lng: Optional[float] = Query(default=None, ge=-180, le=180, description="Filter center longitude."),
    radius_km: Optional[float] = Query(
        default=None,
        gt=0,
        le=MAX_RADIUS_KM,
        description="Radius in kilometers (max 200km) for proximity filtering.",
    ),
    _: UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> List[DriverPublic]:
    """
    List online drivers.

    Not restricted to customers; any signed-in user may look.
    """
    center = validate_proximity_args(lat, lng, radius_km)
    return live_views.online_drivers(db, center, radius_km)
