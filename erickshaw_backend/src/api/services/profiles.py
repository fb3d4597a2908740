"""
User profiles, role assignment and driver live state.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from src.api.db import Database
from src.api.models.driver import DriverProfile
from src.api.models.user import UserProfile, UserRole
from src.api.realtime import DRIVERS
from src.api.schemas.driver import DriverProfileUpsert, DriverPublic, LatLng
from src.api.schemas.user import UserPublic
from src.api.services.exceptions import (
    DriverProfileNotFoundError,
    ProfileNotFoundError,
    RoleAlreadyAssignedError,
    RoleRequiredError,
)

logger = logging.getLogger(__name__)

# Dashboard routes per role; users without a role pick one first.
LANDING_PATHS = {
    None: "/select-role",
    UserRole.customer: "/customer-dashboard",
    UserRole.driver: "/driver-dashboard",
}
SELECTABLE_ROLES = (UserRole.customer, UserRole.driver)


def user_to_public(profile: UserProfile) -> UserPublic:
    return UserPublic(
        id=profile.id,
        email=profile.email,
        display_name=profile.display_name,
        photo_url=profile.photo_url,
        role=profile.role,
        created_at=profile.created_at,
        updated_at=profile.updated_at,
    )


def driver_to_public(d: DriverProfile) -> DriverPublic:
    """Convert ORM DriverProfile row to public schema."""
    location = None
    if d.location_lat is not None and d.location_lng is not None:
        location = LatLng(latitude=d.location_lat, longitude=d.location_lng)
    return DriverPublic(
        id=d.id,
        display_name=d.user.display_name if d.user is not None else None,
        license_number=d.license_number,
        vehicle_model=d.vehicle_model,
        vehicle_plate=d.vehicle_plate,
        is_online=bool(d.is_online),
        current_location=location,
        updated_at=d.updated_at,
    )


def display_name_for(profile: UserProfile) -> str:
    """Name snapshotted onto rides; falls back to the email's local part."""
    if profile.display_name:
        return profile.display_name
    return profile.email.split("@", 1)[0]


# PUBLIC_INTERFACE
def get_or_create_user_profile(
    database: Database,
    db: Session,
    *,
    user_id: str,
    email: str,
    display_name: Optional[str] = None,
    photo_url: Optional[str] = None,
) -> UserProfile:
    """
    Return the user's profile, creating it with role=null on first sign-in.
    """
    profile = db.get(UserProfile, user_id)
    if profile is not None:
        return profile

    now = database.clock.now()
    profile = UserProfile(
        id=user_id,
        email=email,
        display_name=display_name,
        photo_url=photo_url,
        role=None,
        created_at=now,
        updated_at=now,
    )
    db.add(profile)
    db.commit()
    logger.info("Created profile for user %s", user_id)
    return profile


# PUBLIC_INTERFACE
def assign_role(database: Database, user_id: str, role: UserRole) -> UserPublic:
    """
    Assign a role exactly once.

    Re-assigning the role the user already holds is a no-op; any other change
    raises RoleAlreadyAssignedError.
    """
    if role not in SELECTABLE_ROLES:
        raise RoleRequiredError(f"Role '{role.value}' cannot be self-assigned.")

    with database.session_scope() as db:
        # Only ever fills a null role, so two racing requests cannot both win.
        result = db.execute(
            update(UserProfile)
            .where(UserProfile.id == user_id, UserProfile.role.is_(None))
            .values(role=role, updated_at=database.clock.now())
            .execution_options(synchronize_session=False)
        )
        profile = db.get(UserProfile, user_id, populate_existing=True)
        if profile is None:
            raise ProfileNotFoundError()
        if result.rowcount == 0 and profile.role != role:
            raise RoleAlreadyAssignedError()
        public = user_to_public(profile)
    if result.rowcount:
        logger.info("Assigned role %s to user %s", role.value, user_id)
    return public


def landing_path(role: Optional[UserRole]) -> str:
    return LANDING_PATHS.get(role, "/login")


# PUBLIC_INTERFACE
def get_or_create_driver_profile(database: Database, user_id: str) -> DriverPublic:
    """Return the driver's live-state record, creating an offline one on first visit."""
    created = False
    with database.session_scope() as db:
        driver = db.get(DriverProfile, user_id)
        if driver is None:
            driver = DriverProfile(id=user_id, is_online=False, updated_at=database.clock.now())
            db.add(driver)
            db.flush()
            db.refresh(driver)
            created = True
        public = driver_to_public(driver)
    if created:
        logger.info("Created driver profile for %s", user_id)
    return public


# PUBLIC_INTERFACE
def upsert_driver_details(database: Database, user_id: str, payload: DriverProfileUpsert) -> DriverPublic:
    """Create or update vehicle/license details; nulls clear values."""
    with database.session_scope() as db:
        driver = db.get(DriverProfile, user_id)
        if driver is None:
            driver = DriverProfile(id=user_id, is_online=False)
            db.add(driver)

        driver.license_number = payload.license_number.strip() if payload.license_number is not None else None
        driver.vehicle_model = payload.vehicle_model.strip() if payload.vehicle_model is not None else None
        driver.vehicle_plate = payload.vehicle_plate.strip() if payload.vehicle_plate is not None else None
        driver.updated_at = database.clock.now()
        db.flush()
        db.refresh(driver)
        public = driver_to_public(driver)
    database.hub.publish(DRIVERS)
    return public


# PUBLIC_INTERFACE
def set_online(database: Database, user_id: str, is_online: bool) -> DriverPublic:
    """
    Toggle the driver's online flag and notify live views.

    Raises:
        DriverProfileNotFoundError: if the driver never opened the driver view.
    """
    with database.session_scope() as db:
        driver = db.get(DriverProfile, user_id)
        if driver is None:
            raise DriverProfileNotFoundError()
        driver.is_online = is_online
        driver.updated_at = database.clock.now()
        db.flush()
        public = driver_to_public(driver)
    database.hub.publish(DRIVERS)
    logger.info("Driver %s is now %s", user_id, "online" if is_online else "offline")
    return public


# PUBLIC_INTERFACE
def update_location(database: Database, user_id: str, lat: float, lng: float) -> DriverPublic:
    """
    Persist the driver's last known position.

    Location updates do not change is_online.
    """
    with database.session_scope() as db:
        driver = db.get(DriverProfile, user_id)
        if driver is None:
            raise DriverProfileNotFoundError()
        driver.location_lat = lat
        driver.location_lng = lng
        driver.updated_at = database.clock.now()
        db.flush()
        public = driver_to_public(driver)
    database.hub.publish(DRIVERS)
    return public
