from fastapi import APIRouter, Depends

from src.api.db import Database, get_database
from src.api.deps import get_current_user
from src.api.models.user import UserProfile
from src.api.schemas.user import LandingResponse, RoleAssignRequest, UserPublic
from src.api.services import profiles

router = APIRouter(prefix="/users", tags=["users"])


@router.get(
    "/me",
    response_model=UserPublic,
    summary="Get current user",
    description="Return the authenticated user's profile, creating it on first sign-in.",
    operation_id="users_me",
)
def get_me(current_user: UserProfile = Depends(get_current_user)) -> UserPublic:
    """
    Get the current authenticated user's profile.

    Authentication: Bearer JWT access token.
    """
    return profiles.user_to_public(current_user)


@router.put(
    "/me/role",
    response_model=UserPublic,
    summary="Choose a role",
    description=(
        "Assign the user's role (customer or driver). Allowed once; repeating the same role is a no-op, "
        "a different role is rejected with 409."
    ),
    operation_id="users_assign_role",
)
def assign_my_role(
    payload: RoleAssignRequest,
    current_user: UserProfile = Depends(get_current_user),
    database: Database = Depends(get_database),
) -> UserPublic:
    return profiles.assign_role(database, current_user.id, payload.role)


@router.get(
    "/me/landing",
    response_model=LandingResponse,
    summary="Where to send the user",
    description="Dashboard route for the user's role, or the role selection page if none is set.",
    operation_id="users_landing",
)
def get_my_landing(current_user: UserProfile = Depends(get_current_user)) -> LandingResponse:
    return LandingResponse(path=profiles.landing_path(current_user.role), role=current_user.role)
