from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from src.api.models.user import UserRole


class UserPublic(BaseModel):
    id: str = Field(..., description="User id")
    email: str = Field(..., description="Email address")
    display_name: Optional[str] = Field(default=None, description="Display name")
    photo_url: Optional[str] = Field(default=None, description="Avatar URL")
    role: Optional[UserRole] = Field(default=None, description="customer, driver or null until chosen")
    created_at: datetime = Field(..., description="Profile creation timestamp")
    updated_at: datetime = Field(..., description="Last profile update timestamp")


class RoleAssignRequest(BaseModel):
    role: UserRole = Field(..., description="Role to assign: customer or driver")


class LandingResponse(BaseModel):
    path: str = Field(..., description="Dashboard route the user should be sent to")
    role: Optional[UserRole] = Field(default=None, description="Current role, if any")
