from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class RegisterRequest(BaseModel):
    email: EmailStr = Field(..., description="Unique email address")
    password: str = Field(..., min_length=8, max_length=128, description="Account password (min 8 chars)")
    display_name: Optional[str] = Field(default=None, max_length=200, description="Name shown to drivers/customers")
    photo_url: Optional[str] = Field(default=None, max_length=2000, description="Avatar URL")


class LoginRequest(BaseModel):
    email: EmailStr = Field(..., description="Email address")
    password: str = Field(..., min_length=1, max_length=128, description="Account password")


class IdentityPublic(BaseModel):
    id: str = Field(..., description="Account id")
    email: EmailStr = Field(..., description="Email address")
    display_name: Optional[str] = Field(default=None, description="Display name")
    photo_url: Optional[str] = Field(default=None, description="Avatar URL")


class TokenResponse(BaseModel):
    access_token: str = Field(..., description="JWT access token")
    token_type: str = Field("bearer", description="Token type (always 'bearer')")
    user: IdentityPublic = Field(..., description="Signed-in identity")
