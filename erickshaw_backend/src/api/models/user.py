import enum
from datetime import datetime

from sqlalchemy import Enum, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from src.api.models.base import Base, UTCDateTime


class UserRole(str, enum.Enum):
    """User roles supported by the application."""
    customer = "customer"
    driver = "driver"
    admin = "admin"


class Account(Base):
    """
    Identity record backing sign-in.

    Kept apart from UserProfile: the account is what the identity provider
    knows about a person, the profile is what the application knows.
    """
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    email: Mapped[str] = mapped_column(Text, unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    photo_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        server_default=func.now(),
    )


class UserProfile(Base):
    """
    Per-user application profile, created on first sign-in.

    role stays null until the user picks one; it is assigned once.
    """
    __tablename__ = "user_profiles"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    email: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    photo_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    role: Mapped[UserRole | None] = mapped_column(Enum(UserRole, name="user_role"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
