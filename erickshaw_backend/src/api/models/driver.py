from datetime import datetime

from sqlalchemy import Boolean, Float, ForeignKey, String, Text, false
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.api.models.base import Base, UTCDateTime


class DriverProfile(Base):
    """
    Live state of a driver, keyed by the same id as the driver's UserProfile.

    Notes:
    - Created lazily the first time the driver opens the driver view.
    - location_lat/location_lng are written by the location reporting loop
      while is_online is true; both are null until the first fix.
    """

    __tablename__ = "driver_profiles"

    id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("user_profiles.id", ondelete="CASCADE"),
        primary_key=True,
    )

    license_number: Mapped[str | None] = mapped_column(Text, nullable=True)
    vehicle_model: Mapped[str | None] = mapped_column(Text, nullable=True)
    vehicle_plate: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_online: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false(), index=True)

    location_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    location_lng: Mapped[float | None] = mapped_column(Float, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    user = relationship("UserProfile", lazy="joined")
