from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import JSON, Enum, Float, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.api.models.base import Base, UTCDateTime


class RideStatus(str, enum.Enum):
    """
    Ride status values matching the enum `ride_status`.

    Lifecycle:
    - pending -> accepted | rejected | cancelled
    - accepted -> in_progress | cancelled
    - in_progress -> completed
    rejected, completed and cancelled are terminal.
    """

    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


# Statuses in which a ride still occupies its customer / its driver.
CUSTOMER_ACTIVE_STATUSES = (RideStatus.pending, RideStatus.accepted, RideStatus.in_progress)
DRIVER_ACTIVE_STATUSES = (RideStatus.accepted, RideStatus.in_progress)


def _in_clause(statuses: tuple[RideStatus, ...]) -> str:
    return "status IN (" + ", ".join(f"'{s.value}'" for s in statuses) + ")"


class RideRequest(Base):
    """
    ORM model for the `rides` table.

    customer_name and driver_name are snapshots taken when the ride is
    requested / accepted. Rows are never deleted; terminal rides are kept.
    """

    __tablename__ = "rides"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)

    customer_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("user_profiles.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    customer_name: Mapped[str] = mapped_column(Text, nullable=False)

    pickup_lat: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_lng: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_address: Mapped[str] = mapped_column(Text, nullable=False)
    destination_lat: Mapped[float] = mapped_column(Float, nullable=False)
    destination_lng: Mapped[float] = mapped_column(Float, nullable=False)
    destination_address: Mapped[str] = mapped_column(Text, nullable=False)

    driver_id: Mapped[str | None] = mapped_column(
        String(32),
        ForeignKey("user_profiles.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    driver_name: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[RideStatus] = mapped_column(
        Enum(RideStatus, name="ride_status"),
        nullable=False,
        server_default=RideStatus.pending.value,
        index=True,
    )

    # Placeholder; fares are not computed.
    fare: Mapped[int | None] = mapped_column(Integer, nullable=True)

    requested_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    accepted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    events = relationship(
        "RideEvent",
        back_populates="ride",
        lazy="selectin",
        order_by="RideEvent.created_at",
        cascade="all, delete-orphan",
    )


class RideEvent(Base):
    """
    ORM model for the `ride_events` table: the status history of a ride.
    """

    __tablename__ = "ride_events"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)

    ride_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("rides.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    event_type: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
        default=dict,
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)

    ride = relationship("RideRequest", back_populates="events")


# Extra composite indexes to support common list queries efficiently.
Index("idx_rides_customer_requested_at", RideRequest.customer_id, RideRequest.requested_at.desc())
Index("idx_rides_driver_requested_at", RideRequest.driver_id, RideRequest.requested_at.desc())
Index("idx_ride_events_ride_created_at", RideEvent.ride_id, RideEvent.created_at.asc())

# One active ride per customer and per driver, enforced by the store itself.
Index(
    "uq_rides_customer_active",
    RideRequest.customer_id,
    unique=True,
    postgresql_where=text(_in_clause(CUSTOMER_ACTIVE_STATUSES)),
    sqlite_where=text(_in_clause(CUSTOMER_ACTIVE_STATUSES)),
)
Index(
    "uq_rides_driver_active",
    RideRequest.driver_id,
    unique=True,
    postgresql_where=text(_in_clause(DRIVER_ACTIVE_STATUSES)),
    sqlite_where=text(_in_clause(DRIVER_ACTIVE_STATUSES)),
)
