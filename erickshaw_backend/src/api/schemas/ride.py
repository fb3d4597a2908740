from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, StringConstraints

from src.api.models.ride import RideStatus
from src.api.schemas.driver import LatLng

# Surrounding whitespace is dropped before the length check, so "   " is rejected.
Address = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=500)]


class RideCreateRequest(BaseModel):
    pickup: LatLng = Field(..., description="Pickup position.")
    pickup_address: Address = Field(..., description="Human-readable pickup address.")
    destination: LatLng = Field(..., description="Destination position.")
    destination_address: Address = Field(..., description="Human-readable destination address.")


class RideStatusUpdateRequest(BaseModel):
    status: Literal["in_progress", "completed"] = Field(
        ...,
        description="Driver progress update. Allowed: in_progress (from accepted), completed (from in_progress).",
    )


class RidePublic(BaseModel):
    id: str = Field(..., description="Ride id.")
    customer_id: str = Field(..., description="Customer who requested the ride.")
    customer_name: str = Field(..., description="Customer name at request time.")

    pickup: LatLng = Field(..., description="Pickup position.")
    pickup_address: str = Field(..., description="Pickup address.")
    destination: LatLng = Field(..., description="Destination position.")
    destination_address: str = Field(..., description="Destination address.")

    driver_id: Optional[str] = Field(default=None, description="Accepting driver id (nullable).")
    driver_name: Optional[str] = Field(default=None, description="Accepting driver name (nullable).")

    status: RideStatus = Field(..., description="Current ride status.")
    fare: Optional[int] = Field(default=None, description="Unused placeholder; always null.")

    requested_at: datetime = Field(..., description="When the ride was requested.")
    accepted_at: Optional[datetime] = Field(default=None, description="When a driver accepted.")
    started_at: Optional[datetime] = Field(default=None, description="When the ride started.")
    completed_at: Optional[datetime] = Field(default=None, description="When the ride completed.")
    updated_at: datetime = Field(..., description="When the ride was last updated.")


class RideEventPublic(BaseModel):
    id: str = Field(..., description="Event id.")
    ride_id: str = Field(..., description="Ride id.")
    event_type: str = Field(..., description="Event type string.")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Event payload JSON.")
    created_at: datetime = Field(..., description="When event was created.")


class RideHistoryResponse(BaseModel):
    ride_id: str = Field(..., description="Ride id.")
    events: List[RideEventPublic] = Field(..., description="Ordered list of ride events (oldest -> newest).")
