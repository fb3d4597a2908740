from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class LatLng(BaseModel):
    latitude: float = Field(..., ge=-90, le=90, description="Latitude in degrees.")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude in degrees.")


class DriverProfileUpsert(BaseModel):
    license_number: Optional[str] = Field(default=None, max_length=100, description="Driver license number.")
    vehicle_model: Optional[str] = Field(default=None, max_length=200, description="E-rickshaw make/model.")
    vehicle_plate: Optional[str] = Field(default=None, max_length=50, description="Registration plate.")


class DriverAvailabilityUpdate(BaseModel):
    is_online: bool = Field(..., description="Whether the driver is online and receiving ride requests.")


class DriverLocationUpdate(BaseModel):
    lat: float = Field(..., ge=-90, le=90, description="Latitude in degrees.")
    lng: float = Field(..., ge=-180, le=180, description="Longitude in degrees.")


class DriverPublic(BaseModel):
    id: str = Field(..., description="Driver user id (same as user_profiles.id).")
    display_name: Optional[str] = Field(default=None, description="Driver's display name.")
    license_number: Optional[str] = Field(default=None, description="License number (may be null).")
    vehicle_model: Optional[str] = Field(default=None, description="Vehicle model.")
    vehicle_plate: Optional[str] = Field(default=None, description="Vehicle plate.")
    is_online: bool = Field(..., description="Current online status.")
    current_location: Optional[LatLng] = Field(default=None, description="Last reported position.")
    updated_at: datetime = Field(..., description="When driver record was last updated.")
