from dataclasses import dataclass
from typing import Dict, Optional

import pytest
from fastapi.testclient import TestClient

from src.api.config import Settings
from src.api.main import create_app
from src.api.models.driver import DriverProfile
from src.api.models.user import UserProfile, UserRole
from src.api.schemas.driver import LatLng

PICKUP = LatLng(latitude=12.9, longitude=77.6)
DESTINATION = LatLng(latitude=12.91, longitude=77.61)


@dataclass
class Actor:
    id: str
    name: str
    token: str

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'rides.db'}",
        jwt_secret_key="test-secret",
        ws_ping_interval_seconds=60,
        log_level="WARNING",
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def database(app):
    return app.state.database


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def register(client: TestClient, email: str, name: Optional[str] = None) -> Actor:
    resp = client.post(
        "/auth/register",
        json={"email": email, "password": "rickshaw-pass", "display_name": name},
    )
    assert resp.status_code == 201, resp.text
    body = resp.json()
    return Actor(id=body["user"]["id"], name=name or email.split("@")[0], token=body["access_token"])


@pytest.fixture
def make_customer(client):
    def factory(name: str = "Asha") -> Actor:
        actor = register(client, f"{name.lower()}@rickshaw.in", name)
        resp = client.put("/users/me/role", json={"role": "customer"}, headers=actor.headers)
        assert resp.status_code == 200, resp.text
        return actor

    return factory


@pytest.fixture
def make_driver(client):
    def factory(name: str = "Ravi", online: bool = True, location: Optional[LatLng] = PICKUP) -> Actor:
        actor = register(client, f"{name.lower()}@rickshaw.in", name)
        resp = client.put("/users/me/role", json={"role": "driver"}, headers=actor.headers)
        assert resp.status_code == 200, resp.text
        assert client.get("/drivers/me", headers=actor.headers).status_code == 200
        if location is not None:
            resp = client.patch(
                "/drivers/me/location",
                json={"lat": location.latitude, "lng": location.longitude},
                headers=actor.headers,
            )
            assert resp.status_code == 200, resp.text
        if online:
            resp = client.patch("/drivers/me/availability", json={"is_online": True}, headers=actor.headers)
            assert resp.status_code == 200, resp.text
        return actor

    return factory


def seed_user(database, user_id: str, role: Optional[UserRole], name: str) -> UserProfile:
    """Insert a profile directly, bypassing sign-in."""
    now = database.clock.now()
    with database.session_scope() as db:
        profile = UserProfile(
            id=user_id,
            email=f"{user_id}@rickshaw.in",
            display_name=name,
            role=role,
            created_at=now,
            updated_at=now,
        )
        db.add(profile)
    return profile


def seed_driver(database, user_id: str, name: str, online: bool = True, location: Optional[LatLng] = PICKUP):
    seed_user(database, user_id, UserRole.driver, name)
    with database.session_scope() as db:
        db.add(
            DriverProfile(
                id=user_id,
                is_online=online,
                location_lat=location.latitude if location else None,
                location_lng=location.longitude if location else None,
                updated_at=database.clock.now(),
            )
        )


def ride_body(pickup=(12.9, 77.6), destination=(12.91, 77.61)):
    return {
        "pickup": {"latitude": pickup[0], "longitude": pickup[1]},
        "pickup_address": "MG Road",
        "destination": {"latitude": destination[0], "longitude": destination[1]},
        "destination_address": "Indiranagar",
    }
