"""
WebSocket routes for live views and driver location reporting.

Endpoints:
- /ws/drivers/online       : customer; online drivers (optionally within lat/lng/radius_km)
- /ws/rides/active         : customer; the customer's active ride
- /ws/rides/pending        : driver; every pending ride request
- /ws/rides/assigned       : driver; the driver's accepted/in-progress ride
- /ws/drivers/me/location  : driver; stream of geolocation fixes from the device

Auth:
- Provide JWT via `Authorization: Bearer <token>` OR query param `?token=<token>`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from fastapi import APIRouter, HTTPException, WebSocket
from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocketDisconnect, WebSocketState

from src.api.db import Database
from src.api.deps import authenticate_ws_user
from src.api.models.user import UserRole
from src.api.realtime import Connection, OpenView, close_with_error, run_view_session, safe_send_json
from src.api.routers.drivers import validate_proximity_args
from src.api.services import live_views, profiles
from src.api.services.exceptions import RideServiceError
from src.api.services.location_reporting import GeolocationError, LocationFix, LocationReporter

router = APIRouter(prefix="/ws", tags=["realtime"])
logger = logging.getLogger(__name__)

ViewOpener = Callable[[Database, str], OpenView]


async def _accept_and_authenticate(websocket: WebSocket, role: UserRole) -> Optional[Connection]:
    # Accept early so client gets WS upgrade; on auth failure we close with 1008.
    await websocket.accept()
    database: Database = websocket.app.state.database
    try:
        user = await run_in_threadpool(authenticate_ws_user, websocket, database, role)
    except HTTPException as e:
        await close_with_error(websocket, str(e.detail))
        return None
    except RideServiceError as e:
        await close_with_error(websocket, e.detail)
        return None
    return Connection(
        websocket=websocket,
        user_id=user.id,
        role=role.value,
        connected_at=time.time(),
        send_timeout=websocket.app.state.settings.ws_send_timeout_seconds,
    )


async def _serve_view(websocket: WebSocket, *, role: UserRole, view: str, opener: ViewOpener) -> None:
    conn = await _accept_and_authenticate(websocket, role)
    if conn is None:
        return
    database: Database = websocket.app.state.database
    await run_view_session(
        conn,
        view=view,
        open_view=opener(database, conn.user_id),
        ping_interval=websocket.app.state.settings.ws_ping_interval_seconds,
    )
    if websocket.client_state == WebSocketState.CONNECTED:
        await websocket.close()


@router.websocket("/drivers/online")
async def ws_online_drivers(
    websocket: WebSocket,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius_km: Optional[float] = None,
) -> None:
    """
    Customer WebSocket: online drivers, re-sent in full on every change.

    Server messages (JSON):
    - {"type":"snapshot","view":"nearby_drivers","items":[...]}
    - {"type":"ping", ...} heartbeat
    """
    try:
        center = validate_proximity_args(lat, lng, radius_km)
    except HTTPException as e:
        await websocket.accept()
        await close_with_error(websocket, str(e.detail))
        return

    def opener(database: Database, user_id: str) -> OpenView:
        return lambda cb, err: live_views.watch_nearby_drivers(
            database.hub, cb, near=center, radius_km=radius_km, on_error=err
        )

    await _serve_view(websocket, role=UserRole.customer, view="nearby_drivers", opener=opener)


@router.websocket("/rides/active")
async def ws_customer_active_ride(websocket: WebSocket) -> None:
    """Customer WebSocket: the customer's pending/accepted/in-progress ride."""

    def opener(database: Database, user_id: str) -> OpenView:
        return lambda cb, err: live_views.watch_customer_active_ride(database.hub, user_id, cb, on_error=err)

    await _serve_view(websocket, role=UserRole.customer, view="customer_active_ride", opener=opener)


@router.websocket("/rides/pending")
async def ws_pending_requests(websocket: WebSocket) -> None:
    """Driver WebSocket: every pending ride request, newest first."""

    def opener(database: Database, user_id: str) -> OpenView:
        return lambda cb, err: live_views.watch_pending_requests(database.hub, cb, on_error=err)

    await _serve_view(websocket, role=UserRole.driver, view="pending_requests", opener=opener)


@router.websocket("/rides/assigned")
async def ws_driver_active_ride(websocket: WebSocket) -> None:
    """Driver WebSocket: the ride currently bound to this driver."""

    def opener(database: Database, user_id: str) -> OpenView:
        return lambda cb, err: live_views.watch_driver_active_ride(database.hub, user_id, cb, on_error=err)

    await _serve_view(websocket, role=UserRole.driver, view="driver_active_ride", opener=opener)


@router.websocket("/drivers/me/location")
async def ws_driver_location(websocket: WebSocket) -> None:
    """
    Driver WebSocket: the device's geolocation watch.

    Client messages (JSON):
    - {"type":"location","lat":..., "lng":..., "ts": optional epoch seconds}
    - {"type":"error","code":"PERMISSION_DENIED"|"POSITION_UNAVAILABLE"|"TIMEOUT"}

    Server messages (JSON):
    - {"type":"location_saved","lat":...,"lng":...}
    - {"type":"offline","reason":...} after a geolocation error forced the driver offline
    - {"type":"stopped"} when the driver went offline from another client
    """
    conn = await _accept_and_authenticate(websocket, UserRole.driver)
    if conn is None:
        return
    database: Database = websocket.app.state.database
    settings = websocket.app.state.settings

    driver = await run_in_threadpool(profiles.get_or_create_driver_profile, database, conn.user_id)
    if not driver.is_online:
        await close_with_error(websocket, "Go online before reporting location.")
        return

    async def fixes():
        while True:
            try:
                msg = await websocket.receive_json()
            except WebSocketDisconnect:
                return
            except ValueError:
                await safe_send_json(conn, {"type": "error", "message": "Invalid message format; expected JSON."})
                continue
            if not isinstance(msg, dict):
                continue

            mtype = msg.get("type")
            if mtype in ("location", "driver_location"):
                lat = msg.get("lat")
                lng = msg.get("lng")
                if lat is None or lng is None:
                    await safe_send_json(conn, {"type": "error", "message": "Missing lat/lng."})
                    continue
                ts = msg.get("ts")
                yield LocationFix(float(lat), float(lng), float(ts) if ts is not None else None)
            elif mtype == "error":
                raise GeolocationError(str(msg.get("code") or "POSITION_UNAVAILABLE"), msg.get("message"))
            # pong and unknown types are ignored (forward compatibility).

    async def on_written(fix: LocationFix) -> None:
        await safe_send_json(conn, {"type": "location_saved", "lat": fix.lat, "lng": fix.lng})

    reporter = LocationReporter(
        database,
        conn.user_id,
        fixes(),
        max_age_seconds=settings.location_max_age_seconds,
        on_written=on_written,
        registry=websocket.app.state.reporters,
    )
    task = reporter.start()
    await asyncio.wait({task})

    if task.cancelled():
        await safe_send_json(conn, {"type": "stopped"})
    elif task.exception() is not None:
        logger.error("Location reporting for driver %s failed", conn.user_id, exc_info=task.exception())
        await safe_send_json(conn, {"type": "error", "message": "Location could not be saved; please retry."})
    elif reporter.forced_offline is not None:
        await safe_send_json(conn, {"type": "offline", "reason": reporter.forced_offline.message})

    if websocket.client_state == WebSocketState.CONNECTED:
        await websocket.close()
