"""
FastAPI application entrypoint for the E-Rickshaw Finder backend.

Provides:
- Health check
- Sign-in / sign-out (/auth/*)
- Profile and role selection (/users/*)
- Driver live state (/drivers/*)
- Ride lifecycle (/rides/*)
- Live views and location reporting over WebSockets (/ws/*)

Run with:
    uvicorn src.api.main:create_app --factory

Configuration: see src/api/config.py (DATABASE_URL and JWT_SECRET_KEY are required).
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from src.api.config import Settings, load_settings
from src.api.db import Database
from src.api.logging_config import configure_logging
from src.api.routers import auth as auth_router
from src.api.routers import drivers as drivers_router
from src.api.routers import rides as rides_router
from src.api.routers import users as users_router
from src.api.routers import ws as ws_router
from src.api.security import TokenDenylist
from src.api.services.exceptions import RideServiceError
from src.api.services.location_reporting import ReporterRegistry

logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "health", "description": "Health and readiness endpoints."},
    {"name": "auth", "description": "Registration, sign-in and sign-out endpoints."},
    {"name": "users", "description": "User profile and role selection endpoints."},
    {"name": "drivers", "description": "Driver details, online status, location, and discovery endpoints."},
    {"name": "rides", "description": "Ride requests, acceptance, lifecycle, and history endpoints."},
    {
        "name": "realtime",
        "description": "WebSocket live views and driver location reporting (see /docs/ws).",
    },
]


async def _handle_service_error(request: Request, exc: RideServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


async def _handle_store_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Store error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Store unavailable; please retry."})


# PUBLIC_INTERFACE
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application around one Database handle."""
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    database = Database(settings)
    database.create_all()
    reporters = ReporterRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        reporters.stop_all()
        database.dispose()
        logger.info("Shut down cleanly")

    app = FastAPI(
        title="E-Rickshaw Finder Backend",
        description="Backend API matching customers with e-rickshaw drivers.",
        version="0.1.0",
        openapi_tags=openapi_tags,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.database = database
    app.state.denylist = TokenDenylist()
    app.state.reporters = reporters

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RideServiceError, _handle_service_error)
    app.add_exception_handler(SQLAlchemyError, _handle_store_error)

    app.include_router(auth_router.router)
    app.include_router(users_router.router)
    app.include_router(drivers_router.router)
    app.include_router(rides_router.router)
    app.include_router(ws_router.router)

    app.add_api_route(
        "/",
        health_check,
        methods=["GET"],
        tags=["health"],
        summary="Health check",
        description="Simple health check endpoint.",
        operation_id="health_check",
    )
    app.add_api_route(
        "/docs/ws",
        websocket_usage_guide,
        methods=["GET"],
        tags=["realtime"],
        summary="WebSocket usage guide",
        description="Human-readable documentation for WebSocket endpoints (OpenAPI does not fully model WebSockets).",
        operation_id="docs_websocket_usage",
    )
    return app


def health_check():
    """Return a simple health response."""
    return {"message": "Healthy"}


def websocket_usage_guide():
    """
    WebSocket usage guide.

    Authentication:
    - Provide JWT via header: Authorization: Bearer <token>
      OR via query: ?token=<token>

    Live views (server sends the full result list on every change):
    - ws /ws/drivers/online   (customer; optional lat, lng, radius_km)
    - ws /ws/rides/active     (customer)
    - ws /ws/rides/pending    (driver)
    - ws /ws/rides/assigned   (driver)

    Location reporting:
    - ws /ws/drivers/me/location (driver, must be online)
      * Send: {"type":"location","lat":<float>,"lng":<float>,"ts": optional}
      * Send: {"type":"error","code":"PERMISSION_DENIED"} to report a device failure;
        the driver is forced offline.

    Notes:
    - Heartbeats on view channels are JSON "ping" messages every ~20 seconds.
    - Clients may respond with {"type":"pong"}.
    """
    return {
        "auth": {
            "header": "Authorization: Bearer <JWT>",
            "query": "?token=<JWT>",
        },
        "views": {
            "nearby_drivers": "/ws/drivers/online",
            "customer_active_ride": "/ws/rides/active",
            "pending_requests": "/ws/rides/pending",
            "driver_active_ride": "/ws/rides/assigned",
        },
        "location": "/ws/drivers/me/location",
        "messages": {
            "driver_send": [
                {"type": "location", "lat": 12.9, "lng": 77.6, "ts": "optional"},
                {"type": "error", "code": "PERMISSION_DENIED"},
            ],
            "server_types": ["snapshot", "ping", "error", "ack", "location_saved", "offline", "stopped"],
        },
    }
