"""
Shared FastAPI dependencies for authentication/authorization.

This module centralizes JWT parsing and role checks so routers can enforce
consistent access controls. The same checks back the WebSocket endpoints.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from starlette.requests import HTTPConnection

from src.api.config import Settings
from src.api.db import Database, get_database, get_db
from src.api.models.user import UserProfile, UserRole
from src.api.security import TokenDenylist, decode_token
from src.api.services.exceptions import RoleRequiredError
from src.api.services.profiles import get_or_create_user_profile

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Identity:
    """Who the identity provider says the caller is."""
    id: str
    email: str
    display_name: Optional[str] = None
    photo_url: Optional[str] = None


def _unauthorized(detail: str) -> HTTPException:
    """Create a standardized 401 exception with WWW-Authenticate header."""
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


# PUBLIC_INTERFACE
def get_settings(conn: HTTPConnection) -> Settings:
    """Return the Settings the app was built with."""
    return conn.app.state.settings


# PUBLIC_INTERFACE
def get_denylist(conn: HTTPConnection) -> TokenDenylist:
    return conn.app.state.denylist


def decode_access_token(token: str, settings: Settings, denylist: TokenDenylist) -> Dict[str, Any]:
    """
    Decode a bearer token and reject revoked or malformed ones.

    Raises:
        HTTPException(401): if token invalid/expired/revoked.
    """
    try:
        payload = decode_token(settings, token)
    except jwt.PyJWTError:
        raise _unauthorized("Invalid or expired token.")

    if not payload.get("sub") or not payload.get("email"):
        raise _unauthorized("Invalid token.")
    if denylist.is_revoked(payload.get("jti")):
        raise _unauthorized("Token has been signed out.")
    return payload


def identity_from_payload(payload: Dict[str, Any]) -> Identity:
    return Identity(
        id=str(payload["sub"]),
        email=str(payload["email"]),
        display_name=payload.get("name"),
        photo_url=payload.get("picture"),
    )


# PUBLIC_INTERFACE
def get_current_token_payload(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
    denylist: TokenDenylist = Depends(get_denylist),
) -> Dict[str, Any]:
    """
    Return decoded JWT payload for the current request.

    Authentication: Bearer JWT access token.

    Raises:
        HTTPException(401): if token missing/invalid/expired.
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise _unauthorized("Missing authentication token.")
    return decode_access_token(credentials.credentials, settings, denylist)


# PUBLIC_INTERFACE
def get_current_identity(payload: Dict[str, Any] = Depends(get_current_token_payload)) -> Identity:
    return identity_from_payload(payload)


# PUBLIC_INTERFACE
def get_current_user(
    identity: Identity = Depends(get_current_identity),
    database: Database = Depends(get_database),
    db: Session = Depends(get_db),
) -> UserProfile:
    """
    Return the caller's UserProfile, creating it on first sign-in.
    """
    return get_or_create_user_profile(
        database,
        db,
        user_id=identity.id,
        email=identity.email,
        display_name=identity.display_name,
        photo_url=identity.photo_url,
    )


def ensure_role(user: UserProfile, role: UserRole) -> None:
    """
    Raises:
        RoleRequiredError(403): if no role is chosen yet or it differs.
    """
    if user.role is None:
        raise RoleRequiredError()
    if user.role != role:
        raise RoleRequiredError(f"{role.value.capitalize()} role required.")


def require_role(role: UserRole) -> Callable[..., UserProfile]:
    """Build a dependency that admits only users holding `role`."""

    def dependency(current_user: UserProfile = Depends(get_current_user)) -> UserProfile:
        ensure_role(current_user, role)
        return current_user

    return dependency


require_customer = require_role(UserRole.customer)
require_driver = require_role(UserRole.driver)


def _extract_token_from_ws(websocket: WebSocket) -> Optional[str]:
    """
    Extract JWT from:
    - Authorization: Bearer <token>
    - ?token=<token> query
    """
    auth = websocket.headers.get("authorization")
    if auth:
        parts = auth.split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1].strip()

    token = websocket.query_params.get("token")
    if token:
        return token.strip()
    return None


# PUBLIC_INTERFACE
def authenticate_ws_user(websocket: WebSocket, database: Database, role: UserRole) -> UserProfile:
    """
    Authenticate a WebSocket connection using the same JWT logic as REST.

    Accepts token via Authorization header or `?token=...`.

    Raises:
        HTTPException(401): on missing/invalid token.
        RoleRequiredError(403): if the user lacks `role`.
    """
    token = _extract_token_from_ws(websocket)
    if not token:
        raise _unauthorized("Missing authentication token (use Authorization: Bearer ... or ?token=...).")

    payload = decode_access_token(token, websocket.app.state.settings, websocket.app.state.denylist)
    identity = identity_from_payload(payload)
    with database.SessionLocal() as db:
        user = get_or_create_user_profile(
            database,
            db,
            user_id=identity.id,
            email=identity.email,
            display_name=identity.display_name,
            photo_url=identity.photo_url,
        )
    ensure_role(user, role)
    return user
