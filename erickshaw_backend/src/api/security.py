import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from passlib.context import CryptContext

from src.api.config import Settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    """Hash a plaintext password using bcrypt."""
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a plaintext password against a stored hash."""
    return pwd_context.verify(password, password_hash)


def create_access_token(
    settings: Settings,
    *,
    subject: str,
    email: str,
    display_name: Optional[str] = None,
    photo_url: Optional[str] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    """
    Create a signed JWT access token.

    Payload fields:
    - sub: account id
    - email, name, picture: identity claims used to seed the user profile
    - jti: token id, used for sign-out
    - exp: expiration (UTC)
    - iat: issued-at (UTC)
    """
    expire_in = expires_minutes if expires_minutes is not None else settings.access_token_expire_minutes
    now = datetime.now(timezone.utc)
    payload: Dict[str, Any] = {
        "sub": subject,
        "email": email,
        "name": display_name,
        "picture": photo_url,
        "jti": uuid.uuid4().hex,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expire_in)).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(settings: Settings, token: str) -> Dict[str, Any]:
    """Decode and validate a JWT token, raising jwt exceptions if invalid."""
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])


class TokenDenylist:
    """
    Token ids revoked by sign-out, kept until their expiry passes.

    In-memory, like the live query hub; a multi-process deployment would keep
    this in a shared store.
    """

    def __init__(self):
        self._revoked: Dict[str, int] = {}
        self._lock = threading.Lock()

    def revoke(self, jti: str, exp: int) -> None:
        with self._lock:
            self._prune()
            self._revoked[jti] = exp

    def is_revoked(self, jti: Optional[str]) -> bool:
        if not jti:
            return False
        with self._lock:
            return jti in self._revoked

    def _prune(self) -> None:
        now = int(datetime.now(timezone.utc).timestamp())
        for jti in [j for j, exp in self._revoked.items() if exp < now]:
            del self._revoked[jti]
