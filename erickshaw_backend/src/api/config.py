import os
from dataclasses import dataclass, field
from typing import List


def _require_env(name: str) -> str:
    """Read a required environment variable or raise a clear error."""
    value = os.getenv(name)
    if not value:
        raise RuntimeError(
            f"Missing required environment variable: {name}. "
            "Please set it in the erickshaw_backend container .env."
        )
    return value


def _normalize_database_url(url: str) -> str:
    """
    Normalize DATABASE_URL to a SQLAlchemy-compatible URL.

    Notes:
    - Some platforms provide 'postgres://...' which SQLAlchemy expects as
      'postgresql://...'.
    """
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """
    Runtime configuration for the backend.

    Built once at startup (see create_app) and carried on app.state so that
    nothing reads the environment after boot.
    """

    database_url: str
    jwt_secret_key: str
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    database_echo: bool = False
    cors_allow_origins: List[str] = field(default_factory=lambda: ["*"])
    # Geolocation fixes older than this are treated as stale and dropped.
    location_max_age_seconds: float = 10.0
    ws_ping_interval_seconds: float = 20.0
    ws_send_timeout_seconds: float = 3.0
    log_level: str = "INFO"


# PUBLIC_INTERFACE
def load_settings() -> Settings:
    """
    Load settings from environment variables.

    Required:
    - DATABASE_URL
    - JWT_SECRET_KEY

    Optional:
    - JWT_ALGORITHM (default HS256)
    - ACCESS_TOKEN_EXPIRE_MINUTES (default 60)
    - DATABASE_ECHO (default false)
    - CORS_ALLOW_ORIGINS (comma separated, default "*")
    - LOCATION_MAX_AGE_SECONDS (default 10)
    - WS_PING_INTERVAL_SECONDS (default 20)
    - WS_SEND_TIMEOUT_SECONDS (default 3)
    - LOG_LEVEL (default INFO)
    """
    origins = os.getenv("CORS_ALLOW_ORIGINS", "*")
    return Settings(
        database_url=_normalize_database_url(_require_env("DATABASE_URL")),
        jwt_secret_key=_require_env("JWT_SECRET_KEY"),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60")),
        database_echo=_env_bool("DATABASE_ECHO"),
        cors_allow_origins=[o.strip() for o in origins.split(",") if o.strip()],
        location_max_age_seconds=float(os.getenv("LOCATION_MAX_AGE_SECONDS", "10")),
        ws_ping_interval_seconds=float(os.getenv("WS_PING_INTERVAL_SECONDS", "20")),
        ws_send_timeout_seconds=float(os.getenv("WS_SEND_TIMEOUT_SECONDS", "3")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
