import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.requests import HTTPConnection

from src.api.config import Settings
from src.api.models.base import Base
from src.api.realtime import LiveQueryHub

logger = logging.getLogger(__name__)


class ServerClock:
    """
    Issues server-side timestamps for store writes.

    Timestamps are aware UTC and strictly increasing across the process, so
    records stamped later always sort after records stamped earlier even when
    two writes land within the same clock tick.
    """

    _TICK = timedelta(microseconds=1)

    def __init__(self):
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            current = datetime.now(timezone.utc)
            if self._last is not None and current <= self._last:
                current = self._last + self._TICK
            self._last = current
            return current


def _engine_for(settings: Settings) -> Engine:
    """Create an engine configured for typical web usage."""
    url = settings.database_url
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=settings.database_echo, **kwargs)
    return create_engine(url, echo=settings.database_echo, pool_pre_ping=True)


class Database:
    """
    Explicitly constructed handle onto the document store.

    Owns the engine, the session factory, the server clock and the live query
    hub. One instance is created at application startup and disposed at
    shutdown; everything else receives it by injection.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = _engine_for(settings)
        self.SessionLocal = sessionmaker(bind=self.engine, autocommit=False, autoflush=False, expire_on_commit=False)
        self.clock = ServerClock()
        self.hub = LiveQueryHub(self.SessionLocal)

    def create_all(self) -> None:
        """Create missing tables (development and tests; production uses the init SQL)."""
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.hub.close()
        self.engine.dispose()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Context manager for scripts/background jobs needing a managed session."""
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


# PUBLIC_INTERFACE
def get_database(conn: HTTPConnection) -> Database:
    """FastAPI dependency returning the Database created at startup."""
    return conn.app.state.database


# PUBLIC_INTERFACE
def get_db(conn: HTTPConnection) -> Generator[Session, None, None]:
    """FastAPI dependency that yields a SQLAlchemy session and ensures closure."""
    db = get_database(conn).SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
