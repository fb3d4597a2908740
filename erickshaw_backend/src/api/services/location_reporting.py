"""
Location reporting loop for online drivers.

The device's geolocation watch arrives as an async stream of LocationFix
values. A GeolocationError from that stream forces the driver offline, so a
driver whose position is unknown never shows up as available.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Set

from starlette.concurrency import run_in_threadpool

from src.api.db import Database
from src.api.services import profiles

logger = logging.getLogger(__name__)


class GeolocationError(Exception):
    """Raised by a fix stream when the device cannot provide a position."""

    MESSAGES = {
        "PERMISSION_DENIED": "Location access denied. Please enable location services.",
        "POSITION_UNAVAILABLE": "Location information is unavailable.",
        "TIMEOUT": "The request to get user location timed out.",
    }

    def __init__(self, code: str, message: Optional[str] = None):
        self.code = code
        self.message = message or self.MESSAGES.get(code, "Failed to get location.")
        super().__init__(self.message)


@dataclass(frozen=True)
class LocationFix:
    lat: float
    lng: float
    # Device timestamp (epoch seconds); None means "just now".
    ts: Optional[float] = None

    def age(self, now: Optional[float] = None) -> float:
        if self.ts is None:
            return 0.0
        return (now if now is not None else time.time()) - self.ts


class LocationReporter:
    """
    Writes each fresh fix from `fixes` into the driver's profile.

    stop() is synchronous, idempotent and may be called from any thread;
    once it returns no further location write happens.
    """

    def __init__(
        self,
        database: Database,
        driver_id: str,
        fixes: AsyncIterator[LocationFix],
        *,
        max_age_seconds: float = 10.0,
        on_written: Optional[Callable[[LocationFix], Awaitable[None]]] = None,
        registry: Optional["ReporterRegistry"] = None,
    ):
        self.database = database
        self.driver_id = driver_id
        self.max_age_seconds = max_age_seconds
        self.forced_offline: Optional[GeolocationError] = None
        self._fixes = fixes
        self._on_written = on_written
        self._registry = registry
        self._stopped = False
        self._lock = threading.RLock()
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> asyncio.Task:
        """Schedule run() on the running event loop."""
        self._loop = asyncio.get_running_loop()
        if self._registry is not None:
            self._registry.add(self)
        self._task = self._loop.create_task(self.run())
        return self._task

    def stop(self) -> None:
        if not self._finish():
            return
        task, loop = self._task, self._loop
        if task is not None and loop is not None and not task.done():
            loop.call_soon_threadsafe(task.cancel)

    async def run(self) -> None:
        try:
            async for fix in self._fixes:
                if self._stopped:
                    break
                if fix.age() > self.max_age_seconds:
                    logger.debug("Dropping stale fix for driver %s (%.1fs old)", self.driver_id, fix.age())
                    continue
                written = await run_in_threadpool(self._write, fix)
                if written and self._on_written is not None:
                    await self._on_written(fix)
        except GeolocationError as exc:
            await run_in_threadpool(self._force_offline, exc)
        finally:
            self._finish()

    def _finish(self) -> bool:
        """Mark the reporter stopped; False if it already was."""
        with self._lock:
            already = self._stopped
            self._stopped = True
        if self._registry is not None:
            self._registry.discard(self)
        return not already

    def _write(self, fix: LocationFix) -> bool:
        # Holding the lock makes stop() wait for an in-flight write.
        with self._lock:
            if self._stopped:
                return False
            profiles.update_location(self.database, self.driver_id, fix.lat, fix.lng)
            return True

    def _force_offline(self, exc: GeolocationError) -> None:
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            self.forced_offline = exc
        logger.warning("Geolocation failed for driver %s (%s); forcing offline", self.driver_id, exc.code)
        if self._registry is not None:
            # Other streams for the same driver stop too.
            self._registry.stop_driver(self.driver_id)
        profiles.set_online(self.database, self.driver_id, False)


class ReporterRegistry:
    """Running reporters per driver, so going offline can stop them."""

    def __init__(self):
        self._reporters: Dict[str, Set[LocationReporter]] = {}
        self._lock = threading.Lock()

    def add(self, reporter: LocationReporter) -> None:
        with self._lock:
            self._reporters.setdefault(reporter.driver_id, set()).add(reporter)

    def discard(self, reporter: LocationReporter) -> None:
        with self._lock:
            group = self._reporters.get(reporter.driver_id)
            if group is None:
                return
            group.discard(reporter)
            if not group:
                del self._reporters[reporter.driver_id]

    def running(self, driver_id: str) -> int:
        with self._lock:
            return len(self._reporters.get(driver_id, ()))

    def stop_driver(self, driver_id: str) -> int:
        """Stop every reporter for the driver; returns how many were running."""
        with self._lock:
            reporters = list(self._reporters.pop(driver_id, ()))
        for reporter in reporters:
            reporter.stop()
        return len(reporters)

    def stop_all(self) -> None:
        with self._lock:
            reporters = [r for group in self._reporters.values() for r in group]
            self._reporters.clear()
        for reporter in reporters:
            reporter.stop()
