"""
In-process live query hub plus the WebSocket plumbing that exposes it.

A live view is a standing query over one collection ("rides" or "drivers").
Whenever a committed write touches that collection the hub re-evaluates every
view subscribed to it and hands the full result list to the view's callback.

The hub is in-memory, which is fine for a single process. Running several
workers would need a shared broker (Redis pub/sub, Postgres LISTEN/NOTIFY)
to fan out the publish() calls.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from fastapi import WebSocket
from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocketDisconnect, WebSocketState
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

RIDES = "rides"
DRIVERS = "drivers"

# When a client is slow for too long, disconnect to protect server memory/CPU.
MAX_CONSECUTIVE_SEND_TIMEOUTS = 3

ViewQuery = Callable[[Session], List[Any]]
SnapshotCallback = Callable[[List[Any]], None]
ErrorCallback = Callable[[Exception], None]


class Subscription:
    """
    Handle on one live view.

    unsubscribe() is synchronous and idempotent: once it returns the callback
    will not be invoked again. A delivery already running on another thread
    is allowed to finish first.
    """

    def __init__(
        self,
        hub: "LiveQueryHub",
        collection: str,
        query: ViewQuery,
        callback: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
        name: str = "view",
    ):
        self.id = next(hub._ids)
        self.collection = collection
        self.name = name
        self._hub = hub
        self._query = query
        self._callback = callback
        self._on_error = on_error
        self._active = True
        self._delivered_version = -1
        # Re-entrant so a callback may unsubscribe its own view.
        self._lock = threading.RLock()

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        self._hub._remove(self)

    def _deliver(self, version: int) -> None:
        with self._lock:
            if not self._active or version <= self._delivered_version:
                return
            self._delivered_version = version
            try:
                with self._hub._session_factory() as db:
                    items = self._query(db)
            except Exception as exc:
                logger.exception("Live view %s (#%s) failed to evaluate", self.name, self.id)
                if self._on_error is not None:
                    self._on_error(exc)
                # A failed view reads as empty, never as silently frozen.
                items = []
            try:
                self._callback(items)
            except Exception:
                logger.exception("Live view %s (#%s) callback raised", self.name, self.id)


class LiveQueryHub:
    """Registry of live views keyed by the collection they watch."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._subscriptions: Dict[str, Dict[int, Subscription]] = {}
        self._version = 0
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(
        self,
        collection: str,
        query: ViewQuery,
        callback: SnapshotCallback,
        *,
        on_error: Optional[ErrorCallback] = None,
        name: str = "view",
    ) -> Subscription:
        """
        Register a live view and deliver its initial snapshot.

        PUBLIC_INTERFACE
        """
        sub = Subscription(self, collection, query, callback, on_error=on_error, name=name)
        with self._lock:
            self._subscriptions.setdefault(collection, {})[sub.id] = sub
            version = self._version
        sub._deliver(version)
        return sub

    def publish(self, *collections: str) -> None:
        """
        Re-evaluate every view watching one of `collections`.

        Callers invoke this after their transaction commits.

        PUBLIC_INTERFACE
        """
        with self._lock:
            self._version += 1
            version = self._version
            targets: list[Subscription] = []
            for collection in collections:
                targets.extend(self._subscriptions.get(collection, {}).values())
        for sub in targets:
            sub._deliver(version)

    def subscriber_count(self, collection: Optional[str] = None) -> int:
        with self._lock:
            if collection is not None:
                return len(self._subscriptions.get(collection, {}))
            return sum(len(subs) for subs in self._subscriptions.values())

    def close(self) -> None:
        with self._lock:
            subs = [s for group in self._subscriptions.values() for s in group.values()]
        for sub in subs:
            sub.unsubscribe()

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            group = self._subscriptions.get(sub.collection)
            if group is not None:
                group.pop(sub.id, None)
                if not group:
                    self._subscriptions.pop(sub.collection, None)


@dataclass
class Connection:
    """Represents one active WebSocket client connection."""
    websocket: WebSocket
    user_id: str
    role: str  # "customer" | "driver"
    connected_at: float
    send_timeout: float
    consecutive_timeouts: int = 0


def _close_code(code: int) -> int:
    """Ensure a valid close code."""
    if 1000 <= code <= 4999:
        return code
    return 1008


async def safe_send_json(conn: Connection, payload: dict[str, Any]) -> bool:
    """
    Send JSON with timeout. Returns False if client should be disconnected.
    """
    if conn.websocket.client_state != WebSocketState.CONNECTED:
        return False
    try:
        await asyncio.wait_for(conn.websocket.send_text(json.dumps(payload)), timeout=conn.send_timeout)
    except asyncio.TimeoutError:
        conn.consecutive_timeouts += 1
        return conn.consecutive_timeouts < MAX_CONSECUTIVE_SEND_TIMEOUTS
    except RuntimeError:
        return False
    conn.consecutive_timeouts = 0
    return True


async def _heartbeat_sender(conn: Connection, interval: float, stop_event: asyncio.Event) -> None:
    """Send periodic ping messages until stop_event is set."""
    while not stop_event.is_set():
        await asyncio.sleep(interval)
        if stop_event.is_set():
            break
        # Use app-level ping payload for clients (since browser WS doesn't expose ping frames easily).
        ok = await safe_send_json(conn, {"type": "ping", "ts": time.time()})
        if not ok:
            stop_event.set()


def _to_json(item: Any) -> Any:
    if hasattr(item, "model_dump"):
        return item.model_dump(mode="json")
    return item


OpenView = Callable[[SnapshotCallback, ErrorCallback], Subscription]


async def run_view_session(
    conn: Connection,
    *,
    view: str,
    open_view: OpenView,
    ping_interval: float,
) -> None:
    """
    Stream a live view over an already accepted, authenticated WebSocket.

    Every snapshot is sent as {"type": "snapshot", "view": ..., "items": [...]}.
    Evaluation failures are sent as {"type": "error"} followed by an empty
    snapshot. The subscription is cancelled when the client goes away.

    PUBLIC_INTERFACE
    """
    websocket = conn.websocket
    loop = asyncio.get_running_loop()
    outbox: asyncio.Queue = asyncio.Queue()
    stop = asyncio.Event()

    # Hub callbacks run on whichever thread committed the write.
    def on_snapshot(items: List[Any]) -> None:
        payload = {"type": "snapshot", "view": view, "items": [_to_json(i) for i in items]}
        loop.call_soon_threadsafe(outbox.put_nowait, payload)

    def on_error(exc: Exception) -> None:
        payload = {"type": "error", "view": view, "message": "Live view unavailable; showing empty results."}
        loop.call_soon_threadsafe(outbox.put_nowait, payload)

    subscription = await run_in_threadpool(open_view, on_snapshot, on_error)

    async def pump() -> None:
        while not stop.is_set():
            payload = await outbox.get()
            if not await safe_send_json(conn, payload):
                stop.set()

    async def receive() -> None:
        while websocket.client_state == WebSocketState.CONNECTED and not stop.is_set():
            try:
                msg = await websocket.receive_json()
            except WebSocketDisconnect:
                break
            except (ValueError, KeyError):
                await safe_send_json(conn, {"type": "error", "message": "Invalid message format; expected JSON."})
                continue
            if not isinstance(msg, dict) or msg.get("type") == "pong":
                continue
            # Views are read-only; anything else is acknowledged and ignored.
            await safe_send_json(conn, {"type": "ack", "received_type": msg.get("type")})
        stop.set()

    tasks = [
        asyncio.create_task(pump()),
        asyncio.create_task(receive()),
        asyncio.create_task(_heartbeat_sender(conn, ping_interval, stop)),
    ]
    try:
        await stop.wait()
    finally:
        # May wait for a delivery running on a publisher thread.
        await run_in_threadpool(subscription.unsubscribe)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("View session %s closed for user %s", view, conn.user_id)


async def close_with_error(websocket: WebSocket, detail: str, code: int = 1008) -> None:
    """Send a structured error and close, if the socket is still open."""
    if websocket.client_state == WebSocketState.CONNECTED:
        try:
            await websocket.send_json({"type": "error", "message": detail})
        except RuntimeError:
            pass
        await websocket.close(code=_close_code(code), reason=detail)
