"""
WebSocket fan-out for board viewers.

Mutations run in worker threads and publish into a thread-safe outbox;
the event loop drains it with flush() and sends every event to every
connected viewer, in publish order.
"""

from __future__ import annotations

import asyncio
import datetime
import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Tuple

from fastapi import WebSocket
from fastapi.concurrency import run_in_threadpool

from events import BoardEvent, plan_list_event, station_batch_event

logger = logging.getLogger(__name__)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class ViewerConnection:
    """Information about one connected viewer."""
    websocket: WebSocket
    viewer_id: int
    connected_at: datetime.datetime = field(default_factory=_utcnow)
    last_activity: datetime.datetime = field(default_factory=_utcnow)
    messages_sent: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "viewer_id": self.viewer_id,
            "connected_at": self.connected_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "messages_sent": self.messages_sent,
        }


class BroadcastHub:
    """
    Registry of connected viewers plus the outbox of pending events.

    publish() may be called from any thread. flush() must run on the
    event loop.
    """

    def __init__(self) -> None:
        self._connections: Dict[int, ViewerConnection] = {}
        self._lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()
        self._outbox: Deque[BoardEvent] = deque()
        self._outbox_lock = threading.Lock()
        self._ids = itertools.count(1)

    # -------------------------------------------------------------- lifecycle
    async def connect(self, websocket: WebSocket) -> ViewerConnection:
        await websocket.accept()
        connection = ViewerConnection(websocket=websocket, viewer_id=next(self._ids))
        async with self._lock:
            self._connections[connection.viewer_id] = connection
        logger.info("[WS] Viewer %s connected (%s total)", connection.viewer_id, len(self._connections))
        return connection

    async def disconnect(self, viewer_id: int) -> None:
        async with self._lock:
            connection = self._connections.pop(viewer_id, None)
        if connection is not None:
            logger.info("[WS] Viewer %s disconnected", viewer_id)

    @property
    def viewer_count(self) -> int:
        return len(self._connections)

    # ----------------------------------------------------------------- outbox
    def publish(self, event: BoardEvent) -> None:
        with self._outbox_lock:
            self._outbox.append(event)

    def pending(self) -> List[BoardEvent]:
        with self._outbox_lock:
            return list(self._outbox)

    def drain(self) -> List[BoardEvent]:
        with self._outbox_lock:
            events = list(self._outbox)
            self._outbox.clear()
        return events

    async def flush(self) -> int:
        """Send every pending event to every viewer. Returns the number of events sent."""
        async with self._send_lock:
            return await self._deliver(self.drain())

    async def _deliver(self, events: List[BoardEvent]) -> int:
        if not events:
            return 0
        async with self._lock:
            connections = list(self._connections.values())
        for event in events:
            for connection in connections:
                await self._send_to_connection(connection, event)
        logger.debug("[WS] Flushed %s events to %s viewers", len(events), len(connections))
        return len(events)

    # ------------------------------------------------------------------ sends
    async def _send_to_connection(self, connection: ViewerConnection, event: BoardEvent) -> bool:
        try:
            await connection.websocket.send_json(event.to_dict())
        except Exception as exc:  # noqa: BLE001
            logger.warning("[WS] Failed to send to viewer %s: %s", connection.viewer_id, exc)
            await self.disconnect(connection.viewer_id)
            return False
        connection.messages_sent += 1
        connection.last_activity = _utcnow()
        return True

    async def send(self, connection: ViewerConnection, event: BoardEvent) -> bool:
        return await self._send_to_connection(connection, event)

    async def send_resync(self, connection: ViewerConnection, payload: Dict[str, Any]) -> None:
        """Full plan list and station grid for one (newly connected) viewer."""
        await self._send_to_connection(connection, plan_list_event(payload["plans"]))
        await self._send_to_connection(connection, station_batch_event(payload["stations"]))

    async def resync(
        self,
        connection: ViewerConnection,
        load: Callable[[], Tuple[Dict[str, Any], List[BoardEvent]]],
    ) -> None:
        """Resync one viewer without letting an older snapshot overtake a newer delta.

        ``load`` runs in a worker thread and returns the resync payload plus
        the outbox, drained while the payload's read transaction was still
        open. Those earlier events go out to every viewer first, then the
        payload to this one; nothing else is sent in between.
        """
        async with self._send_lock:
            payload, earlier = await run_in_threadpool(load)
            await self._deliver(earlier)
            await self.send_resync(connection, payload)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_connections": len(self._connections),
            "pending_events": len(self.pending()),
            "connections": [connection.to_dict() for connection in self._connections.values()],
        }
