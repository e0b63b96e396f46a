# axbilling/sync/sse.py
from __future__ import annotations

import asyncio
import json
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from ..logger import get_logger

log = get_logger("sync.sse")

# Frames a slow client may have pending before it is dropped
QUEUE_LIMIT = 256

_EVENT_ALIASES = {"order_stage_change": "stage_change"}


def normalize_event_type(event_type: str) -> str:
    return _EVENT_ALIASES.get(event_type, event_type)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def format_sse(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


@dataclass
class SSEClient:
    id: str
    loop: asyncio.AbstractEventLoop
    queue: "asyncio.Queue[Optional[str]]"
    order_id: Optional[str] = None
    event_types: Optional[List[str]] = None
    connected_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)

    def matches(self, event_type: str, order_id: Optional[str]) -> bool:
        # Order-filtered clients never see global events
        if self.order_id and not order_id:
            return False
        if self.order_id and order_id and self.order_id != order_id:
            return False

        if self.event_types:
            wanted = {normalize_event_type(t) for t in self.event_types}
            if normalize_event_type(event_type) not in wanted:
                return False

        return True


class SSEManager:
    """
    Process-local registry of open event streams.

    Route handlers run on worker threads while streams live on the event loop,
    so the client map is guarded by a lock and frames are handed to each
    client's loop with call_soon_threadsafe.
    """

    def __init__(self):
        self._clients: Dict[str, SSEClient] = {}
        self._lock = threading.Lock()

    # -------------------
    # Registry
    # -------------------
    def add_client(
        self,
        order_id: Optional[str] = None,
        event_types: Optional[List[str]] = None,
        client_id: Optional[str] = None,
    ) -> SSEClient:
        """Must be called from the loop that will consume the stream."""
        client = SSEClient(
            id=client_id or f"client_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}",
            loop=asyncio.get_running_loop(),
            queue=asyncio.Queue(maxsize=QUEUE_LIMIT),
            order_id=order_id or None,
            event_types=[t.strip() for t in (event_types or []) if t.strip()] or None,
        )
        with self._lock:
            self._clients[client.id] = client
            count = len(self._clients)
        log.info(f"SSE client {client.id} connected. Active connections: {count}")
        return client

    def remove_client(self, client_id: str) -> None:
        with self._lock:
            client = self._clients.pop(client_id, None)
            count = len(self._clients)
        if client is None:
            return

        # Wake the stream so it can finish
        self._hand_off(client, None)
        log.info(f"SSE client {client_id} removed. Active connections: {count}")

    def active_connections(self) -> int:
        with self._lock:
            return len(self._clients)

    def client_details(self) -> List[Dict[str, Any]]:
        with self._lock:
            clients = list(self._clients.values())
        return [
            {
                "id": c.id,
                "connectedAt": datetime.fromtimestamp(c.connected_at, timezone.utc).isoformat(),
                "lastActivity": datetime.fromtimestamp(c.last_activity, timezone.utc).isoformat(),
                "filters": {"orderID": c.order_id, "eventTypes": c.event_types},
            }
            for c in clients
        ]

    def cleanup_stale(self, max_idle_seconds: float = 300) -> int:
        cutoff = time.time() - max_idle_seconds
        with self._lock:
            stale = [c.id for c in self._clients.values() if c.last_activity < cutoff]
        for cid in stale:
            log.info(f"Removing stale client {cid}")
            self.remove_client(cid)
        return len(stale)

    # -------------------
    # Broadcast
    # -------------------
    def broadcast(self, event_type: str, data: Dict[str, Any], order_id: Optional[str] = None) -> int:
        """Queue an event for every matching client. Returns how many were targeted."""
        payload = dict(data)
        payload.setdefault("eventType", event_type)
        payload.setdefault("timestamp", utc_now_iso())
        if order_id:
            payload.setdefault("orderID", order_id)
        frame = format_sse(event_type, payload)

        with self._lock:
            targets = [c for c in self._clients.values() if c.matches(event_type, order_id)]

        log.info(f"Broadcasting {event_type} event to {len(targets)} clients")
        for client in targets:
            if not self._hand_off(client, frame):
                self.remove_client(client.id)
        return len(targets)

    def broadcast_to_order(self, order_id: str, event_type: str, data: Dict[str, Any]) -> int:
        return self.broadcast(event_type, data, order_id=order_id)

    def _hand_off(self, client: SSEClient, frame: Optional[str]) -> bool:
        try:
            client.loop.call_soon_threadsafe(self._offer, client, frame)
        except RuntimeError:
            # Loop already closed
            return False
        return True

    def _offer(self, client: SSEClient, frame: Optional[str]) -> None:
        try:
            client.queue.put_nowait(frame)
        except asyncio.QueueFull:
            log.warning(f"SSE client {client.id} is not keeping up, dropping it")
            with self._lock:
                self._clients.pop(client.id, None)
            # Make room for the sentinel so the stream ends
            client.queue.get_nowait()
            client.queue.put_nowait(None)
            return
        if frame is not None:
            client.last_activity = time.time()

    # -------------------
    # Stream
    # -------------------
    async def event_stream(
        self,
        client: SSEClient,
        heartbeat_seconds: float = 30,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[str]:
        try:
            yield format_sse(
                "connected",
                {"clientId": client.id, "timestamp": utc_now_iso(), "message": "SSE connection established"},
            )
            while True:
                try:
                    frame = await asyncio.wait_for(client.queue.get(), timeout=heartbeat_seconds)
                except asyncio.TimeoutError:
                    if is_disconnected is not None and await is_disconnected():
                        log.info(f"SSE client {client.id} disconnected")
                        break
                    frame = format_sse(
                        "heartbeat",
                        {"timestamp": utc_now_iso(), "activeConnections": self.active_connections()},
                    )
                    client.last_activity = time.time()

                if frame is None:
                    break
                yield frame
        finally:
            self.remove_client(client.id)


sse_manager = SSEManager()
