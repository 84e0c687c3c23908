"""Server-Sent Events (SSE) manager for real-time progress updates.

Provides:
- SSEConnection: Individual SSE connection to a client
- SSEManager: Manages connections per channel and broadcasts events
- A bridge that forwards EventBus events to SSE channels

Channels: "models" carries status and pull progress; every pipeline run has
its own channel named after the run id.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from queue import Empty, Queue
from typing import Any, Dict, List, Optional, Set

from silo.events import Event, EventBus, EventType, Subscription

logger = logging.getLogger(__name__)

MODELS_CHANNEL = "models"

MODEL_EVENTS = {
    EventType.STATUS_CHANGED,
    EventType.PULL_PROGRESS,
    EventType.MODEL_LOADED,
    EventType.MODEL_UNLOADED,
    EventType.MODEL_EVICTED,
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(eq=False)
class SSEConnection:
    """Individual SSE connection to a client."""

    channel: str
    client_id: str
    queue: Queue = field(default_factory=Queue)
    connected_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)

    def __hash__(self):
        return hash((self.channel, self.client_id))

    def __eq__(self, other):
        if not isinstance(other, SSEConnection):
            return False
        return self.channel == other.channel and self.client_id == other.client_id

    def send_event(self, event_type: str, data: Dict[str, Any]) -> None:
        """
        Queue an event for this connection.

        Args:
            event_type: Type of event (e.g. 'pull_progress', 'step_completed')
            data: Event data payload
        """
        self.queue.put({
            "event": event_type,
            "data": data,
            "timestamp": _now(),
        })
        self.last_activity = time.time()

    def get_events(self, timeout: float = 30.0) -> List[Dict[str, Any]]:
        """
        Wait for pending events.

        Blocks up to min(timeout, 15s) for the first event, then drains the
        queue without blocking. An empty list means the caller should send a
        keepalive.
        """
        events = []
        try:
            events.append(self.queue.get(timeout=min(timeout, 15.0)))
        except Empty:
            return events

        while True:
            try:
                events.append(self.queue.get_nowait())
            except Empty:
                break
        return events


class SSEManager:
    """
    Manages SSE connections and event broadcasting.

    Thread-safe manager for broadcasting events to multiple clients.
    Each channel can have multiple connected clients.

    Usage:
        manager = SSEManager()
        connection = manager.connect("models")
        manager.broadcast("models", "pull_progress", {"progress": 0.5})
        manager.disconnect("models", connection.client_id)
    """

    def __init__(self):
        self._connections: Dict[str, Set[SSEConnection]] = {}
        self._lock = threading.RLock()
        self._counter = 0
        self._subscription: Optional[Subscription] = None

    def connect(self, channel: str, client_id: Optional[str] = None) -> SSEConnection:
        """
        Register a new SSE connection.

        Args:
            channel: Channel to listen on
            client_id: Optional client identifier (auto-generated if not provided)
        """
        with self._lock:
            if client_id is None:
                self._counter += 1
                client_id = f"client-{self._counter}"
            connection = SSEConnection(channel=channel, client_id=client_id)
            self._connections.setdefault(channel, set()).add(connection)

        logger.info(f"SSE connection established: channel={channel}, client_id={client_id}")
        connection.send_event("connected", {"channel": channel, "client_id": client_id})
        return connection

    def disconnect(self, channel: str, client_id: str) -> None:
        with self._lock:
            if channel in self._connections:
                self._connections[channel] = {
                    conn for conn in self._connections[channel]
                    if conn.client_id != client_id
                }
                if not self._connections[channel]:
                    del self._connections[channel]

        logger.info(f"SSE connection closed: channel={channel}, client_id={client_id}")

    def broadcast(self, channel: str, event_type: str, data: Dict[str, Any]) -> int:
        """
        Broadcast an event to all connections on a channel.

        Returns:
            Number of connections that received the event
        """
        with self._lock:
            connections = list(self._connections.get(channel, set()))

        for connection in connections:
            connection.send_event(event_type, data)

        if connections:
            logger.debug(f"Broadcasted {event_type} to {len(connections)} client(s) on {channel}")
        return len(connections)

    def get_connections(self, channel: str) -> List[SSEConnection]:
        with self._lock:
            return list(self._connections.get(channel, set()))

    def get_connection_count(self, channel: str) -> int:
        with self._lock:
            return len(self._connections.get(channel, set()))

    def cleanup_stale_connections(self, max_age_seconds: float = 3600) -> int:
        """Drop connections idle for longer than max_age_seconds."""
        removed = 0
        cutoff = time.time() - max_age_seconds

        with self._lock:
            for channel in list(self._connections.keys()):
                stale = {conn for conn in self._connections[channel] if conn.last_activity < cutoff}
                if stale:
                    self._connections[channel] -= stale
                    removed += len(stale)
                    if not self._connections[channel]:
                        del self._connections[channel]

        if removed > 0:
            logger.info(f"Cleaned up {removed} stale SSE connection(s)")
        return removed

    # ------------------------------------------------------------------
    # EventBus bridge
    # ------------------------------------------------------------------

    def attach(self, event_bus: EventBus) -> Subscription:
        """Forward every bus event to its SSE channel."""
        self.detach()
        self._subscription = event_bus.subscribe(None, self._forward)
        return self._subscription

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _forward(self, event: Event) -> None:
        channel = MODELS_CHANNEL if event.type in MODEL_EVENTS else event.source
        self.broadcast(channel, event.type.value, event.data)


def format_sse_message(event_type: str, data: Dict[str, Any]) -> str:
    """Format data as an SSE message."""
    lines = [
        f"event: {event_type}",
        f"data: {json.dumps(data)}",
        "",
    ]
    return "\n".join(lines) + "\n"


def format_keepalive() -> str:
    return f": keepalive {_now()}\n\n"
