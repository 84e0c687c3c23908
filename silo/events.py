"""Publish/subscribe event system.

The bus is owned by a Workbench instance (there is no module-level bus).
Events are consumed by:
- the SSE manager (pull progress, pipeline runs)
- tests and embedding applications via ``subscribe``
"""

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events published by the router, resources and executor."""

    # Router / backend events
    STATUS_CHANGED = "status_changed"
    PULL_PROGRESS = "pull_progress"

    # Residency events
    MODEL_LOADED = "model_loaded"
    MODEL_UNLOADED = "model_unloaded"
    MODEL_EVICTED = "model_evicted"

    # Pipeline events
    PIPELINE_STARTED = "pipeline_started"
    PIPELINE_COMPLETED = "pipeline_completed"
    PIPELINE_FAILED = "pipeline_failed"

    # Step events
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_SKIPPED = "step_skipped"
    STEP_FAILED = "step_failed"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Event:
    """A single published event.

    ``source`` is the run id for pipeline events and the component name
    (``"router"``, ``"resources"``) for everything else.
    """

    type: EventType
    source: str
    timestamp: str = field(default_factory=_utcnow)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "source": self.source,
            "timestamp": self.timestamp,
            "data": self.data,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class Subscription:
    """Handle returned by ``EventBus.subscribe``; call ``unsubscribe`` to stop delivery."""

    def __init__(self, bus: "EventBus", event_type: Optional[EventType], callback: Callable[[Event], None]):
        self._bus = bus
        self.event_type = event_type
        self.callback = callback
        self.active = True

    def matches(self, event: Event) -> bool:
        return self.event_type is None or self.event_type == event.type

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._bus._remove(self)


class EventBus:
    """Thread-safe event bus.

    Delivery is synchronous, on the publishing thread, in subscription order.
    A subscriber that raises is logged and does not affect the others.
    """

    def __init__(self, max_history: int = 1000):
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription] = []
        self._history: Deque[Event] = deque(maxlen=max_history)

    def subscribe(self, event_type: Optional[EventType], callback: Callable[[Event], None]) -> Subscription:
        """
        Subscribe to events.

        Args:
            event_type: Type of event to subscribe to, or None for all events
            callback: Function called with each matching event

        Returns:
            Subscription handle
        """
        subscription = Subscription(self, event_type, callback)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, event: Event) -> None:
        with self._lock:
            self._history.append(event)
            targets = [s for s in self._subscriptions if s.matches(event)]

        logger.debug(f"Event published: {event.type.value} from {event.source}")

        for subscription in targets:
            if not subscription.active:
                continue
            try:
                subscription.callback(event)
            except Exception as e:
                logger.warning(f"Subscriber for {event.type.value} raised: {e}")

    def emit(self, event_type: EventType, source: str, data: Optional[Dict[str, Any]] = None) -> Event:
        event = Event(type=event_type, source=source, data=data or {})
        self.publish(event)
        return event

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def get_history(self, source: Optional[str] = None, event_type: Optional[EventType] = None) -> List[Event]:
        """
        Get recent events, optionally filtered by source and type.
        """
        with self._lock:
            events = list(self._history)

        if source:
            events = [e for e in events if e.source == source]
        if event_type:
            events = [e for e in events if e.type == event_type]
        return events

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()


class EventEmitter:
    """Helper bound to a single pipeline run id."""

    def __init__(self, run_id: str, event_bus: Optional[EventBus] = None):
        self.run_id = run_id
        self.event_bus = event_bus

    def emit(self, event_type: EventType, data: Optional[Dict[str, Any]] = None) -> None:
        if self.event_bus is None:
            return
        self.event_bus.emit(event_type, self.run_id, data)

    def pipeline_started(self, pipeline_id: str, pipeline_name: str, step_count: int):
        self.emit(EventType.PIPELINE_STARTED, {
            "pipeline_id": pipeline_id,
            "pipeline_name": pipeline_name,
            "step_count": step_count,
        })

    def pipeline_completed(self, pipeline_id: str, duration_ms: int):
        self.emit(EventType.PIPELINE_COMPLETED, {
            "pipeline_id": pipeline_id,
            "duration_ms": duration_ms,
        })

    def pipeline_failed(self, pipeline_id: str, error: str, step: Optional[str] = None):
        self.emit(EventType.PIPELINE_FAILED, {
            "pipeline_id": pipeline_id,
            "error": error,
            "step": step,
        })

    def step_started(self, step: str, index: int, task_kind: str):
        self.emit(EventType.STEP_STARTED, {
            "step": step,
            "index": index,
            "task_kind": task_kind,
        })

    def step_completed(self, step: str, index: int, duration_ms: int):
        self.emit(EventType.STEP_COMPLETED, {
            "step": step,
            "index": index,
            "duration_ms": duration_ms,
        })

    def step_skipped(self, step: str, index: int, reason: str):
        self.emit(EventType.STEP_SKIPPED, {
            "step": step,
            "index": index,
            "reason": reason,
        })

    def step_failed(self, step: str, index: int, error: str):
        self.emit(EventType.STEP_FAILED, {
            "step": step,
            "index": index,
            "error": error,
        })
