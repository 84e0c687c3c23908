"""Residency bookkeeping and LRU eviction for in-memory models."""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from silo.errors import ResourceError
from silo.events import EventBus, EventType
from silo.models.schema import BackendType, LoadedModelRecord
from silo.utils.formatting import format_bytes

logger = logging.getLogger(__name__)

DEFAULT_MEMORY_BUDGET = 4 * 1024 * 1024 * 1024  # 4GB
DEFAULT_IDLE_SECONDS = 5 * 60


class ResourceManager:
    """
    Tracks which models are resident, their footprint and recency of use.

    Adapters that own real residency report ``record_load`` / ``record_unload``;
    the router reports ``record_used`` after every successful dispatch.
    Eviction unloads through the owning adapter, looked up via ``attach``.

    ``_lock`` guards the record table and is never held across an adapter
    call. ``_evict_lock`` serializes eviction passes.
    """

    def __init__(
        self,
        memory_budget: int = DEFAULT_MEMORY_BUDGET,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.memory_budget = memory_budget
        self.event_bus = event_bus
        self._clock = clock
        self._lock = threading.Lock()
        self._evict_lock = threading.Lock()
        self._records: Dict[str, LoadedModelRecord] = {}
        self._owners: Dict[BackendType, Any] = {}

    def attach(self, adapter: Any) -> None:
        """Register the adapter that unloads models of ``adapter.backend``."""
        self._owners[adapter.backend] = adapter

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_load(self, model_id: str, backend: BackendType, footprint_bytes: int) -> LoadedModelRecord:
        now = self._clock()
        with self._lock:
            previous = self._records.get(model_id)
            record = LoadedModelRecord(
                model_id=model_id,
                backend=backend,
                loaded_at=previous.loaded_at if previous else now,
                last_used=now,
                footprint_bytes=footprint_bytes,
            )
            self._records[model_id] = record

        if previous is None:
            logger.info(f"Model loaded: {model_id} ({format_bytes(footprint_bytes)})")
            self._emit(EventType.MODEL_LOADED, {
                "model_id": model_id,
                "backend": backend.value,
                "footprint_bytes": footprint_bytes,
            })
        return record

    def record_used(self, model_id: str) -> None:
        """Refresh last-used time. Unknown ids (non-resident backends) are ignored."""
        now = self._clock()
        with self._lock:
            record = self._records.get(model_id)
            if record is not None:
                self._records[model_id] = record.model_copy(update={"last_used": now})

    def record_unload(self, model_id: str) -> bool:
        with self._lock:
            record = self._records.pop(model_id, None)

        if record is None:
            return False

        logger.info(f"Model unloaded: {model_id} (freed {format_bytes(record.footprint_bytes)})")
        self._emit(EventType.MODEL_UNLOADED, {
            "model_id": model_id,
            "backend": record.backend.value,
            "footprint_bytes": record.footprint_bytes,
        })
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(self) -> List[LoadedModelRecord]:
        with self._lock:
            return list(self._records.values())

    def get(self, model_id: str) -> Optional[LoadedModelRecord]:
        with self._lock:
            return self._records.get(model_id)

    def is_loaded(self, model_id: str) -> bool:
        with self._lock:
            return model_id in self._records

    def total_footprint(self) -> int:
        with self._lock:
            return sum(r.footprint_bytes for r in self._records.values())

    def can_load(self, size_bytes: int) -> bool:
        return self.total_footprint() + size_bytes <= self.memory_budget

    def _lru_order(self) -> List[LoadedModelRecord]:
        return sorted(self.list(), key=lambda r: (r.last_used, r.loaded_at))

    def models_to_unload(self, required_bytes: int) -> List[str]:
        """
        Ids to unload, least recently used first, so that ``required_bytes``
        fits into the memory budget. Empty when it already fits.
        """
        overflow = self.total_footprint() + required_bytes - self.memory_budget
        selected = []
        for record in self._lru_order():
            if overflow <= 0:
                break
            selected.append(record.model_id)
            overflow -= record.footprint_bytes
        return selected

    def idle_models(self, max_idle_seconds: float = DEFAULT_IDLE_SECONDS) -> List[str]:
        cutoff = self._clock() - max_idle_seconds
        return [r.model_id for r in self.list() if r.last_used < cutoff]

    def memory_summary(self) -> Dict[str, Any]:
        used = self.total_footprint()
        return {
            "used_bytes": used,
            "budget_bytes": self.memory_budget,
            "available_bytes": max(0, self.memory_budget - used),
            "used": format_bytes(used),
            "budget": format_bytes(self.memory_budget),
            "loaded_count": len(self.list()),
        }

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def evict_if_needed(self, budget: Optional[int] = None) -> List[str]:
        """
        Unload least recently used models until the total footprint fits ``budget``.

        Ties on last use are broken by load time, oldest first. A failed
        unload is logged and skipped; the pass continues with the next record.

        Args:
            budget: Byte budget to fit into (defaults to ``memory_budget``)

        Returns:
            Ids that were evicted
        """
        budget = self.memory_budget if budget is None else budget
        evicted: List[str] = []

        with self._evict_lock:
            total = self.total_footprint()
            for record in self._lru_order():
                if total <= budget:
                    break
                try:
                    self._unload_through_owner(record)
                except Exception as e:
                    logger.warning(f"Eviction of {record.model_id} failed, skipping: {e}")
                    continue

                self.record_unload(record.model_id)
                total -= record.footprint_bytes
                evicted.append(record.model_id)
                self._emit(EventType.MODEL_EVICTED, {
                    "model_id": record.model_id,
                    "backend": record.backend.value,
                    "footprint_bytes": record.footprint_bytes,
                })

        if evicted:
            logger.info(f"Evicted {len(evicted)} model(s) to fit {format_bytes(budget)}: {evicted}")
        return evicted

    def _unload_through_owner(self, record: LoadedModelRecord) -> None:
        owner = self._owners.get(record.backend)
        if owner is None:
            raise ResourceError(f"No adapter attached for backend '{record.backend.value}'")
        owner.unload(record.model_id)

    def unload_idle(self, max_idle_seconds: float = DEFAULT_IDLE_SECONDS) -> List[str]:
        unloaded = []
        for model_id in self.idle_models(max_idle_seconds):
            record = self.get(model_id)
            if record is None:
                continue
            try:
                self._unload_through_owner(record)
            except Exception as e:
                logger.warning(f"Idle unload of {model_id} failed: {e}")
                continue
            self.record_unload(model_id)
            unloaded.append(model_id)
        return unloaded

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def _emit(self, event_type: EventType, data: Dict[str, Any]) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(event_type, "resources", data)
