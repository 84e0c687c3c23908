#!/usr/bin/env python3
"""Test residency bookkeeping and LRU eviction."""

from conftest import FakeAdapter
from silo.events import EventBus, EventType
from silo.models.resources import ResourceManager
from silo.models.schema import BackendType


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _manager(budget=1000):
    clock = FakeClock()
    bus = EventBus()
    resources = ResourceManager(memory_budget=budget, event_bus=bus, clock=clock)
    adapter = FakeAdapter(BackendType.TRANSFORMERS, resources=resources)
    resources.attach(adapter)
    return resources, adapter, clock, bus


# ============================================================================
# Recording
# ============================================================================

def test_record_load_and_unload():
    """Test loading adds a record and unloading removes it."""
    resources, _, _, _ = _manager()

    record = resources.record_load("transformers:gpt2", BackendType.TRANSFORMERS, 400)

    assert record.footprint_bytes == 400
    assert resources.is_loaded("transformers:gpt2")
    assert resources.total_footprint() == 400

    assert resources.record_unload("transformers:gpt2") is True
    assert resources.record_unload("transformers:gpt2") is False
    assert resources.total_footprint() == 0


def test_reload_keeps_original_load_time():
    """Test recording a load twice keeps loaded_at and refreshes last_used."""
    resources, _, clock, _ = _manager()
    resources.record_load("transformers:gpt2", BackendType.TRANSFORMERS, 400)
    clock.advance(10)
    record = resources.record_load("transformers:gpt2", BackendType.TRANSFORMERS, 400)

    assert record.loaded_at == 1000.0
    assert record.last_used == 1010.0


def test_record_used_ignores_unknown_models():
    """Test usage of a non-resident model is not an error."""
    resources, _, _, _ = _manager()
    resources.record_used("ollama:llama3")
    assert resources.list() == []


def test_load_and_unload_events():
    """Test residency changes are published on the bus."""
    resources, _, _, bus = _manager()
    resources.record_load("transformers:gpt2", BackendType.TRANSFORMERS, 400)
    resources.record_unload("transformers:gpt2")

    types = [e.type for e in bus.get_history(source="resources")]
    assert types == [EventType.MODEL_LOADED, EventType.MODEL_UNLOADED]


def test_can_load_and_summary():
    """Test budget checks and the memory summary."""
    resources, _, _, _ = _manager(budget=1000)
    resources.record_load("transformers:a", BackendType.TRANSFORMERS, 600)

    assert resources.can_load(400) is True
    assert resources.can_load(401) is False

    summary = resources.memory_summary()
    assert summary["used_bytes"] == 600
    assert summary["available_bytes"] == 400
    assert summary["loaded_count"] == 1


# ============================================================================
# Eviction
# ============================================================================

def test_models_to_unload_in_lru_order():
    """Test the least recently used models are selected first."""
    resources, _, clock, _ = _manager(budget=1000)
    resources.record_load("transformers:a", BackendType.TRANSFORMERS, 400)
    clock.advance(1)
    resources.record_load("transformers:b", BackendType.TRANSFORMERS, 400)
    clock.advance(1)
    resources.record_used("transformers:a")

    assert resources.models_to_unload(100) == []
    assert resources.models_to_unload(300) == ["transformers:b"]
    assert resources.models_to_unload(700) == ["transformers:b", "transformers:a"]


def test_evict_if_needed_unloads_lru_through_adapter():
    """Test eviction calls the owning adapter and emits an eviction event."""
    resources, adapter, clock, bus = _manager(budget=1000)
    resources.record_load("transformers:a", BackendType.TRANSFORMERS, 500)
    clock.advance(1)
    resources.record_load("transformers:b", BackendType.TRANSFORMERS, 500)

    evicted = resources.evict_if_needed(budget=600)

    assert evicted == ["transformers:a"]
    assert adapter.unloaded == ["transformers:a"]
    assert not resources.is_loaded("transformers:a")
    assert resources.is_loaded("transformers:b")
    evictions = bus.get_history(event_type=EventType.MODEL_EVICTED)
    assert [e.data["model_id"] for e in evictions] == ["transformers:a"]


def test_evict_ties_broken_by_load_time():
    """Test models last used at the same instant are evicted oldest-loaded first."""
    resources, _, clock, _ = _manager(budget=1000)
    resources.record_load("transformers:old", BackendType.TRANSFORMERS, 300)
    clock.advance(1)
    resources.record_load("transformers:new", BackendType.TRANSFORMERS, 300)
    resources.record_used("transformers:old")

    assert resources.evict_if_needed(budget=300) == ["transformers:old"]


def test_evict_nothing_when_under_budget():
    """Test eviction is a no-op when the footprint already fits."""
    resources, adapter, _, _ = _manager(budget=1000)
    resources.record_load("transformers:a", BackendType.TRANSFORMERS, 500)

    assert resources.evict_if_needed() == []
    assert adapter.unloaded == []


def test_failed_unload_is_skipped():
    """Test a failing unload is logged and the pass continues with the next record."""
    resources, adapter, clock, _ = _manager(budget=1000)

    def broken_unload(model_id):
        if model_id == "transformers:a":
            raise RuntimeError("device busy")
        resources.record_unload(model_id)

    adapter.unload = broken_unload
    resources.record_load("transformers:a", BackendType.TRANSFORMERS, 500)
    clock.advance(1)
    resources.record_load("transformers:b", BackendType.TRANSFORMERS, 500)

    evicted = resources.evict_if_needed(budget=500)

    assert evicted == ["transformers:b"]
    assert resources.is_loaded("transformers:a")


def test_evict_without_owner_is_skipped():
    """Test records of a backend with no attached adapter are not evicted."""
    resources = ResourceManager(memory_budget=100)
    resources.record_load("ollama:llama3", BackendType.OLLAMA, 500)

    assert resources.evict_if_needed() == []
    assert resources.is_loaded("ollama:llama3")


def test_unload_idle():
    """Test models unused for longer than the idle limit are unloaded."""
    resources, adapter, clock, _ = _manager()
    resources.record_load("transformers:a", BackendType.TRANSFORMERS, 100)
    clock.advance(400)
    resources.record_load("transformers:b", BackendType.TRANSFORMERS, 100)

    assert resources.idle_models(max_idle_seconds=300) == ["transformers:a"]
    assert resources.unload_idle(max_idle_seconds=300) == ["transformers:a"]
    assert adapter.unloaded == ["transformers:a"]
