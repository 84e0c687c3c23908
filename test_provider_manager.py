#!/usr/bin/env python3
"""Test the provider manager: status aggregation, routing, pulls and residency."""

import time

import pytest

from conftest import FakeAdapter, make_descriptor, wait_for
from silo.errors import (
    CapabilityUnsupportedError,
    DispatchError,
    NoAvailableProviderError,
)
from silo.events import EventType
from silo.models.schema import (
    BackendState,
    BackendType,
    Capability,
    ChatMessage,
    ChatRequest,
    EmbedRequest,
    GenerateRequest,
    HardwareTier,
    ImageGenRequest,
    PullPhase,
)


def _chat(text="hi", **kwargs):
    return ChatRequest(messages=[ChatMessage(role="user", content=text)], **kwargs)


# ============================================================================
# Status aggregation
# ============================================================================

def test_adapters_ordered_by_priority(build_manager):
    """Test adapters are kept in cost order regardless of construction order."""
    manager = build_manager(
        FakeAdapter(BackendType.HUGGINGFACE),
        FakeAdapter(BackendType.OLLAMA),
        FakeAdapter(BackendType.TRANSFORMERS),
    )
    assert [a.backend for a in manager.adapters] == [
        BackendType.OLLAMA, BackendType.TRANSFORMERS, BackendType.HUGGINGFACE
    ]


def test_refresh_status_aggregates(build_manager, ollama):
    """Test aggregate status lists each backend and recommends the chat-capable one."""
    cloud = FakeAdapter(BackendType.HUGGINGFACE, available=False)
    manager = build_manager(ollama, cloud)

    status = manager.refresh_status()

    assert status.has_available is True
    assert status.recommended == BackendType.OLLAMA
    assert status.for_backend(BackendType.HUGGINGFACE).state == BackendState.UNAVAILABLE
    assert status.for_backend(BackendType.OLLAMA).available


def test_recommended_prefers_backend_with_installed_chat_model(build_manager):
    """Test a cheaper backend without an installed chat model loses the recommendation."""
    ollama = FakeAdapter(BackendType.OLLAMA, models=[
        make_descriptor(name="nomic-embed-text", capabilities=(Capability.EMBED,)),
    ])
    embedded = FakeAdapter(BackendType.TRANSFORMERS, models=[
        make_descriptor(BackendType.TRANSFORMERS, "gpt2", (Capability.CHAT,)),
    ])
    manager = build_manager(ollama, embedded)

    assert manager.refresh_status().recommended == BackendType.TRANSFORMERS


def test_recommended_falls_back_to_first_available(build_manager):
    """Test with no installed chat model anywhere the cheapest available backend is recommended."""
    ollama = FakeAdapter(BackendType.OLLAMA, available=False)
    embedded = FakeAdapter(BackendType.TRANSFORMERS, models=[
        make_descriptor(BackendType.TRANSFORMERS, "gpt2", installed=False),
    ])
    cloud = FakeAdapter(BackendType.HUGGINGFACE)
    manager = build_manager(ollama, embedded, cloud)

    assert manager.refresh_status().recommended == BackendType.TRANSFORMERS


def test_nothing_available(build_manager):
    """Test the aggregate status when every backend is down."""
    manager = build_manager(FakeAdapter(BackendType.OLLAMA, available=False))

    status = manager.refresh_status()

    assert status.has_available is False
    assert status.recommended is None


def test_status_changed_emitted_only_on_change(build_manager, ollama, event_bus):
    """Test an unchanged refresh publishes nothing."""
    manager = build_manager(ollama)

    manager.refresh_status()
    manager.refresh_status()
    assert len(event_bus.get_history(event_type=EventType.STATUS_CHANGED)) == 1

    ollama.available = False
    manager.refresh_status()
    assert len(event_bus.get_history(event_type=EventType.STATUS_CHANGED)) == 2


def test_get_status_probes_once_when_unpublished(build_manager, ollama):
    """Test get_status returns a snapshot even before any refresh."""
    manager = build_manager(ollama)
    status = manager.get_status()

    assert status.has_available
    assert manager.get_status() is status


def test_refresh_registers_discovered_models(build_manager, ollama, registry):
    """Test models discovered by a probe land in the registry."""
    manager = build_manager(ollama)
    manager.refresh_status()

    assert "ollama:llama3.2:3b" in registry


def test_list_models_deduplicates(build_manager, registry):
    """Test list_models unions adapters and keeps the first descriptor per id."""
    ollama = FakeAdapter(BackendType.OLLAMA, models=[make_descriptor(), make_descriptor()])
    embedded = FakeAdapter(BackendType.TRANSFORMERS, models=[
        make_descriptor(BackendType.TRANSFORMERS, "gpt2"),
    ])
    manager = build_manager(ollama, embedded)

    ids = [m.id for m in manager.list_models()]

    assert ids == ["ollama:llama3.2:3b", "transformers:gpt2"]
    assert "transformers:gpt2" in registry


# ============================================================================
# Recommendation
# ============================================================================

def test_recommend_uses_tier_default_when_installed(build_manager):
    """Test the adapter's tier default beats the first installed candidate."""
    ollama = FakeAdapter(BackendType.OLLAMA, models=[
        make_descriptor(name="llama3"),
        make_descriptor(name="mistral:7b"),
    ])
    ollama.defaults[Capability.CHAT] = "ollama:mistral:7b"
    manager = build_manager(ollama)

    assert manager.recommend(Capability.CHAT).id == "ollama:mistral:7b"


def test_recommend_skips_uninstalled(build_manager):
    """Test models that are not installed are never recommended."""
    ollama = FakeAdapter(BackendType.OLLAMA, models=[make_descriptor(installed=False)])
    embedded = FakeAdapter(BackendType.TRANSFORMERS, models=[
        make_descriptor(BackendType.TRANSFORMERS, "gpt2"),
    ])
    manager = build_manager(ollama, embedded)

    assert manager.recommend(Capability.CHAT).id == "transformers:gpt2"


def test_recommend_honors_preferred_backend(build_manager, ollama):
    """Test a preferred backend is tried before cost order."""
    cloud = FakeAdapter(BackendType.HUGGINGFACE, models=[
        make_descriptor(BackendType.HUGGINGFACE, "meta-llama/Llama-3.2-3B-Instruct"),
    ])
    manager = build_manager(ollama, cloud)

    assert manager.recommend(Capability.CHAT).backend == BackendType.OLLAMA
    assert manager.recommend(Capability.CHAT, BackendType.HUGGINGFACE).backend == BackendType.HUGGINGFACE


def test_recommend_none_without_capable_model(build_manager, ollama):
    """Test recommend returns None when nothing installed supports the capability."""
    manager = build_manager(ollama)
    assert manager.recommend(Capability.TEXT_TO_IMAGE) is None


def test_tier_can_be_changed(build_manager, ollama):
    """Test the hardware tier is adjustable at runtime."""
    manager = build_manager(ollama, tier=HardwareTier.LEAN)
    manager.set_tier(HardwareTier.HEAVY)
    assert manager.get_tier() == HardwareTier.HEAVY


# ============================================================================
# Dispatch
# ============================================================================

def test_chat_routes_to_installed_model(build_manager, ollama):
    """Test an unpinned chat goes to the recommended installed model."""
    ollama.reply = "hello there"
    manager = build_manager(ollama)

    response = manager.chat(_chat())

    assert response.message.content == "hello there"
    assert response.backend == BackendType.OLLAMA
    assert ollama.calls[0][1] == "ollama:llama3.2:3b"


def test_dispatch_records_use(build_manager, ollama, resources):
    """Test every successful call refreshes the model's residency record."""
    used = []
    resources.record_used = used.append
    manager = build_manager(ollama)

    manager.chat(_chat())

    assert used == ["ollama:llama3.2:3b"]


def test_no_backend_available(build_manager):
    """Test dispatch fails fast when every backend is down."""
    manager = build_manager(FakeAdapter(BackendType.OLLAMA, available=False))

    with pytest.raises(NoAvailableProviderError):
        manager.chat(_chat())


def test_explicit_model_on_unknown_backend(build_manager, ollama):
    """Test an explicit id with an unknown backend tag is rejected."""
    manager = build_manager(ollama)

    with pytest.raises(NoAvailableProviderError, match="Unknown backend"):
        manager.chat(_chat(model="openai:gpt-4"))


def test_explicit_model_on_unavailable_backend(build_manager, ollama):
    """Test an explicit id on a backend that is down is rejected."""
    cloud = FakeAdapter(BackendType.HUGGINGFACE, available=False)
    manager = build_manager(ollama, cloud)

    with pytest.raises(NoAvailableProviderError, match="not available"):
        manager.chat(_chat(model="huggingface:org/model"))


def test_explicit_model_without_capability(build_manager):
    """Test an explicit model that cannot serve the task is rejected before dispatch."""
    ollama = FakeAdapter(BackendType.OLLAMA, models=[
        make_descriptor(name="nomic-embed-text", capabilities=(Capability.EMBED,)),
    ])
    manager = build_manager(ollama)

    with pytest.raises(CapabilityUnsupportedError):
        manager.chat(_chat(model="ollama:nomic-embed-text"))
    assert ollama.calls == []


def test_explicit_unknown_model_passes_through(build_manager, ollama):
    """Test an id the router has no descriptor for is forwarded when the backend supports the task."""
    manager = build_manager(ollama)

    response = manager.chat(_chat(model="ollama:phi3"))

    assert response.model == "ollama:phi3"
    assert ollama.calls[0][1] == "ollama:phi3"


def test_preferred_backend_used_for_unpinned_request(build_manager, ollama):
    """Test preferredBackend steers an unpinned request."""
    embedded = FakeAdapter(BackendType.TRANSFORMERS, models=[
        make_descriptor(BackendType.TRANSFORMERS, "gpt2"),
    ])
    manager = build_manager(ollama, embedded)

    response = manager.chat(_chat(preferred_backend=BackendType.TRANSFORMERS))

    assert response.backend == BackendType.TRANSFORMERS
    assert ollama.calls == []


def test_capability_unsupported_when_nothing_matches(build_manager, ollama):
    """Test a task no installed model supports fails with CapabilityUnsupportedError."""
    manager = build_manager(ollama)

    with pytest.raises(CapabilityUnsupportedError, match="text-to-image"):
        manager.image_generate(ImageGenRequest(prompt="a cat"))


def test_generate_with_images_needs_image_to_text(build_manager):
    """Test a generate request carrying images is routed to an image-to-text model."""
    ollama = FakeAdapter(BackendType.OLLAMA, models=[
        make_descriptor(name="llama3", capabilities=(Capability.GENERATE,)),
        make_descriptor(name="llava:7b", capabilities=(Capability.GENERATE, Capability.IMAGE_TO_TEXT)),
    ])
    manager = build_manager(ollama)

    manager.generate(GenerateRequest(prompt="describe", images=["aGVsbG8="]))
    manager.generate(GenerateRequest(prompt="write"))

    assert [call[1] for call in ollama.calls] == ["ollama:llava:7b", "ollama:llama3"]


def test_embed_dispatch(build_manager):
    """Test embeddings are routed to an embedding model."""
    ollama = FakeAdapter(BackendType.OLLAMA, models=[
        make_descriptor(name="nomic-embed-text", capabilities=(Capability.EMBED,)),
    ])
    manager = build_manager(ollama)

    response = manager.embed(EmbedRequest(text=["a", "b"]))

    assert response.embeddings == [[1.0, 0.0], [1.0, 0.0]]


def test_unexpected_adapter_error_wrapped(build_manager, ollama):
    """Test non-SILO exceptions from an adapter surface as DispatchError."""
    ollama.fail_with = RuntimeError("socket closed")
    manager = build_manager(ollama)

    with pytest.raises(DispatchError, match="socket closed") as excinfo:
        manager.chat(_chat())
    assert excinfo.value.backend == "ollama"


def test_silo_errors_propagate_unchanged(build_manager, ollama):
    """Test adapter DispatchErrors are not re-wrapped."""
    error = DispatchError("Model not found", "ollama", "ollama:llama3.2:3b")
    ollama.fail_with = error
    manager = build_manager(ollama)

    with pytest.raises(DispatchError) as excinfo:
        manager.chat(_chat())
    assert excinfo.value is error


# ============================================================================
# Pulls
# ============================================================================

def test_pull_reports_progress_and_installs(build_manager, event_bus):
    """Test a pull publishes progress, completes and marks the model installed."""
    ollama = FakeAdapter(BackendType.OLLAMA, models=[make_descriptor(installed=False)])
    manager = build_manager(ollama)
    seen = []
    manager.subscribe_pull(seen.append)

    handle = manager.pull("ollama:llama3.2:3b")
    task = handle.wait(timeout=5)

    assert task.phase == PullPhase.COMPLETE
    assert task.progress == 1.0
    assert handle.result().success is True
    assert wait_for(lambda: any(t.phase == PullPhase.COMPLETE for t in seen))
    assert [t.progress for t in seen if t.phase == PullPhase.DOWNLOADING] == [0.5, 1.0]
    assert manager.recommend(Capability.CHAT).id == "ollama:llama3.2:3b"


def test_pull_joins_in_flight_download(build_manager, gate):
    """Test concurrent pulls of one model share a single download."""
    ollama = FakeAdapter(BackendType.OLLAMA, models=[make_descriptor(installed=False)])
    ollama.pull_gate = gate
    manager = build_manager(ollama)

    first = manager.pull("ollama:llama3.2:3b")
    second = manager.pull("ollama:llama3.2:3b")

    assert first is second
    assert manager.pull_in_progress("ollama:llama3.2:3b")

    gate.set()
    first.wait(timeout=5)
    assert ollama.pull_count == 1
    assert wait_for(lambda: not manager.pull_in_progress("ollama:llama3.2:3b"))


def test_status_shows_downloading_during_pull(build_manager, gate):
    """Test the backend reports DOWNLOADING while a pull is in flight."""
    ollama = FakeAdapter(BackendType.OLLAMA, models=[make_descriptor(installed=False)])
    ollama.pull_gate = gate
    manager = build_manager(ollama)

    handle = manager.pull("ollama:llama3.2:3b")
    status = manager.refresh_status().for_backend(BackendType.OLLAMA)

    assert status.state == BackendState.DOWNLOADING
    assert status.download_progress == 0.0
    assert status.available

    gate.set()
    handle.wait(timeout=5)
    assert manager.get_status().for_backend(BackendType.OLLAMA).state == BackendState.AVAILABLE


def test_status_current_when_pull_result_returns(build_manager, monkeypatch):
    """Test a finished pull is visible in the status snapshot as soon as its result is available."""
    ollama = FakeAdapter(BackendType.OLLAMA, models=[make_descriptor(installed=False)])
    manager = build_manager(ollama)
    manager.refresh_status()
    fast_probe = ollama._probe

    def slow_probe():
        time.sleep(0.3)
        return fast_probe()

    monkeypatch.setattr(ollama, "_probe", slow_probe)

    result = manager.pull("ollama:llama3.2:3b").result(timeout=5)

    assert result.success is True
    status = manager.get_status().for_backend(BackendType.OLLAMA)
    assert status.state == BackendState.AVAILABLE
    assert [m.installed for m in status.models] == [True]
    assert not manager.pull_in_progress("ollama:llama3.2:3b")


def test_pull_failure(build_manager):
    """Test a failed pull ends in the error phase with the backend's message."""
    ollama = FakeAdapter(BackendType.OLLAMA, models=[make_descriptor(installed=False)])
    ollama.pull_error = "manifest unknown"
    manager = build_manager(ollama)

    handle = manager.pull("ollama:llama3.2:3b")
    result = handle.result(timeout=5)

    assert result.success is False
    assert "manifest unknown" in result.error
    assert handle.task.phase == PullPhase.ERROR


def test_pull_unknown_backend(build_manager, ollama):
    """Test pulling a model of an unknown backend is rejected."""
    manager = build_manager(ollama)

    with pytest.raises(NoAvailableProviderError):
        manager.pull("openai:gpt-4")


def test_model_status_during_pull(build_manager, gate):
    """Test per-model status includes the in-flight pull."""
    ollama = FakeAdapter(BackendType.OLLAMA, models=[make_descriptor(installed=False)])
    ollama.pull_gate = gate
    manager = build_manager(ollama)
    manager.refresh_status()

    handle = manager.pull("ollama:llama3.2:3b")
    status = manager.get_model_status("ollama:llama3.2:3b")

    assert status["exists"] is True
    assert status["downloaded"] is False
    assert status["pull"]["modelId"] == "ollama:llama3.2:3b"

    gate.set()
    handle.wait(timeout=5)


# ============================================================================
# Residency & lifecycle
# ============================================================================

def test_load_and_unload_model(build_manager, resources):
    """Test load/unload go through the adapter and show up in residency."""
    embedded = FakeAdapter(BackendType.TRANSFORMERS, resources=resources, models=[
        make_descriptor(BackendType.TRANSFORMERS, "gpt2", size_bytes=400),
    ])
    manager = build_manager(embedded)

    assert manager.load_model("transformers:gpt2").success
    assert [r.model_id for r in manager.get_loaded_models()] == ["transformers:gpt2"]
    assert manager.get_model_status("transformers:gpt2")["footprint_bytes"] == 400

    assert manager.unload_model("transformers:gpt2").success
    assert manager.get_loaded_models() == []


def test_operation_on_unknown_backend(build_manager, ollama):
    """Test lifecycle operations report failure instead of raising."""
    manager = build_manager(ollama)

    result = manager.load_model("openai:gpt-4")

    assert result.success is False
    assert "Unknown backend" in result.error


def test_delete_model(build_manager, ollama):
    """Test deleting a model removes it from the next status."""
    manager = build_manager(ollama)

    assert manager.delete_model("ollama:llama3.2:3b").success
    assert manager.get_status().for_backend(BackendType.OLLAMA).models == ()


def test_delete_failure_reported(build_manager, ollama):
    """Test adapter errors during delete become a failed OperationResult."""
    def refuse(model_id):
        raise DispatchError("Model not found", "ollama", model_id)

    ollama.delete = refuse
    manager = build_manager(ollama)

    result = manager.delete_model("ollama:llama3.2:3b")

    assert result.success is False
    assert "Model not found" in result.error


def test_shutdown_closes_adapters(build_manager, ollama):
    """Test shutdown closes every adapter."""
    manager = build_manager(ollama)
    manager.shutdown()
    assert ollama.closed is True
