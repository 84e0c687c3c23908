"""Shared fixtures: an in-memory backend adapter and router wiring."""

import threading
import time

import pytest

from silo.errors import DownloadError
from silo.events import EventBus
from silo.models.manager import ProviderManager
from silo.models.registry import ModelRegistry
from silo.models.resources import ResourceManager
from silo.models.schema import (
    AudioResponse,
    BackendState,
    BackendType,
    Capability,
    ChatMessage,
    ChatResponse,
    EmbedResponse,
    GenerateResponse,
    HardwareTier,
    ImageGenResponse,
    ModelDescriptor,
    PullPhase,
    VisionResponse,
    make_model_id,
)
from silo.providers.base import ProviderAdapter


def make_descriptor(backend=BackendType.OLLAMA, name="llama3.2:3b", capabilities=(Capability.CHAT,),
                    installed=True, size_bytes=0, tier=HardwareTier.LEAN):
    return ModelDescriptor(
        id=make_model_id(backend, name),
        name=name,
        backend=backend,
        capabilities=frozenset(capabilities),
        size_bytes=size_bytes,
        tier=tier,
        installed=installed,
        is_local=backend != BackendType.HUGGINGFACE,
    )


class FakeAdapter(ProviderAdapter):
    """Scripted adapter: serves canned replies and records every call."""

    def __init__(self, backend=BackendType.OLLAMA, models=(), capabilities=None, available=True, resources=None):
        super().__init__(probe_ttl=0)
        self.backend = backend
        self.display_name = f"Fake {backend.value}"
        self.supported_capabilities = frozenset(capabilities if capabilities is not None else Capability)
        self.models = list(models)
        self.available = available
        self.resources = resources
        self.defaults = {}

        self.calls = []
        self.replies = []
        self.reply = "ok"
        self.fail_with = None

        self.pull_steps = (0.5, 1.0)
        self.pull_gate = None
        self.pull_error = None
        self.pull_count = 0
        self.unloaded = []
        self.closed = False

    def _probe(self):
        if not self.available:
            return self._make_status(BackendState.UNAVAILABLE, error=f"{self.backend.value} is down")
        return self._make_status(BackendState.AVAILABLE, models=self.models)

    def recommended_model(self, capability, tier):
        wanted = self.defaults.get(capability)
        for descriptor in self.models:
            if descriptor.id == wanted:
                return descriptor
        return None

    def _next_reply(self):
        if self.fail_with is not None:
            raise self.fail_with
        return self.replies.pop(0) if self.replies else self.reply

    def chat(self, request, model_id):
        self.calls.append(("chat", model_id, request))
        content = self._next_reply()
        return ChatResponse(backend=self.backend, model=model_id,
                            message=ChatMessage(role="assistant", content=content))

    def generate(self, request, model_id):
        self.calls.append(("generate", model_id, request))
        return GenerateResponse(backend=self.backend, model=model_id, response=self._next_reply())

    def embed(self, request, model_id):
        self.calls.append(("embed", model_id, request))
        return EmbedResponse(backend=self.backend, model=model_id, embeddings=[[1.0, 0.0] for _ in request.texts])

    def vision(self, request, model_id):
        self.calls.append(("vision", model_id, request))
        return VisionResponse(backend=self.backend, model=model_id, task=request.task, results=self._next_reply())

    def audio(self, request, model_id):
        self.calls.append(("audio", model_id, request))
        return AudioResponse(backend=self.backend, model=model_id, task=request.task,
                             result={"text": self._next_reply()})

    def image_generate(self, request, model_id):
        self.calls.append(("image", model_id, request))
        return ImageGenResponse(backend=self.backend, model=model_id, image="data:image/png;base64,AAAA")

    def pull(self, model_id, on_progress):
        self.pull_count += 1
        if self.pull_gate is not None:
            self.pull_gate.wait(5)
        if self.pull_error:
            raise DownloadError(self.pull_error, self.backend.value, model_id)
        for fraction in self.pull_steps:
            on_progress(self._progress(model_id, fraction, PullPhase.DOWNLOADING))
        self.models = [m.with_installed(True) if m.id == model_id else m for m in self.models]

    def delete(self, model_id):
        self.models = [m for m in self.models if m.id != model_id]

    def load(self, model_id):
        if self.resources is not None:
            descriptor = next((m for m in self.models if m.id == model_id), None)
            self.resources.record_load(model_id, self.backend, descriptor.size_bytes if descriptor else 0)

    def unload(self, model_id):
        self.unloaded.append(model_id)
        if self.resources is not None:
            self.resources.record_unload(model_id)

    def close(self):
        self.closed = True


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def registry():
    return ModelRegistry()


@pytest.fixture
def resources(event_bus):
    return ResourceManager(memory_budget=1000, event_bus=event_bus)


@pytest.fixture
def build_manager(registry, resources, event_bus):
    """Factory: ProviderManager over the given fake adapters, shut down after the test."""
    built = []

    def build(*adapters, tier=HardwareTier.STEADY):
        manager = ProviderManager(adapters, registry, resources, event_bus=event_bus, tier=tier)
        built.append(manager)
        return manager

    yield build
    for manager in built:
        manager.shutdown()


@pytest.fixture
def ollama():
    """Available fake Ollama with one installed chat model."""
    return FakeAdapter(BackendType.OLLAMA, models=[make_descriptor()])


@pytest.fixture
def gate():
    return threading.Event()


def wait_for(predicate, timeout=2.0, interval=0.01):
    """Poll until predicate() is true or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
