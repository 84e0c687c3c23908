"""Base class for inference backend adapters."""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, FrozenSet, List, Optional

from silo.errors import CapabilityUnsupportedError
from silo.models.schema import (
    AudioRequest,
    AudioResponse,
    BackendState,
    BackendStatus,
    BackendType,
    Capability,
    ChatRequest,
    ChatResponse,
    EmbedRequest,
    EmbedResponse,
    GenerateRequest,
    GenerateResponse,
    HardwareTier,
    ImageGenRequest,
    ImageGenResponse,
    ModelDescriptor,
    PullTask,
    VisionRequest,
    VisionResponse,
    split_model_id,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[PullTask], None]


class ProviderAdapter(ABC):
    """
    Uniform interface over one inference backend.

    Provides common functionality for:
    - TTL-cached probing (``probe``)
    - Capability checks
    - Default "unsupported" implementations of every task

    Subclasses must implement:
    - _probe(): check reachability and list models
    - recommended_model(): tier-aware default per capability
    and override the task methods their backend supports.
    """

    backend: BackendType
    display_name: str = "Backend"
    supported_capabilities: FrozenSet[Capability] = frozenset()

    def __init__(self, probe_ttl: float = 5.0):
        """
        Args:
            probe_ttl: Seconds a probe result is reused before the backend is asked again
        """
        self.probe_ttl = probe_ttl
        self._probe_lock = threading.Lock()
        self._status: Optional[BackendStatus] = None
        self._checked_at = float("-inf")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @abstractmethod
    def _probe(self) -> BackendStatus:
        """Ask the backend for its current state. Must not raise."""

    def probe(self, force: bool = False) -> BackendStatus:
        with self._probe_lock:
            cached = self._status
            fresh = cached is not None and (time.monotonic() - self._checked_at) < self.probe_ttl
        if fresh and not force:
            return cached

        status = self._probe()
        with self._probe_lock:
            if status.state != (cached.state if cached else None):
                logger.info(f"{self.display_name} is {status.state.value}"
                            + (f": {status.error}" if status.error else ""))
            self._status = status
            self._checked_at = time.monotonic()
        return status

    def current_status(self) -> BackendStatus:
        """Last probe result without touching the backend."""
        with self._probe_lock:
            if self._status is not None:
                return self._status
        return self._make_status(BackendState.CHECKING)

    def invalidate(self) -> None:
        """Force the next ``probe`` to hit the backend."""
        with self._probe_lock:
            self._checked_at = float("-inf")

    def list_models(self) -> List[ModelDescriptor]:
        return list(self.probe().models)

    def supports(self, capability: Capability) -> bool:
        return capability in self.supported_capabilities

    @abstractmethod
    def recommended_model(self, capability: Capability, tier: HardwareTier) -> Optional[ModelDescriptor]:
        """Best model of this backend for a capability at a tier, installed or not."""

    # ------------------------------------------------------------------
    # Tasks (unsupported unless overridden)
    # ------------------------------------------------------------------

    def chat(self, request: ChatRequest, model_id: str) -> ChatResponse:
        raise CapabilityUnsupportedError(Capability.CHAT.value, backend=self.backend.value)

    def generate(self, request: GenerateRequest, model_id: str) -> GenerateResponse:
        raise CapabilityUnsupportedError(request.required_capability.value, backend=self.backend.value)

    def embed(self, request: EmbedRequest, model_id: str) -> EmbedResponse:
        raise CapabilityUnsupportedError(Capability.EMBED.value, backend=self.backend.value)

    def vision(self, request: VisionRequest, model_id: str) -> VisionResponse:
        raise CapabilityUnsupportedError(request.task.value, backend=self.backend.value)

    def audio(self, request: AudioRequest, model_id: str) -> AudioResponse:
        raise CapabilityUnsupportedError(request.task.value, backend=self.backend.value)

    def image_generate(self, request: ImageGenRequest, model_id: str) -> ImageGenResponse:
        raise CapabilityUnsupportedError(Capability.TEXT_TO_IMAGE.value, backend=self.backend.value)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def pull(self, model_id: str, on_progress: ProgressCallback) -> None:
        """Download a model, reporting progress. Raises DownloadError on failure."""
        raise CapabilityUnsupportedError("pull", backend=self.backend.value)

    def delete(self, model_id: str) -> None:
        raise CapabilityUnsupportedError("delete", backend=self.backend.value)

    def load(self, model_id: str) -> None:
        """Make a model resident. A no-op for backends that manage residency themselves."""

    def unload(self, model_id: str) -> None:
        """Release a resident model. A no-op for backends that manage residency themselves."""

    def is_loaded(self, model_id: str) -> bool:
        return False

    def close(self) -> None:
        """Release client/session state."""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _make_status(
        self,
        state: BackendState,
        models: Optional[List[ModelDescriptor]] = None,
        error: Optional[str] = None,
    ) -> BackendStatus:
        return BackendStatus(
            backend=self.backend,
            name=self.display_name,
            state=state,
            error=error,
            models=tuple(models or ()),
        )

    def _local_name(self, model_id: str) -> str:
        backend, name = split_model_id(model_id)
        return name if backend == self.backend.value else model_id

    def _progress(self, model_id: str, progress: float, phase, error: Optional[str] = None) -> PullTask:
        return PullTask(
            model_id=model_id,
            backend=self.backend,
            progress=min(1.0, max(0.0, progress)),
            phase=phase,
            error=error,
        )
