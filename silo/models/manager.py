"""Provider manager - routes requests to backends and publishes aggregate status."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from silo.errors import (
    CapabilityUnsupportedError,
    DispatchError,
    NoAvailableProviderError,
    SiloError,
)
from silo.events import Event, EventBus, EventType, Subscription
from silo.models.pulls import PullHandle
from silo.models.registry import ModelRegistry
from silo.models.resources import ResourceManager
from silo.models.schema import (
    BACKEND_PRIORITY,
    AggregateStatus,
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
    LoadedModelRecord,
    ModelDescriptor,
    OperationResult,
    PullPhase,
    PullTask,
    VisionRequest,
    VisionResponse,
    split_model_id,
)
from silo.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

SOURCE = "router"


class ProviderManager:
    """
    Single entry point for model calls.

    Resolves which backend/model serves a request, forwards it to the
    adapter, records residency use, and owns the pull workers.

    Locks guard only bookkeeping (status snapshot, in-flight pulls) and are
    never held while an adapter is called.
    """

    def __init__(
        self,
        adapters: Iterable[ProviderAdapter],
        registry: ModelRegistry,
        resources: ResourceManager,
        event_bus: Optional[EventBus] = None,
        tier: HardwareTier = HardwareTier.STEADY,
        pull_workers: int = 2,
    ):
        by_backend = {adapter.backend: adapter for adapter in adapters}
        self._adapters: Dict[BackendType, ProviderAdapter] = {
            backend: by_backend[backend] for backend in BACKEND_PRIORITY if backend in by_backend
        }
        self.registry = registry
        self.resources = resources
        self.event_bus = event_bus or EventBus()
        self._tier = tier

        for adapter in self._adapters.values():
            resources.attach(adapter)

        self._status_lock = threading.Lock()
        self._status: Optional[AggregateStatus] = None

        self._pull_lock = threading.Lock()
        self._pulls: Dict[str, PullHandle] = {}
        self._pull_pool = ThreadPoolExecutor(max_workers=pull_workers, thread_name_prefix="silo-pull")

    # ------------------------------------------------------------------
    # Adapters & tier
    # ------------------------------------------------------------------

    @property
    def adapters(self) -> List[ProviderAdapter]:
        return list(self._adapters.values())

    def get_adapter(self, backend: BackendType) -> Optional[ProviderAdapter]:
        try:
            return self._adapters.get(BackendType(backend))
        except ValueError:
            return None

    def get_tier(self) -> HardwareTier:
        return self._tier

    def set_tier(self, tier: HardwareTier) -> None:
        self._tier = HardwareTier(tier)
        logger.info(f"Hardware tier set to {self._tier.value}")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def refresh_status(self, force: bool = True) -> AggregateStatus:
        """
        Probe every adapter and publish a new aggregate status snapshot.

        Args:
            force: Bypass each adapter's probe cache
        """
        statuses = []
        for adapter in self._adapters.values():
            status = self._overlay_pulls(adapter.probe(force=force))
            self.registry.register_many(m for m in status.models if m.capabilities)
            statuses.append(status)

        available = [s for s in statuses if s.available]
        aggregate = AggregateStatus(
            backends=tuple(statuses),
            has_available=bool(available),
            recommended=self._recommend_backend(available),
        )

        with self._status_lock:
            previous = self._status
            self._status = aggregate

        if previous != aggregate:
            self.event_bus.emit(EventType.STATUS_CHANGED, SOURCE, aggregate.model_dump(mode="json"))
        return aggregate

    def get_status(self) -> AggregateStatus:
        """Last published snapshot; probes once if nothing was published yet."""
        with self._status_lock:
            status = self._status
        return status if status is not None else self.refresh_status(force=False)

    def _recommend_backend(self, available: List[BackendStatus]) -> Optional[BackendType]:
        # A backend that can already chat with an installed model wins; else cost order
        for status in available:
            if any(m.installed and m.supports(Capability.CHAT) for m in status.models):
                return status.backend
        return available[0].backend if available else None

    def _overlay_pulls(self, status: BackendStatus) -> BackendStatus:
        with self._pull_lock:
            active = [h.task for h in self._pulls.values() if h.backend == status.backend and not h.done]
        if not active or status.state != BackendState.AVAILABLE:
            return status
        progress = sum(t.progress for t in active) / len(active)
        return status.model_copy(update={"state": BackendState.DOWNLOADING, "download_progress": progress})

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    def list_models(self) -> List[ModelDescriptor]:
        """Union of every adapter's models, deduplicated by id."""
        seen: Dict[str, ModelDescriptor] = {}
        for adapter in self._adapters.values():
            try:
                models = adapter.list_models()
            except SiloError as e:
                logger.error(f"Listing models from {adapter.display_name} failed: {e}")
                continue
            for descriptor in models:
                seen.setdefault(descriptor.id, descriptor)

        self.registry.register_many(d for d in seen.values() if d.capabilities)
        return list(seen.values())

    def describe(self, model_id: str) -> Optional[ModelDescriptor]:
        backend, _ = split_model_id(model_id)
        adapter = self.get_adapter(backend)
        if adapter is not None:
            for descriptor in adapter.current_status().models:
                if descriptor.id == model_id:
                    return descriptor
        return self.registry.find(model_id)

    def recommend(
        self,
        capability: Capability,
        preferred_backend: Optional[BackendType] = None,
    ) -> Optional[ModelDescriptor]:
        """
        Best installed model for a capability.

        The preferred backend is tried first, then backends in cost order. Within
        a backend its tier default wins when installed, else the first match.
        """
        order = list(self._adapters.values())
        if preferred_backend is not None:
            preferred = self.get_adapter(preferred_backend)
            if preferred is not None:
                order.remove(preferred)
                order.insert(0, preferred)

        for adapter in order:
            match = self._installed_match(adapter, capability)
            if match is not None:
                return match
        return None

    def _installed_match(self, adapter: ProviderAdapter, capability: Capability) -> Optional[ModelDescriptor]:
        status = adapter.probe()
        if not status.available or not adapter.supports(capability):
            return None

        candidates = [m for m in status.models if m.installed and m.supports(capability)]
        if not candidates:
            return None

        default = adapter.recommended_model(capability, self._tier)
        if default is not None:
            for candidate in candidates:
                if candidate.id == default.id:
                    return candidate
        return candidates[0]

    def get_model_status(self, model_id: str) -> Dict[str, Any]:
        descriptor = self.describe(model_id)
        record = self.resources.get(model_id)
        with self._pull_lock:
            handle = self._pulls.get(model_id)
        return {
            "model_id": model_id,
            "exists": descriptor is not None,
            "downloaded": bool(descriptor and descriptor.installed),
            "loaded": record is not None,
            "footprint_bytes": record.footprint_bytes if record else 0,
            "pull": handle.task.model_dump(mode="json", by_alias=True) if handle else None,
        }

    # ------------------------------------------------------------------
    # Resolution & dispatch
    # ------------------------------------------------------------------

    def _resolve(
        self,
        capability: Capability,
        model_id: Optional[str],
        preferred_backend: Optional[BackendType],
    ) -> Tuple[ProviderAdapter, str]:
        if not any(adapter.probe().available for adapter in self._adapters.values()):
            raise NoAvailableProviderError(
                "No backend is available. Start Ollama, install the embedded runtime, or configure a HuggingFace token."
            )

        if model_id:
            backend, _ = split_model_id(model_id)
            adapter = self.get_adapter(backend)
            if adapter is None:
                raise NoAvailableProviderError(f"Unknown backend '{backend}' in model id '{model_id}'")
            if not adapter.probe().available:
                raise NoAvailableProviderError(f"Backend '{backend}' is not available")

            descriptor = self.describe(model_id)
            if descriptor is not None and descriptor.capabilities:
                if not descriptor.supports(capability):
                    raise CapabilityUnsupportedError(capability.value, model_id=model_id)
            elif not adapter.supports(capability):
                raise CapabilityUnsupportedError(capability.value, backend=backend)
            return adapter, model_id

        if preferred_backend is not None:
            adapter = self.get_adapter(preferred_backend)
            if adapter is not None:
                match = self._installed_match(adapter, capability)
                if match is not None:
                    return adapter, match.id

        match = self.recommend(capability)
        if match is None:
            raise CapabilityUnsupportedError(capability.value)
        return self._adapters[match.backend], match.id

    def _dispatch(self, capability: Capability, model_id: Optional[str],
                  preferred_backend: Optional[BackendType], call: Callable[[ProviderAdapter, str], Any]) -> Any:
        adapter, resolved = self._resolve(capability, model_id, preferred_backend)
        logger.debug(f"{capability.value} -> {resolved}")

        try:
            response = call(adapter, resolved)
        except SiloError:
            raise
        except Exception as e:
            logger.error(f"{capability.value} on {resolved} failed: {e}")
            raise DispatchError(str(e), adapter.backend.value, resolved) from e

        self.resources.record_used(resolved)
        return response.model_copy(update={"backend": adapter.backend})

    def chat(self, request: ChatRequest) -> ChatResponse:
        return self._dispatch(Capability.CHAT, request.model, request.preferred_backend,
                              lambda adapter, model_id: adapter.chat(request, model_id))

    def generate(self, request: GenerateRequest) -> GenerateResponse:
        return self._dispatch(request.required_capability, request.model, request.preferred_backend,
                              lambda adapter, model_id: adapter.generate(request, model_id))

    def embed(self, request: EmbedRequest) -> EmbedResponse:
        return self._dispatch(Capability.EMBED, request.model, request.preferred_backend,
                              lambda adapter, model_id: adapter.embed(request, model_id))

    def vision(self, request: VisionRequest) -> VisionResponse:
        return self._dispatch(request.task, request.model, request.preferred_backend,
                              lambda adapter, model_id: adapter.vision(request, model_id))

    def audio(self, request: AudioRequest) -> AudioResponse:
        return self._dispatch(request.task, request.model, request.preferred_backend,
                              lambda adapter, model_id: adapter.audio(request, model_id))

    def image_generate(self, request: ImageGenRequest) -> ImageGenResponse:
        return self._dispatch(Capability.TEXT_TO_IMAGE, request.model, request.preferred_backend,
                              lambda adapter, model_id: adapter.image_generate(request, model_id))

    # ------------------------------------------------------------------
    # Pulls
    # ------------------------------------------------------------------

    def pull(self, model_id: str) -> PullHandle:
        """
        Start downloading a model, or join the download already in flight.

        Raises:
            NoAvailableProviderError: If the model's backend is unknown
        """
        backend, _ = split_model_id(model_id)
        adapter = self.get_adapter(backend)
        if adapter is None:
            raise NoAvailableProviderError(f"Unknown backend '{backend}' in model id '{model_id}'")

        with self._pull_lock:
            handle = self._pulls.get(model_id)
            if handle is not None and not handle.done:
                logger.info(f"Joining in-flight pull of {model_id}")
                return handle
            handle = PullHandle(model_id, adapter.backend)
            self._pulls[model_id] = handle

        logger.info(f"Pulling {model_id}")
        self._pull_pool.submit(self._run_pull, adapter, handle)
        return handle

    def _run_pull(self, adapter: ProviderAdapter, handle: PullHandle) -> None:
        def report(task: PullTask) -> None:
            handle.update(task)
            self._publish_pull(handle.task)

        try:
            try:
                adapter.pull(handle.model_id, report)
            except Exception as e:
                logger.error(f"Pull of {handle.model_id} failed: {e}")
                handle.fail(str(e))
                self._publish_pull(handle.task)

            with self._pull_lock:
                if self._pulls.get(handle.model_id) is handle:
                    del self._pulls[handle.model_id]

            # Status must show the new model before waiters are released
            adapter.invalidate()
            try:
                self.refresh_status(force=False)
            except SiloError as e:
                logger.warning(f"Status refresh after pull failed: {e}")
        finally:
            was_error = handle.task.phase == PullPhase.ERROR
            handle.finish()
            if not was_error:
                self._publish_pull(handle.task)
                logger.info(f"Pull of {handle.model_id} complete")

    def _publish_pull(self, task: PullTask) -> None:
        self.event_bus.emit(EventType.PULL_PROGRESS, SOURCE, task.model_dump(mode="json", by_alias=True))

    def subscribe_pull(self, callback: Callable[[PullTask], None]) -> Subscription:
        """Receive every pull progress update until the subscription is cancelled."""
        def on_event(event: Event) -> None:
            callback(PullTask.model_validate(event.data))

        return self.event_bus.subscribe(EventType.PULL_PROGRESS, on_event)

    def pull_in_progress(self, model_id: str) -> bool:
        with self._pull_lock:
            handle = self._pulls.get(model_id)
        return handle is not None and not handle.done

    # ------------------------------------------------------------------
    # Residency & lifecycle
    # ------------------------------------------------------------------

    def _operation(self, model_id: str, action: Callable[[ProviderAdapter, str], None]) -> OperationResult:
        backend, _ = split_model_id(model_id)
        adapter = self.get_adapter(backend)
        if adapter is None:
            return OperationResult(success=False, error=f"Unknown backend '{backend}'")
        try:
            action(adapter, model_id)
        except SiloError as e:
            logger.error(str(e))
            return OperationResult(success=False, error=str(e))
        return OperationResult(success=True)

    def load_model(self, model_id: str) -> OperationResult:
        return self._operation(model_id, lambda adapter, m: adapter.load(m))

    def unload_model(self, model_id: str) -> OperationResult:
        return self._operation(model_id, lambda adapter, m: adapter.unload(m))

    def delete_model(self, model_id: str) -> OperationResult:
        result = self._operation(model_id, lambda adapter, m: adapter.delete(m))
        if result.success:
            self.refresh_status(force=False)
        return result

    def get_loaded_models(self) -> List[LoadedModelRecord]:
        return self.resources.list()

    def shutdown(self) -> None:
        self._pull_pool.shutdown(wait=False, cancel_futures=True)
        for adapter in self._adapters.values():
            try:
                adapter.close()
            except SiloError as e:
                logger.warning(f"Closing {adapter.display_name} failed: {e}")
        self.resources.clear()
        logger.info("Provider manager shut down")
