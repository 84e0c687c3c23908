"""Workbench - the explicitly constructed owner of every SILO service.

One instance is built at process start and passed to whatever needs it:

    with Workbench().start() as workbench:
        workbench.manager.chat(request)
        workbench.executor.execute(pipeline, inputs)
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Type

from silo.config import Config
from silo.config_loader import ConfigLoader, Settings
from silo.events import EventBus
from silo.models.catalog import builtin_descriptors
from silo.models.manager import ProviderManager
from silo.models.registry import ModelRegistry
from silo.models.resources import ResourceManager
from silo.models.schema import HardwareTier
from silo.pipeline.executor import PipelineExecutor
from silo.pipeline.loader import PipelineLoader, PipelineRegistry
from silo.providers.base import ProviderAdapter
from silo.providers.huggingface_provider import HuggingFaceProvider
from silo.providers.ollama_provider import OllamaProvider
from silo.providers.transformers_provider import TransformersProvider
from silo.sse.stream import SSEManager

logger = logging.getLogger(__name__)


class Workbench:
    """Builds and wires registry, resources, adapters, router and executor."""

    def __init__(
        self,
        config: Type[Config] = Config,
        settings: Optional[Settings] = None,
        adapters: Optional[Sequence[ProviderAdapter]] = None,
        registry: Optional[ModelRegistry] = None,
        resources: Optional[ResourceManager] = None,
    ):
        """
        Args:
            config: Configuration class (environment-derived defaults)
            settings: Settings overriding config; read from SETTINGS_FILE if None
            adapters: Adapters to route between (defaults to all three backends)
            registry: Model registry (defaults to the built-in catalog)
            resources: Residency tracker (defaults to one sized by the memory budget)
        """
        self.config = config
        self.settings = settings if settings is not None else ConfigLoader.load_settings(config.SETTINGS_FILE)
        self.event_bus = EventBus()

        self.registry = registry or ModelRegistry(builtin_descriptors())
        for custom in self.settings.custom_models:
            self.registry.add_custom_model(custom)

        budget = self.settings.memory_budget_bytes or config.MEMORY_BUDGET_BYTES
        self.resources = resources or ResourceManager(memory_budget=budget, event_bus=self.event_bus)
        if self.resources.event_bus is None:
            self.resources.event_bus = self.event_bus

        tier = self.settings.tier or HardwareTier(config.HARDWARE_TIER.upper())
        self.manager = ProviderManager(
            adapters if adapters is not None else self._default_adapters(),
            self.registry,
            self.resources,
            event_bus=self.event_bus,
            tier=tier,
            pull_workers=config.PULL_WORKERS,
        )

        pipelines_dir = Path(config.PIPELINES_DIR) if config.PIPELINES_DIR else None
        self.pipelines = PipelineRegistry(PipelineLoader(), pipelines_dir)
        self.executor = PipelineExecutor(self.manager, event_bus=self.event_bus, loader=self.pipelines.loader)
        self.sse = SSEManager()
        self._started = False
        self._closed = False

    def _default_adapters(self) -> List[ProviderAdapter]:
        config = self.config
        return [
            OllamaProvider(base_url=config.OLLAMA_BASE_URL, probe_ttl=config.PROBE_TTL_SECONDS),
            TransformersProvider(
                self.registry,
                resources=self.resources,
                cache_dir=config.MODELS_CACHE,
                probe_ttl=config.PROBE_TTL_SECONDS,
            ),
            HuggingFaceProvider(self.registry, token=config.HF_API_TOKEN),
        ]

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> "Workbench":
        """Load custom pipelines, bridge events to SSE and take the first status snapshot."""
        if self._started:
            return self
        self.pipelines.load_custom_dir()
        self.sse.attach(self.event_bus)
        status = self.manager.refresh_status()
        available = [s.backend.value for s in status.backends if s.available]
        logger.info(f"Workbench started; available backends: {', '.join(available) or 'none'}")
        self._started = True
        return self

    def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.executor.shutdown()
        self.manager.shutdown()
        self.sse.detach()
        self._started = False
        logger.info("Workbench shut down")

    def __enter__(self) -> "Workbench":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
