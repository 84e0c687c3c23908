"""Model registry - in-memory catalog of known and user-added models."""

import logging
import threading
from typing import Dict, Iterable, List, Optional

from silo.errors import InvalidModelError, ModelNotFoundError
from silo.models.schema import (
    BackendType,
    Capability,
    CustomModelConfig,
    ModelDescriptor,
)

logger = logging.getLogger(__name__)


class ModelRegistry:
    """
    Thread-safe catalog of ModelDescriptors keyed by composite id.

    Descriptors are immutable: registering an existing id replaces the entry,
    so re-registering the same descriptor is a no-op.
    """

    def __init__(self, descriptors: Optional[Iterable[ModelDescriptor]] = None):
        self._lock = threading.Lock()
        self._models: Dict[str, ModelDescriptor] = {}
        if descriptors:
            self.register_many(descriptors)

    def register(self, descriptor: ModelDescriptor) -> ModelDescriptor:
        """
        Add or replace a descriptor.

        Raises:
            InvalidModelError: If the descriptor declares no capabilities
        """
        if not descriptor.capabilities:
            raise InvalidModelError(f"Model '{descriptor.id}' declares no capabilities")

        with self._lock:
            previous = self._models.get(descriptor.id)
            self._models[descriptor.id] = descriptor

        if previous is None:
            logger.debug(f"Registered model {descriptor.id}")
        return descriptor

    def register_many(self, descriptors: Iterable[ModelDescriptor]) -> int:
        count = 0
        for descriptor in descriptors:
            self.register(descriptor)
            count += 1
        return count

    def add_custom_model(self, config: CustomModelConfig) -> ModelDescriptor:
        """Register a user-added embedded or cloud model."""
        descriptor = self.register(config.to_descriptor())
        logger.info(f"Added custom model {descriptor.id} ({descriptor.backend.value})")
        return descriptor

    def unregister(self, model_id: str) -> bool:
        with self._lock:
            return self._models.pop(model_id, None) is not None

    def find(self, model_id: str) -> Optional[ModelDescriptor]:
        """Return the descriptor for model_id, or None if unknown."""
        with self._lock:
            return self._models.get(model_id)

    def get(self, model_id: str) -> ModelDescriptor:
        """
        Return the descriptor for model_id.

        Raises:
            ModelNotFoundError: If the id is not registered
        """
        descriptor = self.find(model_id)
        if descriptor is None:
            raise ModelNotFoundError(model_id)
        return descriptor

    def list(
        self,
        capability: Optional[Capability] = None,
        backend: Optional[BackendType] = None,
    ) -> List[ModelDescriptor]:
        """
        List descriptors in registration order.

        Args:
            capability: Only models supporting this capability
            backend: Only models served by this backend
        """
        with self._lock:
            models = list(self._models.values())

        if capability is not None:
            models = [m for m in models if m.supports(capability)]
        if backend is not None:
            models = [m for m in models if m.backend == backend]
        return models

    def __contains__(self, model_id: str) -> bool:
        return self.find(model_id) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._models)
