"""Model catalog, registry, residency tracking and routing."""

from silo.models.registry import ModelRegistry
from silo.models.resources import ResourceManager
from silo.models.schema import (
    BACKEND_PRIORITY,
    BackendState,
    BackendType,
    Capability,
    HardwareTier,
    ModelDescriptor,
)

__all__ = [
    "BACKEND_PRIORITY",
    "BackendState",
    "BackendType",
    "Capability",
    "HardwareTier",
    "ModelDescriptor",
    "ModelRegistry",
    "ResourceManager",
]
