"""Backend adapters for SILO.

- ProviderAdapter: abstract base shared by all backends
- OllamaProvider: local Ollama daemon (HTTP)
- TransformersProvider: embedded transformers pipelines
- HuggingFaceProvider: HuggingFace Inference API (cloud)

Usage:
    from silo.providers import PROVIDER_REGISTRY

    adapter_cls = PROVIDER_REGISTRY[BackendType.OLLAMA]
    adapter = adapter_cls(base_url="http://localhost:11434")
"""

from typing import Dict, Type

from silo.models.schema import BackendType
from silo.providers.base import ProviderAdapter
from silo.providers.huggingface_provider import HuggingFaceProvider
from silo.providers.ollama_provider import OllamaProvider
from silo.providers.transformers_provider import TransformersProvider

# The adapter set is closed: one implementation per backend tag
PROVIDER_REGISTRY: Dict[BackendType, Type[ProviderAdapter]] = {
    BackendType.OLLAMA: OllamaProvider,
    BackendType.TRANSFORMERS: TransformersProvider,
    BackendType.HUGGINGFACE: HuggingFaceProvider,
}


def get_provider(backend: BackendType) -> Type[ProviderAdapter]:
    """
    Get the adapter class for a backend.

    Raises:
        KeyError: If the backend tag is unknown
    """
    backend = BackendType(backend)
    return PROVIDER_REGISTRY[backend]


__all__ = [
    "ProviderAdapter",
    "OllamaProvider",
    "TransformersProvider",
    "HuggingFaceProvider",
    "PROVIDER_REGISTRY",
    "get_provider",
]
