"""Core schema definitions for models, backends and requests."""

from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator
from pydantic.alias_generators import to_camel


class BackendType(str, Enum):
    """Inference backends SILO can route to."""
    OLLAMA = "ollama"              # Local HTTP daemon
    TRANSFORMERS = "transformers"  # In-process embedded runtime
    HUGGINGFACE = "huggingface"    # Cloud inference API


# Cost order used when nothing else decides: local daemon, then in-process, then cloud
BACKEND_PRIORITY: Tuple[BackendType, ...] = (
    BackendType.OLLAMA,
    BackendType.TRANSFORMERS,
    BackendType.HUGGINGFACE,
)


class Capability(str, Enum):
    """Tasks a model can perform."""
    CHAT = "chat"
    GENERATE = "generate"
    EMBED = "embed"
    SUMMARIZE = "summarize"
    TRANSLATE = "translate"
    QUESTION_ANSWERING = "question-answering"
    ZERO_SHOT_CLASSIFICATION = "zero-shot-classification"
    TEXT_CLASSIFICATION = "text-classification"
    IMAGE_CLASSIFICATION = "image-classification"
    OBJECT_DETECTION = "object-detection"
    IMAGE_SEGMENTATION = "image-segmentation"
    DEPTH_ESTIMATION = "depth-estimation"
    IMAGE_TO_TEXT = "image-to-text"
    SPEECH_TO_TEXT = "speech-to-text"
    AUDIO_CLASSIFICATION = "audio-classification"
    TEXT_TO_IMAGE = "text-to-image"


VISION_CAPABILITIES = frozenset({
    Capability.IMAGE_CLASSIFICATION,
    Capability.OBJECT_DETECTION,
    Capability.IMAGE_SEGMENTATION,
    Capability.DEPTH_ESTIMATION,
    Capability.IMAGE_TO_TEXT,
})

AUDIO_CAPABILITIES = frozenset({
    Capability.SPEECH_TO_TEXT,
    Capability.AUDIO_CLASSIFICATION,
})


class HardwareTier(str, Enum):
    """Coarse machine capability class; higher tiers afford larger models."""
    LEAN = "LEAN"
    STEADY = "STEADY"
    HEAVY = "HEAVY"
    SURPLUS = "SURPLUS"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)


_TIER_ORDER = [HardwareTier.LEAN, HardwareTier.STEADY, HardwareTier.HEAVY, HardwareTier.SURPLUS]


class BackendState(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    CHECKING = "checking"
    DOWNLOADING = "downloading"


def make_model_id(backend: Union[BackendType, str], name: str) -> str:
    """Compose ``<backend>:<name>``; names may themselves contain ':'."""
    tag = backend.value if isinstance(backend, BackendType) else backend
    return f"{tag}:{name}"


def split_model_id(model_id: str) -> Tuple[str, str]:
    """
    Split a composite id at the first ':'.

    ``"ollama:llama3.2:3b"`` -> ``("ollama", "llama3.2:3b")``. An id without a
    separator yields an empty backend tag.
    """
    if ":" not in model_id:
        return "", model_id
    backend, name = model_id.split(":", 1)
    return backend, name


class ModelDescriptor(BaseModel):
    """A model known to SILO. Immutable; replace it by re-registering."""

    model_config = {"frozen": True}

    id: str = Field(..., description="Composite id '<backend>:<name>'")
    name: str = Field(..., description="Display name")
    backend: BackendType
    capabilities: FrozenSet[Capability] = Field(default_factory=frozenset)
    size_bytes: int = Field(0, ge=0, description="Approximate on-disk / in-memory footprint")
    tier: HardwareTier = HardwareTier.LEAN
    installed: bool = False
    is_local: bool = True
    description: Optional[str] = None
    hf_id: Optional[str] = Field(None, description="Hugging Face repository id, if any")
    pipeline_type: Optional[str] = Field(None, description="transformers pipeline task")
    builtin: bool = False

    @model_validator(mode='after')
    def validate_id_prefix(self):
        backend, name = split_model_id(self.id)
        if backend != self.backend.value or not name:
            raise ValueError(f"Model id '{self.id}' must have the form '{self.backend.value}:<name>'")
        return self

    @field_serializer("capabilities")
    def serialize_capabilities(self, capabilities: FrozenSet[Capability]) -> List[str]:
        return sorted(c.value for c in capabilities)

    @property
    def model_name(self) -> str:
        """The backend-local name (id without the backend tag)."""
        return split_model_id(self.id)[1]

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def with_installed(self, installed: bool) -> "ModelDescriptor":
        if installed == self.installed:
            return self
        return self.model_copy(update={"installed": installed})


class CustomModelConfig(BaseModel):
    """A user-added model for the embedded runtime or the cloud API."""

    backend: BackendType = BackendType.TRANSFORMERS
    hf_id: str = Field(..., min_length=1)
    name: Optional[str] = None
    capabilities: List[Capability] = Field(..., min_length=1)
    pipeline_type: Optional[str] = None
    size_bytes: int = 0
    tier: HardwareTier = HardwareTier.STEADY

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, backend: BackendType) -> BackendType:
        if backend == BackendType.OLLAMA:
            raise ValueError("Ollama models are discovered from the daemon, not added by hand")
        return backend

    def to_descriptor(self) -> ModelDescriptor:
        return ModelDescriptor(
            id=make_model_id(self.backend, self.hf_id),
            name=self.name or self.hf_id,
            backend=self.backend,
            capabilities=frozenset(self.capabilities),
            size_bytes=self.size_bytes,
            tier=self.tier,
            is_local=self.backend != BackendType.HUGGINGFACE,
            description=f"Custom model: {self.hf_id}",
            hf_id=self.hf_id,
            pipeline_type=self.pipeline_type or "text-generation",
        )


class BackendStatus(BaseModel):
    """Point-in-time status of one backend. Replaced wholesale, never mutated."""

    model_config = {"frozen": True}

    backend: BackendType
    name: str
    state: BackendState
    error: Optional[str] = None
    models: Tuple[ModelDescriptor, ...] = ()
    download_progress: Optional[float] = Field(None, ge=0.0, le=1.0)

    @property
    def available(self) -> bool:
        return self.state in (BackendState.AVAILABLE, BackendState.DOWNLOADING)


class AggregateStatus(BaseModel):
    """Status of all backends plus the router's recommendation."""

    model_config = {"frozen": True}

    backends: Tuple[BackendStatus, ...] = ()
    has_available: bool = False
    recommended: Optional[BackendType] = None

    def for_backend(self, backend: BackendType) -> Optional[BackendStatus]:
        for status in self.backends:
            if status.backend == backend:
                return status
        return None


class LoadedModelRecord(BaseModel):
    """Residency record owned by the ResourceManager."""

    model_config = {"frozen": True}

    model_id: str
    backend: BackendType
    loaded_at: float
    last_used: float
    footprint_bytes: int = 0


class PullPhase(str, Enum):
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    ERROR = "error"


class PullTask(BaseModel):
    """Snapshot of a model download."""

    model_config = {"frozen": True, "populate_by_name": True, "alias_generator": to_camel}

    model_id: str
    backend: BackendType
    progress: float = Field(0.0, ge=0.0, le=1.0)
    phase: PullPhase = PullPhase.DOWNLOADING
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.phase in (PullPhase.COMPLETE, PullPhase.ERROR)


class OperationResult(BaseModel):
    success: bool
    error: Optional[str] = None


# ============================================================================
# Request / response models. camelCase keys are accepted on input.
# ============================================================================


class _ApiModel(BaseModel):
    model_config = {"populate_by_name": True, "alias_generator": to_camel}


class ChatMessage(_ApiModel):
    role: Literal["system", "user", "assistant"]
    content: str
    images: Optional[List[str]] = None


class ChatRequest(_ApiModel):
    messages: List[ChatMessage] = Field(..., min_length=1)
    model: Optional[str] = None
    preferred_backend: Optional[BackendType] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class ChatResponse(_ApiModel):
    backend: BackendType
    model: str
    message: ChatMessage
    done: bool = True
    total_duration: Optional[int] = None


class GenerateRequest(_ApiModel):
    prompt: str
    model: Optional[str] = None
    preferred_backend: Optional[BackendType] = None
    images: Optional[List[str]] = None
    system: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    @property
    def required_capability(self) -> Capability:
        """Generation over images needs an image-to-text capable model."""
        return Capability.IMAGE_TO_TEXT if self.images else Capability.GENERATE


class GenerateResponse(_ApiModel):
    backend: BackendType
    model: str
    response: str
    done: bool = True
    total_duration: Optional[int] = None


class EmbedRequest(_ApiModel):
    text: Union[str, List[str]]
    model: Optional[str] = None
    preferred_backend: Optional[BackendType] = None

    @property
    def texts(self) -> List[str]:
        return [self.text] if isinstance(self.text, str) else list(self.text)


class EmbedResponse(_ApiModel):
    backend: BackendType
    model: str
    embeddings: List[List[float]]


class VisionRequest(_ApiModel):
    image: str = Field(..., description="File path, URL, or base64 (optionally a data URL)")
    task: Capability
    model: Optional[str] = None
    preferred_backend: Optional[BackendType] = None
    prompt: Optional[str] = None

    @field_validator("task")
    @classmethod
    def validate_task(cls, task: Capability) -> Capability:
        if task not in VISION_CAPABILITIES:
            raise ValueError(f"'{task.value}' is not a vision task")
        return task


class VisionResponse(_ApiModel):
    backend: BackendType
    model: str
    task: Capability
    results: Any


class AudioRequest(_ApiModel):
    audio: Union[str, bytes] = Field(..., description="File path, base64 string, or raw bytes")
    task: Capability = Capability.SPEECH_TO_TEXT
    model: Optional[str] = None
    preferred_backend: Optional[BackendType] = None

    @field_validator("task")
    @classmethod
    def validate_task(cls, task: Capability) -> Capability:
        if task not in AUDIO_CAPABILITIES:
            raise ValueError(f"'{task.value}' is not an audio task")
        return task


class AudioResponse(_ApiModel):
    backend: BackendType
    model: str
    task: Capability
    result: Dict[str, Any]


class ImageGenRequest(_ApiModel):
    prompt: str
    negative_prompt: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    steps: Optional[int] = None
    model: Optional[str] = None
    preferred_backend: Optional[BackendType] = None


class ImageGenResponse(_ApiModel):
    backend: BackendType
    model: str
    image: str = Field(..., description="data:image/...;base64 URL")
