"""Cloud adapter for the Hugging Face Inference API."""

import io
import logging
import time
from typing import Any, Callable, List, Optional

from huggingface_hub import HfApi, InferenceClient
from huggingface_hub.errors import HfHubHTTPError

from silo.errors import DispatchError
from silo.models.registry import ModelRegistry
from silo.models.schema import (
    BackendState,
    BackendStatus,
    BackendType,
    Capability,
    ChatMessage,
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
    PullPhase,
)
from silo.providers.base import ProgressCallback, ProviderAdapter
from silo.utils.formatting import to_data_url
from silo.utils.provider_errors import raise_for_hf_error
from silo.utils.retry import (
    DEFAULT_CLOUD_RETRY_CONFIG,
    RateLimitError,
    RetryConfig,
    ServiceUnavailableError,
    retry_sync,
)

logger = logging.getLogger(__name__)

DEFAULT_EMBED_MODEL = "sentence-transformers/all-MiniLM-L6-v2"


class HuggingFaceProvider(ProviderAdapter):
    """
    Remote inference through ``huggingface_hub.InferenceClient``.

    Availability means "a token is configured and accepted". Cloud models
    are never resident locally, so pull completes immediately and
    load/unload are no-ops. Rate limits and 5xx responses are retried
    with backoff before surfacing as DispatchError.
    """

    backend = BackendType.HUGGINGFACE
    display_name = "HuggingFace (cloud)"
    supported_capabilities = frozenset({
        Capability.CHAT,
        Capability.GENERATE,
        Capability.EMBED,
        Capability.TEXT_TO_IMAGE,
    })

    def __init__(
        self,
        registry: ModelRegistry,
        token: Optional[str] = None,
        timeout: float = 120.0,
        probe_ttl: float = 300.0,
        retry_config: Optional[RetryConfig] = None,
        client: Optional[Any] = None,
        token_validator: Optional[Callable[[str], None]] = None,
    ):
        """
        Args:
            registry: Source of cloud descriptors (catalog + custom)
            token: HuggingFace API token; the backend is unavailable without one
            timeout: Request timeout in seconds
            probe_ttl: Token validation is cached this long
            retry_config: Backoff policy for transient failures
            client: Pre-built InferenceClient-compatible object (tests)
            token_validator: Raises if the token is rejected (defaults to HfApi.whoami)
        """
        super().__init__(probe_ttl=probe_ttl)
        self.registry = registry
        self.token = token
        self.retry_config = retry_config or DEFAULT_CLOUD_RETRY_CONFIG
        self._client = client
        if self._client is None and token:
            self._client = InferenceClient(token=token, timeout=timeout)
        self._validate_token = token_validator or (lambda t: HfApi(token=t).whoami())

    def _probe(self) -> BackendStatus:
        if not self.token or self._client is None:
            return self._make_status(BackendState.UNAVAILABLE, error="HuggingFace API token not configured")

        try:
            self._validate_token(self.token)
        except HfHubHTTPError as e:
            status = e.response.status_code if e.response is not None else None
            error = "Invalid HuggingFace API token" if status in (401, 403) else f"HuggingFace API error: {e}"
            return self._make_status(BackendState.UNAVAILABLE, error=error)
        except Exception as e:
            return self._make_status(BackendState.UNAVAILABLE, error=f"Cannot reach HuggingFace: {e}")

        models = [d.with_installed(True) for d in self.registry.list(backend=self.backend)]
        return self._make_status(BackendState.AVAILABLE, models=models)

    def recommended_model(self, capability: Capability, tier: HardwareTier) -> Optional[ModelDescriptor]:
        candidates = [d for d in self.list_descriptors() if d.supports(capability)]
        if not candidates:
            return None
        suitable = [d for d in candidates if d.tier.rank <= tier.rank]
        return (suitable or candidates)[0]

    def list_descriptors(self) -> List[ModelDescriptor]:
        installed = self.current_status().available
        return [d.with_installed(installed) for d in self.registry.list(backend=self.backend)]

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _call(self, label: str, model_id: str, func: Callable[[], Any]) -> Any:
        if self._client is None:
            raise DispatchError("HuggingFace client not initialized. Configure an API token.",
                                self.backend.value, model_id)

        def attempt():
            try:
                return func()
            except DispatchError:
                raise
            except Exception as e:
                raise_for_hf_error(e, model_id)

        try:
            return retry_sync(attempt, config=self.retry_config, label=f"huggingface {label}")
        except (RateLimitError, ServiceUnavailableError) as e:
            raise DispatchError(f"{label} failed after retries: {e}", self.backend.value, model_id) from e

    def chat(self, request: ChatRequest, model_id: str) -> ChatResponse:
        started = time.monotonic()
        messages = [{"role": m.role, "content": m.content} for m in request.messages]
        output = self._call("chat", model_id, lambda: self._client.chat_completion(
            messages=messages,
            model=self._local_name(model_id),
            max_tokens=request.max_tokens or 1024,
            temperature=request.temperature,
        ))
        content = output.choices[0].message.content if output.choices else ""
        return ChatResponse(
            backend=self.backend,
            model=model_id,
            message=ChatMessage(role="assistant", content=content or ""),
            total_duration=int((time.monotonic() - started) * 1e9),
        )

    def generate(self, request: GenerateRequest, model_id: str) -> GenerateResponse:
        if request.images:
            return super().generate(request, model_id)
        started = time.monotonic()
        prompt = f"{request.system}\n\n{request.prompt}" if request.system else request.prompt
        text = self._call("generate", model_id, lambda: self._client.text_generation(
            prompt,
            model=self._local_name(model_id),
            max_new_tokens=request.max_tokens or 256,
            temperature=0.7 if request.temperature is None else request.temperature,
        ))
        return GenerateResponse(
            backend=self.backend,
            model=model_id,
            response=text,
            total_duration=int((time.monotonic() - started) * 1e9),
        )

    def embed(self, request: EmbedRequest, model_id: str) -> EmbedResponse:
        name = self._local_name(model_id) or DEFAULT_EMBED_MODEL
        embeddings = []
        for text in request.texts:
            vector = self._call("embed", model_id, lambda t=text: self._client.feature_extraction(t, model=name))
            values = vector.tolist() if hasattr(vector, "tolist") else list(vector)
            # Sentence models return [dims]; some return [1][dims]
            embeddings.append(values[0] if values and isinstance(values[0], list) else values)
        return EmbedResponse(backend=self.backend, model=model_id, embeddings=embeddings)

    def image_generate(self, request: ImageGenRequest, model_id: str) -> ImageGenResponse:
        image = self._call("image", model_id, lambda: self._client.text_to_image(
            request.prompt,
            model=self._local_name(model_id),
            negative_prompt=request.negative_prompt,
            width=request.width,
            height=request.height,
            num_inference_steps=request.steps,
        ))
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        return ImageGenResponse(
            backend=self.backend,
            model=model_id,
            image=to_data_url(buffer.getvalue(), "image/png"),
        )

    def pull(self, model_id: str, on_progress: ProgressCallback) -> None:
        # Nothing to download for hosted models
        on_progress(self._progress(model_id, 1.0, PullPhase.COMPLETE))
