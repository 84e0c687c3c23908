"""Adapter for a local Ollama daemon over its HTTP API."""

import base64
import json
import logging
import os
from typing import Any, Dict, List, Optional

import httpx

from silo.errors import DispatchError, DownloadError
from silo.models.catalog import (
    OLLAMA_EMBED_MODEL,
    OLLAMA_MODEL_RECOMMENDATIONS,
    OLLAMA_VISION_MARKERS,
)
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
    ModelDescriptor,
    PullPhase,
    VisionRequest,
    VisionResponse,
    make_model_id,
)
from silo.providers.base import ProgressCallback, ProviderAdapter
from silo.utils.provider_errors import raise_for_ollama_error

logger = logging.getLogger(__name__)

GB = 1024 * 1024 * 1024


def tier_for_size(size_bytes: int) -> HardwareTier:
    if size_bytes > 20 * GB:
        return HardwareTier.SURPLUS
    if size_bytes > 8 * GB:
        return HardwareTier.HEAVY
    if size_bytes > 3 * GB:
        return HardwareTier.STEADY
    return HardwareTier.LEAN


def is_vision_model(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in OLLAMA_VISION_MARKERS)


def capabilities_for(name: str) -> frozenset:
    if is_vision_model(name):
        return frozenset({Capability.CHAT, Capability.GENERATE, Capability.IMAGE_TO_TEXT})
    if "embed" in name.lower():
        return frozenset({Capability.EMBED})
    return frozenset({Capability.CHAT, Capability.GENERATE, Capability.EMBED})


def _names_match(installed: str, wanted: str) -> bool:
    """``llava`` matches ``llava:latest``; ``llava:7b`` matches only itself."""
    if installed == wanted:
        return True
    if ":" not in wanted:
        return installed.split(":", 1)[0] == wanted
    return False


def encode_image(value: str) -> str:
    """Ollama wants bare base64: strip data-URL prefixes and read file paths."""
    if value.startswith("data:") and "," in value:
        return value.split(",", 1)[1]
    if len(value) < 4096 and os.path.isfile(value):
        with open(value, "rb") as f:
            return base64.b64encode(f.read()).decode("ascii")
    return value


class OllamaProvider(ProviderAdapter):
    """
    Client for a local Ollama installation.

    The daemon manages model residency itself, so ``load``/``unload`` are
    no-ops and nothing is reported to the ResourceManager.
    """

    backend = BackendType.OLLAMA
    display_name = "Ollama"
    supported_capabilities = frozenset({
        Capability.CHAT,
        Capability.GENERATE,
        Capability.EMBED,
        Capability.IMAGE_TO_TEXT,
    })

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        timeout: float = 300.0,
        probe_timeout: float = 2.0,
        probe_ttl: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Args:
            base_url: Ollama API base URL
            timeout: Timeout for inference requests (seconds)
            probe_timeout: Timeout for the reachability check (seconds)
            probe_ttl: Seconds a probe result is cached
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        super().__init__(probe_ttl=probe_ttl)
        self.base_url = base_url.rstrip("/")
        self.probe_timeout = probe_timeout
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    # ------------------------------------------------------------------
    # Status & discovery
    # ------------------------------------------------------------------

    def _probe(self) -> BackendStatus:
        try:
            response = self._client.get("/api/tags", timeout=self.probe_timeout)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.debug(f"Ollama probe failed: {e}")
            return self._make_status(BackendState.UNAVAILABLE, error="Ollama is not running")
        except ValueError:
            return self._make_status(BackendState.UNAVAILABLE, error="Ollama returned invalid JSON")

        models = [self._to_descriptor(entry) for entry in data.get("models", []) if entry.get("name")]
        logger.debug(f"Discovered {len(models)} Ollama models")
        return self._make_status(BackendState.AVAILABLE, models=models)

    def _to_descriptor(self, entry: Dict[str, Any], installed: bool = True) -> ModelDescriptor:
        name = entry["name"]
        size = int(entry.get("size") or 0)
        details = entry.get("details") or {}
        description = " ".join(
            part for part in (details.get("family"), details.get("parameter_size")) if part
        ) or None
        return ModelDescriptor(
            id=make_model_id(self.backend, name),
            name=name,
            backend=self.backend,
            capabilities=capabilities_for(name),
            size_bytes=size,
            tier=tier_for_size(size),
            installed=installed,
            is_local=True,
            description=description,
        )

    def recommended_model(self, capability: Capability, tier: HardwareTier) -> Optional[ModelDescriptor]:
        if capability == Capability.EMBED:
            wanted = OLLAMA_EMBED_MODEL
        elif capability == Capability.IMAGE_TO_TEXT:
            wanted = OLLAMA_MODEL_RECOMMENDATIONS[tier]["vision"]
        elif capability in (Capability.CHAT, Capability.GENERATE):
            wanted = OLLAMA_MODEL_RECOMMENDATIONS[tier]["language"]
        else:
            return None

        for descriptor in self.current_status().models:
            if _names_match(descriptor.model_name, wanted):
                return descriptor

        descriptor = self._to_descriptor({"name": wanted}, installed=False)
        if capability == Capability.EMBED:
            descriptor = descriptor.model_copy(update={"capabilities": frozenset({Capability.EMBED})})
        return descriptor

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _post(self, path: str, payload: Dict[str, Any], model_id: str) -> Dict[str, Any]:
        try:
            response = self._client.post(path, json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            logger.error(f"Ollama {path} failed for {model_id}: {e}")
            raise_for_ollama_error(e, model_id)
        except ValueError as e:
            raise DispatchError(f"Invalid JSON from {path}", self.backend.value, model_id) from e

    @staticmethod
    def _options(temperature: Optional[float], max_tokens: Optional[int]) -> Dict[str, Any]:
        options: Dict[str, Any] = {}
        if temperature is not None:
            options["temperature"] = temperature
        if max_tokens is not None:
            options["num_predict"] = max_tokens
        return options

    def chat(self, request: ChatRequest, model_id: str) -> ChatResponse:
        messages = []
        for message in request.messages:
            entry: Dict[str, Any] = {"role": message.role, "content": message.content}
            if message.images:
                entry["images"] = [encode_image(image) for image in message.images]
            messages.append(entry)

        payload: Dict[str, Any] = {
            "model": self._local_name(model_id),
            "messages": messages,
            "stream": False,
        }
        options = self._options(request.temperature, request.max_tokens)
        if options:
            payload["options"] = options

        data = self._post("/api/chat", payload, model_id)
        message = data.get("message") or {}
        return ChatResponse(
            backend=self.backend,
            model=model_id,
            message=ChatMessage(role="assistant", content=message.get("content", "")),
            done=data.get("done", True),
            total_duration=data.get("total_duration"),
        )

    def generate(self, request: GenerateRequest, model_id: str) -> GenerateResponse:
        payload: Dict[str, Any] = {
            "model": self._local_name(model_id),
            "prompt": request.prompt,
            "stream": False,
        }
        if request.images:
            payload["images"] = [encode_image(image) for image in request.images]
        if request.system:
            payload["system"] = request.system
        options = self._options(request.temperature, request.max_tokens)
        if options:
            payload["options"] = options

        data = self._post("/api/generate", payload, model_id)
        return GenerateResponse(
            backend=self.backend,
            model=model_id,
            response=data.get("response", ""),
            done=data.get("done", True),
            total_duration=data.get("total_duration"),
        )

    def embed(self, request: EmbedRequest, model_id: str) -> EmbedResponse:
        embeddings: List[List[float]] = []
        for text in request.texts:
            data = self._post(
                "/api/embeddings",
                {"model": self._local_name(model_id), "prompt": text},
                model_id,
            )
            embeddings.append(data.get("embedding", []))
        return EmbedResponse(backend=self.backend, model=model_id, embeddings=embeddings)

    def vision(self, request: VisionRequest, model_id: str) -> VisionResponse:
        if request.task != Capability.IMAGE_TO_TEXT:
            return super().vision(request, model_id)
        generated = self.generate(
            GenerateRequest(prompt=request.prompt or "Describe this image.", images=[request.image]),
            model_id,
        )
        return VisionResponse(
            backend=self.backend,
            model=model_id,
            task=request.task,
            results=generated.response,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def pull(self, model_id: str, on_progress: ProgressCallback) -> None:
        name = self._local_name(model_id)
        on_progress(self._progress(model_id, 0.0, PullPhase.DOWNLOADING))

        try:
            with self._client.stream(
                "POST", "/api/pull", json={"name": name, "stream": True}, timeout=None
            ) as response:
                if response.status_code >= 400:
                    response.read()
                    response.raise_for_status()
                for line in response.iter_lines():
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except ValueError:
                        continue
                    if data.get("error"):
                        raise DownloadError(data["error"], self.backend.value, model_id)

                    status = data.get("status", "")
                    total = data.get("total") or 0
                    completed = data.get("completed") or 0
                    if status == "success":
                        on_progress(self._progress(model_id, 1.0, PullPhase.COMPLETE))
                        return
                    if status.startswith("verifying"):
                        on_progress(self._progress(model_id, 1.0, PullPhase.VERIFYING))
                    elif total:
                        on_progress(self._progress(model_id, completed / total, PullPhase.DOWNLOADING))
        except httpx.HTTPError as e:
            raise DownloadError(str(e), self.backend.value, model_id) from e

        raise DownloadError("stream ended before success", self.backend.value, model_id)

    def delete(self, model_id: str) -> None:
        try:
            response = self._client.request("DELETE", "/api/delete", json={"name": self._local_name(model_id)})
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise_for_ollama_error(e, model_id)
        self.invalidate()
        logger.info(f"Deleted Ollama model {model_id}")

    def close(self) -> None:
        self._client.close()
