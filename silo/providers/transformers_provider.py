"""Embedded runtime adapter: Hugging Face transformers pipelines in-process."""

import fnmatch
import gc
import io
import logging
import math
import os
import threading
from typing import Any, Callable, Dict, List, Optional

from huggingface_hub import HfApi, hf_hub_download, scan_cache_dir, snapshot_download, try_to_load_from_cache
from huggingface_hub.errors import CacheNotFound, LocalEntryNotFoundError

from silo.errors import DispatchError, DownloadError
from silo.models.catalog import TRANSFORMERS_TASK_DEFAULTS
from silo.models.registry import ModelRegistry
from silo.models.resources import ResourceManager
from silo.models.schema import (
    AudioRequest,
    AudioResponse,
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
)
from silo.providers.base import ProgressCallback, ProviderAdapter
from silo.utils.formatting import decode_data, to_data_url

logger = logging.getLogger(__name__)

# Force transformers to prefer PyTorch; avoid pulling in TF/Keras
os.environ.setdefault("TRANSFORMERS_NO_TF", "1")

# Weight formats the PyTorch pipelines never read
IGNORE_PATTERNS = ["*.onnx", "onnx/*", "*.h5", "*.msgpack", "*.tflite", "*.ot", "tf_model*", "flax_model*"]

DEFAULT_MAX_NEW_TOKENS = 256

# Lazy imports for transformers/torch; loaded on first probe
_pipeline = None
_torch = None
_runtime_error: Optional[str] = None
_runtime_lock = threading.Lock()

PipelineFactory = Callable[[str, str, Optional[str]], Any]


def _load_runtime() -> bool:
    """Import transformers and torch once. Returns False if they are missing."""
    global _pipeline, _torch, _runtime_error
    with _runtime_lock:
        if _pipeline is not None:
            return True
        if _runtime_error is not None:
            return False
        try:
            from transformers import pipeline as hf_pipeline
            import torch
        except ImportError as e:
            _runtime_error = f"transformers/torch not installed ({e}). Install with: pip install silo[embedded]"
            logger.warning(_runtime_error)
            return False
        _pipeline = hf_pipeline
        _torch = torch
        return True


def _default_device() -> str:
    if _torch is not None and _torch.cuda.is_available():
        return "cuda"
    return "cpu"


def _create_pipeline(task: str, model_path: str, device: Optional[str]) -> Any:
    return _pipeline(task=task, model=model_path, device=device or _default_device())


def mean_pool(token_vectors: List[List[float]]) -> List[float]:
    """Average token embeddings and L2-normalize the result."""
    if not token_vectors:
        return []
    dims = len(token_vectors[0])
    pooled = [sum(vector[i] for vector in token_vectors) / len(token_vectors) for i in range(dims)]
    norm = math.sqrt(sum(v * v for v in pooled))
    return [v / norm for v in pooled] if norm else pooled


def _round(score: float) -> float:
    return round(float(score), 3)


class TransformersProvider(ProviderAdapter):
    """
    Runs catalog and custom models with ``transformers.pipeline``.

    Weights live in ``cache_dir`` (a huggingface_hub cache). Pipelines are
    created lazily on first use, reported to the ResourceManager, and
    released by ``unload`` (called directly or by eviction).
    """

    backend = BackendType.TRANSFORMERS
    display_name = "Transformers (embedded)"
    supported_capabilities = frozenset(Capability) - {Capability.TEXT_TO_IMAGE}

    def __init__(
        self,
        registry: ModelRegistry,
        resources: Optional[ResourceManager] = None,
        cache_dir: Optional[str] = None,
        device: Optional[str] = None,
        probe_ttl: float = 5.0,
        pipeline_factory: Optional[PipelineFactory] = None,
    ):
        """
        Args:
            registry: Source of transformers descriptors (catalog + custom)
            resources: Residency tracker; load/unload are reported to it
            cache_dir: huggingface_hub cache directory for weights
            device: torch device ("cpu", "cuda", ...); auto-detected if None
            probe_ttl: Seconds a probe result is cached
            pipeline_factory: ``(task, model_path, device) -> pipeline``; replaces
                transformers.pipeline (used by tests)
        """
        super().__init__(probe_ttl=probe_ttl)
        self.registry = registry
        self.resources = resources
        self.cache_dir = cache_dir
        self.device = device
        self._factory = pipeline_factory
        self._pipelines: Dict[str, Any] = {}
        self._pipelines_lock = threading.Lock()
        self._load_locks: Dict[str, threading.Lock] = {}

    # ------------------------------------------------------------------
    # Status & discovery
    # ------------------------------------------------------------------

    def _runtime_ready(self) -> bool:
        return self._factory is not None or _load_runtime()

    def _probe(self) -> BackendStatus:
        if not self._runtime_ready():
            return self._make_status(BackendState.UNAVAILABLE, error=_runtime_error)

        models = [
            descriptor.with_installed(self.is_loaded(descriptor.id) or self.is_downloaded(descriptor))
            for descriptor in self.registry.list(backend=self.backend)
        ]
        return self._make_status(BackendState.AVAILABLE, models=models)

    def is_downloaded(self, descriptor: ModelDescriptor) -> bool:
        """True if the model's config is present in the local cache."""
        if not descriptor.hf_id:
            return False
        for filename in ("config.json", "model.safetensors", "pytorch_model.bin"):
            cached = try_to_load_from_cache(descriptor.hf_id, filename, cache_dir=self.cache_dir)
            if isinstance(cached, str):
                return True
        return False

    def recommended_model(self, capability: Capability, tier: HardwareTier) -> Optional[ModelDescriptor]:
        known = {d.id: d for d in self.current_status().models} or {
            d.id: d for d in self.registry.list(backend=self.backend)
        }
        candidates = [
            d for d in known.values()
            if d.supports(capability) and d.tier.rank <= tier.rank
        ]
        if not candidates:
            return None

        task_default = TRANSFORMERS_TASK_DEFAULTS.get(capability)
        # Installed first, then the task default, then the largest model the tier allows
        candidates.sort(key=lambda d: (not d.installed, d.id != task_default, -d.tier.rank))
        return candidates[0]

    def _descriptor(self, model_id: str) -> ModelDescriptor:
        descriptor = self.registry.find(model_id)
        if descriptor is None or descriptor.backend != self.backend:
            raise DispatchError("Unknown model", self.backend.value, model_id)
        return descriptor

    # ------------------------------------------------------------------
    # Residency
    # ------------------------------------------------------------------

    def is_loaded(self, model_id: str) -> bool:
        with self._pipelines_lock:
            return model_id in self._pipelines

    def loaded_models(self) -> List[str]:
        with self._pipelines_lock:
            return list(self._pipelines)

    def _local_path(self, descriptor: ModelDescriptor) -> str:
        try:
            return snapshot_download(
                descriptor.hf_id,
                cache_dir=self.cache_dir,
                ignore_patterns=IGNORE_PATTERNS,
                local_files_only=True,
            )
        except LocalEntryNotFoundError:
            logger.info(f"{descriptor.id} not cached, downloading {descriptor.hf_id}")
            return snapshot_download(descriptor.hf_id, cache_dir=self.cache_dir, ignore_patterns=IGNORE_PATTERNS)

    def _model_lock(self, model_id: str) -> threading.Lock:
        # Per model, so a slow load does not block loads of other models
        with self._pipelines_lock:
            return self._load_locks.setdefault(model_id, threading.Lock())

    def _get_pipeline(self, model_id: str) -> Any:
        with self._pipelines_lock:
            pipe = self._pipelines.get(model_id)
        if pipe is not None:
            return pipe

        descriptor = self._descriptor(model_id)
        with self._model_lock(model_id):
            with self._pipelines_lock:
                pipe = self._pipelines.get(model_id)
            if pipe is not None:
                return pipe

            if self.resources is not None:
                self.resources.evict_if_needed(max(0, self.resources.memory_budget - descriptor.size_bytes))

            try:
                if self._factory is not None:
                    pipe = self._factory(descriptor.pipeline_type, descriptor.hf_id, self.device)
                else:
                    pipe = _create_pipeline(descriptor.pipeline_type, self._local_path(descriptor), self.device)
            except Exception as e:
                logger.error(f"Failed to load {model_id}: {e}")
                raise DispatchError(f"Failed to load model: {e}", self.backend.value, model_id) from e

            with self._pipelines_lock:
                self._pipelines[model_id] = pipe

        if self.resources is not None:
            self.resources.record_load(model_id, self.backend, descriptor.size_bytes)
        return pipe

    def load(self, model_id: str) -> None:
        self._get_pipeline(model_id)

    def unload(self, model_id: str) -> None:
        with self._pipelines_lock:
            pipe = self._pipelines.pop(model_id, None)
        if pipe is None:
            return

        del pipe
        gc.collect()
        if _torch is not None and _torch.cuda.is_available():
            _torch.cuda.empty_cache()

        if self.resources is not None:
            self.resources.record_unload(model_id)

    def close(self) -> None:
        for model_id in self.loaded_models():
            self.unload(model_id)

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    def pull(self, model_id: str, on_progress: ProgressCallback) -> None:
        descriptor = self._descriptor(model_id)
        on_progress(self._progress(model_id, 0.0, PullPhase.DOWNLOADING))

        try:
            info = HfApi().model_info(descriptor.hf_id, files_metadata=True)
            files = [
                (sibling.rfilename, sibling.size or 0)
                for sibling in info.siblings or []
                if not any(fnmatch.fnmatch(sibling.rfilename, p) for p in IGNORE_PATTERNS)
            ]
            total = sum(size for _, size in files)
            done = 0
            for index, (filename, size) in enumerate(files, start=1):
                hf_hub_download(descriptor.hf_id, filename, cache_dir=self.cache_dir)
                done += size
                fraction = done / total if total else index / len(files)
                on_progress(self._progress(model_id, fraction, PullPhase.DOWNLOADING))
        except Exception as e:
            logger.error(f"Download of {model_id} failed: {e}")
            raise DownloadError(str(e), self.backend.value, model_id) from e

        on_progress(self._progress(model_id, 1.0, PullPhase.VERIFYING))
        if not self.is_downloaded(descriptor):
            raise DownloadError("files missing from cache after download", self.backend.value, model_id)

        self.invalidate()
        on_progress(self._progress(model_id, 1.0, PullPhase.COMPLETE))
        logger.info(f"Downloaded {model_id} ({len(files)} files)")

    def delete(self, model_id: str) -> None:
        descriptor = self._descriptor(model_id)
        self.unload(model_id)

        try:
            cache_info = scan_cache_dir(self.cache_dir)
        except CacheNotFound as e:
            raise DispatchError("Model is not downloaded", self.backend.value, model_id) from e

        revisions = [
            revision.commit_hash
            for repo in cache_info.repos
            if repo.repo_id == descriptor.hf_id
            for revision in repo.revisions
        ]
        if not revisions:
            raise DispatchError("Model is not downloaded", self.backend.value, model_id)

        strategy = cache_info.delete_revisions(*revisions)
        strategy.execute()
        self.invalidate()
        logger.info(f"Deleted {model_id} from cache (freed {strategy.expected_freed_size_str})")

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _run(self, model_id: str, *args, **kwargs) -> Any:
        pipe = self._get_pipeline(model_id)
        try:
            return pipe(*args, **kwargs)
        except Exception as e:
            logger.error(f"Inference failed for {model_id}: {e}")
            raise DispatchError(f"Inference failed: {e}", self.backend.value, model_id) from e

    def _text(self, descriptor: ModelDescriptor, prompt: str, max_tokens: Optional[int],
              temperature: Optional[float]) -> str:
        """Run a text pipeline and return its text, whatever the pipeline type."""
        pipeline_type = descriptor.pipeline_type
        max_new_tokens = max_tokens or DEFAULT_MAX_NEW_TOKENS

        if pipeline_type == "summarization":
            output = self._run(descriptor.id, prompt, max_length=max_tokens or 150, min_length=30)
            return output[0].get("summary_text", "")
        if pipeline_type == "translation":
            output = self._run(descriptor.id, prompt, max_length=max_new_tokens)
            return output[0].get("translation_text", "")
        if pipeline_type == "text2text-generation":
            output = self._run(descriptor.id, prompt, max_new_tokens=max_new_tokens)
            return output[0].get("generated_text", "").strip()
        if pipeline_type == "text-generation":
            kwargs: Dict[str, Any] = {"max_new_tokens": max_new_tokens, "return_full_text": False}
            if temperature:
                kwargs.update(do_sample=True, temperature=temperature)
            output = self._run(descriptor.id, prompt, **kwargs)
            return output[0].get("generated_text", "").strip()
        if pipeline_type == "text-classification":
            output = self._run(descriptor.id, prompt)
            return output[0]["label"]

        raise DispatchError(
            f"Pipeline '{pipeline_type}' does not produce text", self.backend.value, descriptor.id
        )

    def chat(self, request: ChatRequest, model_id: str) -> ChatResponse:
        descriptor = self._descriptor(model_id)

        if descriptor.pipeline_type == "text2text-generation":
            # T5-style models take an instruction, not a transcript
            system = " ".join(m.content for m in request.messages if m.role == "system")
            last_user = next((m.content for m in reversed(request.messages) if m.role == "user"), "")
            prompt = f"{system}\n\n{last_user}".strip()
        else:
            lines = [f"{m.role.capitalize()}: {m.content}" for m in request.messages]
            prompt = "\n".join(lines) + "\nAssistant:"

        content = self._text(descriptor, prompt, request.max_tokens, request.temperature)
        return ChatResponse(
            backend=self.backend,
            model=model_id,
            message=ChatMessage(role="assistant", content=content),
        )

    def generate(self, request: GenerateRequest, model_id: str) -> GenerateResponse:
        descriptor = self._descriptor(model_id)

        if request.images:
            if descriptor.pipeline_type != "image-to-text":
                raise DispatchError("Model cannot read images", self.backend.value, model_id)
            captions = [self._caption(model_id, image) for image in request.images]
            return GenerateResponse(backend=self.backend, model=model_id, response="\n".join(captions))

        prompt = f"{request.system}\n\n{request.prompt}" if request.system else request.prompt
        text = self._text(descriptor, prompt, request.max_tokens, request.temperature)
        return GenerateResponse(backend=self.backend, model=model_id, response=text)

    def embed(self, request: EmbedRequest, model_id: str) -> EmbedResponse:
        embeddings = []
        for text in request.texts:
            output = self._run(model_id, text)
            # feature-extraction returns [batch][tokens][dims]
            token_vectors = output[0] if output and isinstance(output[0][0], list) else output
            embeddings.append(mean_pool(token_vectors))
        return EmbedResponse(backend=self.backend, model=model_id, embeddings=embeddings)

    def _image_input(self, image: str) -> Any:
        """Paths and URLs go to the pipeline as-is; base64 is decoded with Pillow."""
        if image.startswith(("http://", "https://")) or (len(image) < 4096 and os.path.isfile(image)):
            return image
        from PIL import Image

        return Image.open(io.BytesIO(decode_data(image)))

    def _caption(self, model_id: str, image: str) -> str:
        output = self._run(model_id, self._image_input(image))
        return output[0].get("generated_text", "").strip() if output else ""

    def vision(self, request: VisionRequest, model_id: str) -> VisionResponse:
        task = request.task
        if task == Capability.IMAGE_TO_TEXT:
            results: Any = self._caption(model_id, request.image)
        else:
            output = self._run(model_id, self._image_input(request.image))
            if task == Capability.IMAGE_CLASSIFICATION:
                results = [{"label": r["label"], "score": _round(r["score"])} for r in output]
            elif task == Capability.OBJECT_DETECTION:
                results = [
                    {"label": r["label"], "score": _round(r["score"]), "box": r["box"]}
                    for r in output
                ]
            elif task == Capability.IMAGE_SEGMENTATION:
                results = [{"label": r["label"], "score": _round(r.get("score") or 0.0)} for r in output]
            elif task == Capability.DEPTH_ESTIMATION:
                buffer = io.BytesIO()
                output["depth"].save(buffer, format="PNG")
                results = to_data_url(buffer.getvalue(), "image/png")
            else:
                return super().vision(request, model_id)

        return VisionResponse(backend=self.backend, model=model_id, task=task, results=results)

    def audio(self, request: AudioRequest, model_id: str) -> AudioResponse:
        audio = request.audio
        if isinstance(audio, str):
            audio = audio if (len(audio) < 4096 and os.path.isfile(audio)) else decode_data(audio)

        if request.task == Capability.SPEECH_TO_TEXT:
            # CTC models reject return_timestamps=True; only Whisper decoders emit segments
            pipe = self._get_pipeline(model_id)
            options = {"return_timestamps": True} if getattr(pipe, "type", None) == "seq2seq_whisper" else {}
            output = self._run(model_id, audio, **options)
            result: Dict[str, Any] = {"text": output.get("text", "").strip()}
            if output.get("chunks"):
                result["chunks"] = [
                    {"text": c["text"], "timestamp": list(c["timestamp"])} for c in output["chunks"]
                ]
        else:
            output = self._run(model_id, audio)
            result = {"labels": [{"label": r["label"], "score": _round(r["score"])} for r in output]}

        return AudioResponse(backend=self.backend, model=model_id, task=request.task, result=result)
