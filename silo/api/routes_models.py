"""API routes for models: status, unified inference calls, pulls and residency."""

import logging
from typing import Any

from flask import Blueprint, jsonify, request
from pydantic import ValidationError

from silo.api import error_response, get_workbench, sse_response
from silo.errors import SiloError
from silo.models.schema import (
    AudioRequest,
    BackendType,
    Capability,
    ChatRequest,
    CustomModelConfig,
    EmbedRequest,
    GenerateRequest,
    HardwareTier,
    ImageGenRequest,
    VisionRequest,
)
from silo.sse.stream import MODELS_CHANNEL

logger = logging.getLogger(__name__)

models_bp = Blueprint("models", __name__, url_prefix="/api/models")


def _model_id(data: dict) -> str:
    return data.get("modelId") or data.get("model_id") or ""


def _dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True)


# =============================================================================
# Catalog & status
# =============================================================================

@models_bp.route("", methods=["GET"])
def list_models() -> Any:
    """
    List every model the backends expose.

    Query Parameters:
        capability: Only models supporting this capability (e.g. "chat")
        backend: Only models of this backend (ollama, transformers, huggingface)
        installed: "true" for installed models only
    """
    try:
        models = get_workbench().manager.list_models()

        capability = request.args.get("capability")
        if capability:
            models = [m for m in models if m.supports(Capability(capability))]
        backend = request.args.get("backend")
        if backend:
            models = [m for m in models if m.backend == BackendType(backend)]
        if request.args.get("installed", "false").lower() == "true":
            models = [m for m in models if m.installed]

        return jsonify({"models": [_dump(m) for m in models]})
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except SiloError as e:
        return error_response(e)


@models_bp.route("/status", methods=["GET"])
def get_status() -> Any:
    """Last published aggregate status: {backends, hasAvailable, recommended}."""
    return jsonify(_status_body(get_workbench().manager.get_status()))


@models_bp.route("/refresh", methods=["POST"])
def refresh_status() -> Any:
    """Probe every backend now and return the new aggregate status."""
    return jsonify(_status_body(get_workbench().manager.refresh_status(force=True)))


def _status_body(status) -> dict:
    return {
        "backends": [s.model_dump(mode="json") for s in status.backends],
        "hasAvailable": status.has_available,
        "recommended": status.recommended.value if status.recommended else None,
    }


@models_bp.route("/recommend", methods=["GET"])
def recommend() -> Any:
    """
    Best installed model for a capability.

    Query Parameters:
        capability: Capability value (default "chat")
        backend: Preferred backend
    """
    try:
        capability = Capability(request.args.get("capability", Capability.CHAT.value))
        backend = request.args.get("backend")
        preferred = BackendType(backend) if backend else None
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    descriptor = get_workbench().manager.recommend(capability, preferred)
    return jsonify({"model": _dump(descriptor) if descriptor else None})


@models_bp.route("/custom", methods=["POST"])
def add_custom_model() -> Any:
    """Register a user-added transformers or HuggingFace model."""
    try:
        config = CustomModelConfig.model_validate(request.get_json(silent=True) or {})
        descriptor = get_workbench().registry.add_custom_model(config)
        return jsonify({"model": _dump(descriptor)}), 201
    except (ValidationError, SiloError) as e:
        return error_response(e)


@models_bp.route("/tier", methods=["GET", "PUT"])
def hardware_tier() -> Any:
    manager = get_workbench().manager
    if request.method == "PUT":
        data = request.get_json(silent=True) or {}
        try:
            manager.set_tier(HardwareTier(str(data.get("tier", "")).upper()))
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
    return jsonify({"tier": manager.get_tier().value})


# =============================================================================
# Unified inference calls
# =============================================================================

def _call(request_cls, method_name: str) -> Any:
    try:
        payload = request_cls.model_validate(request.get_json(silent=True) or {})
        response = getattr(get_workbench().manager, method_name)(payload)
        return jsonify(_dump(response))
    except (ValidationError, SiloError) as e:
        return error_response(e)


@models_bp.route("/chat", methods=["POST"])
def chat() -> Any:
    """Body: {messages, model?, preferredBackend?, temperature?, maxTokens?}"""
    return _call(ChatRequest, "chat")


@models_bp.route("/generate", methods=["POST"])
def generate() -> Any:
    """Body: {prompt, model?, preferredBackend?, images?, maxTokens?, temperature?}"""
    return _call(GenerateRequest, "generate")


@models_bp.route("/embed", methods=["POST"])
def embed() -> Any:
    return _call(EmbedRequest, "embed")


@models_bp.route("/vision", methods=["POST"])
def vision() -> Any:
    return _call(VisionRequest, "vision")


@models_bp.route("/audio", methods=["POST"])
def audio() -> Any:
    return _call(AudioRequest, "audio")


@models_bp.route("/image", methods=["POST"])
def image_generate() -> Any:
    return _call(ImageGenRequest, "image_generate")


# =============================================================================
# Pulls
# =============================================================================

@models_bp.route("/pull", methods=["POST"])
def pull_model() -> Any:
    """
    Start (or join) a model download.

    Body:
        {"modelId": "ollama:llama3.2:3b", "wait": false}

    Returns:
        {"success": true, "task": {...}} immediately, or the final
        {"success", "error"} when "wait" is true. Progress is streamed on
        GET /api/models/pull/stream.
    """
    data = request.get_json(silent=True) or {}
    model_id = _model_id(data)
    if not model_id:
        return jsonify({"success": False, "error": "modelId is required"}), 400

    try:
        handle = get_workbench().manager.pull(model_id)
    except SiloError as e:
        return error_response(e)

    if data.get("wait"):
        result = handle.result(timeout=data.get("timeout"))
        return jsonify(result.model_dump(exclude_none=True))

    return jsonify({"success": True, "task": _dump(handle.task)}), 202


@models_bp.route("/pull/stream", methods=["GET"])
def pull_stream() -> Any:
    """SSE stream of pull progress and status changes."""
    return sse_response(MODELS_CHANNEL)


# =============================================================================
# Residency & lifecycle
# =============================================================================

@models_bp.route("/loaded", methods=["GET"])
def loaded_models() -> Any:
    workbench = get_workbench()
    return jsonify({
        "models": [r.model_dump(mode="json") for r in workbench.manager.get_loaded_models()],
        "memory": workbench.resources.memory_summary(),
    })


@models_bp.route("/load", methods=["POST"])
def load_model() -> Any:
    model_id = _model_id(request.get_json(silent=True) or {})
    if not model_id:
        return jsonify({"success": False, "error": "modelId is required"}), 400
    return jsonify(get_workbench().manager.load_model(model_id).model_dump(exclude_none=True))


@models_bp.route("/unload", methods=["POST"])
def unload_model() -> Any:
    model_id = _model_id(request.get_json(silent=True) or {})
    if not model_id:
        return jsonify({"success": False, "error": "modelId is required"}), 400
    return jsonify(get_workbench().manager.unload_model(model_id).model_dump(exclude_none=True))


@models_bp.route("/<path:model_id>/status", methods=["GET"])
def model_status(model_id: str) -> Any:
    return jsonify(get_workbench().manager.get_model_status(model_id))


@models_bp.route("/<path:model_id>", methods=["DELETE"])
def delete_model(model_id: str) -> Any:
    result = get_workbench().manager.delete_model(model_id)
    return jsonify(result.model_dump(exclude_none=True)), (200 if result.success else 400)
