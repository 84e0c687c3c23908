"""API routes for pipelines: definitions, validation and runs."""

import logging
from typing import Any

from flask import Blueprint, jsonify, request

from silo.api import error_response, get_workbench, sse_response
from silo.errors import PipelineValidationError
from silo.pipeline.loader import required_task_kinds
from silo.pipeline.schema import TaskKind

logger = logging.getLogger(__name__)

pipelines_bp = Blueprint("pipelines", __name__, url_prefix="/api/pipelines")


def _summary(pipeline) -> dict:
    return {
        "id": pipeline.id,
        "name": pipeline.name,
        "description": pipeline.description,
        "icon": pipeline.icon,
        "category": pipeline.category,
        "tags": pipeline.tags,
        "taskKinds": sorted(kind.value for kind in required_task_kinds(pipeline)),
    }


def _run_body(state) -> dict:
    return state.model_dump(mode="json", by_alias=True)


# =============================================================================
# Definitions
# =============================================================================

@pipelines_bp.route("", methods=["GET"])
def list_pipelines() -> Any:
    return jsonify({"pipelines": [_summary(p) for p in get_workbench().pipelines.list_all()]})


@pipelines_bp.route("", methods=["POST"])
def create_pipeline() -> Any:
    """Register a custom pipeline from a JSON pipeline document."""
    workbench = get_workbench()
    try:
        pipeline = workbench.pipelines.loader.load_from_dict(request.get_json(silent=True) or {})
    except PipelineValidationError as e:
        return error_response(e)
    pipeline = workbench.pipelines.register_custom(pipeline)
    logger.info(f"Registered custom pipeline '{pipeline.id}'")
    return jsonify({"pipeline": pipeline.model_dump(mode="json", by_alias=True)}), 201


@pipelines_bp.route("/validate", methods=["POST"])
def validate_pipeline() -> Any:
    """Body: a pipeline document. Returns {valid, problems}."""
    problems = get_workbench().pipelines.loader.validate_pipeline(request.get_json(silent=True) or {})
    return jsonify({"valid": not problems, "problems": problems})


@pipelines_bp.route("/<pipeline_id>", methods=["GET"])
def get_pipeline(pipeline_id: str) -> Any:
    pipeline = get_workbench().pipelines.get_pipeline(pipeline_id)
    if pipeline is None:
        return jsonify({"error": f"Unknown pipeline: {pipeline_id}"}), 404
    return jsonify({"pipeline": pipeline.model_dump(mode="json", by_alias=True)})


@pipelines_bp.route("/<pipeline_id>", methods=["DELETE"])
def delete_pipeline(pipeline_id: str) -> Any:
    if not get_workbench().pipelines.remove_custom(pipeline_id):
        return jsonify({"error": f"Unknown custom pipeline: {pipeline_id}"}), 404
    return jsonify({"success": True})


# =============================================================================
# Runs
# =============================================================================

@pipelines_bp.route("/<pipeline_id>/run", methods=["POST"])
def run_pipeline(pipeline_id: str) -> Any:
    """
    Run a pipeline.

    Body:
        {
          "inputs": {"content": "..."},
          "models": {"language": "ollama:llama3.2:3b"},   # optional
          "wait": true                                      # optional
        }

    Returns:
        The final execution state when "wait" is true, otherwise
        {"runId": ...} with status 202; follow GET /runs/<runId>/stream.
    """
    workbench = get_workbench()
    pipeline = workbench.pipelines.get_pipeline(pipeline_id)
    if pipeline is None:
        return jsonify({"error": f"Unknown pipeline: {pipeline_id}"}), 404

    data = request.get_json(silent=True) or {}
    inputs = data.get("inputs") or {}
    if not isinstance(inputs, dict):
        return jsonify({"error": "inputs must be an object"}), 400
    try:
        models = {TaskKind(kind): model_id for kind, model_id in (data.get("models") or {}).items()}
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    if data.get("wait"):
        state = workbench.executor.execute(pipeline, inputs, models=models)
        return jsonify(_run_body(state))

    run = workbench.executor.submit(pipeline, inputs, models=models)
    return jsonify({"runId": run.run_id, "pipelineId": pipeline.id}), 202


@pipelines_bp.route("/runs/<run_id>", methods=["GET"])
def get_run(run_id: str) -> Any:
    run = get_workbench().executor.get_run(run_id)
    if run is None:
        return jsonify({"error": f"Unknown run: {run_id}"}), 404
    return jsonify(_run_body(run.state))


@pipelines_bp.route("/runs/<run_id>/cancel", methods=["POST"])
def cancel_run(run_id: str) -> Any:
    executor = get_workbench().executor
    if executor.get_run(run_id) is None:
        return jsonify({"error": f"Unknown run: {run_id}"}), 404
    return jsonify({"success": executor.cancel(run_id)})


@pipelines_bp.route("/runs/<run_id>/stream", methods=["GET"])
def stream_run(run_id: str) -> Any:
    """SSE stream of pipeline and step events for one run."""
    return sse_response(run_id)
