"""HTTP API blueprints and the helpers they share."""

import logging
from typing import Any, Tuple

from flask import Response, current_app, jsonify, stream_with_context
from pydantic import ValidationError

from silo.errors import (
    CapabilityUnsupportedError,
    DispatchError,
    ModelNotFoundError,
    NoAvailableProviderError,
    PipelineValidationError,
    SiloError,
)
from silo.sse.stream import format_keepalive, format_sse_message

logger = logging.getLogger(__name__)

STATUS_CODES = (
    (PipelineValidationError, 400),
    (ModelNotFoundError, 404),
    (CapabilityUnsupportedError, 422),
    (NoAvailableProviderError, 503),
    (DispatchError, 502),
)


def get_workbench():
    """The Workbench bound to the running app."""
    return current_app.workbench


def error_response(error: Exception) -> Tuple[Any, int]:
    """Map an exception to a JSON error body and HTTP status."""
    if isinstance(error, ValidationError):
        problems = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in error.errors()]
        return jsonify({"error": "Invalid request", "problems": problems}), 400

    if isinstance(error, SiloError):
        status = next((code for cls, code in STATUS_CODES if isinstance(error, cls)), 500)
        body = {"error": str(error)}
        if isinstance(error, PipelineValidationError):
            body["problems"] = error.problems
        return jsonify(body), status

    logger.error(f"Unexpected error: {error}")
    return jsonify({"error": str(error)}), 500


def sse_response(channel: str) -> Response:
    """Stream a channel's events to the client until it disconnects."""
    sse = get_workbench().sse
    connection = sse.connect(channel)

    def generate():
        try:
            while True:
                events = connection.get_events(timeout=30.0)
                if not events:
                    yield format_keepalive()
                    continue
                for event in events:
                    yield format_sse_message(event["event"], event["data"])
        finally:
            sse.disconnect(channel, connection.client_id)

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
