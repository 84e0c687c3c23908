"""Translate backend client exceptions into SILO errors."""

import logging
from typing import Any, NoReturn, Optional

import httpx
from huggingface_hub.errors import HfHubHTTPError

from silo.errors import DispatchError
from silo.utils.retry import RateLimitError, ServiceUnavailableError

logger = logging.getLogger(__name__)


def extract_retry_after(error: Any) -> Optional[float]:
    """
    Read a Retry-After header (seconds) from an error's HTTP response.

    Returns:
        Seconds to wait, or None if absent or not numeric
    """
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers:
        value = headers.get("retry-after")
        if value:
            try:
                return float(value)
            except ValueError:
                return None
    return None


def raise_for_hf_error(error: Exception, model: str) -> NoReturn:
    """
    Map a huggingface_hub failure to a retryable error or a DispatchError.

    Raises:
        RateLimitError: HTTP 429
        ServiceUnavailableError: HTTP 503/504 or connection/timeout failures
        DispatchError: anything else
    """
    if isinstance(error, HfHubHTTPError):
        status = error.response.status_code if error.response is not None else None
        if status == 429:
            logger.warning(f"HuggingFace rate limit for {model}: {error}")
            raise RateLimitError(f"HuggingFace rate limit: {error}", retry_after=extract_retry_after(error))
        if status in (502, 503, 504):
            logger.warning(f"HuggingFace unavailable for {model} (status {status})")
            raise ServiceUnavailableError(
                f"HuggingFace service unavailable: {error}", retry_after=extract_retry_after(error)
            )
        if status in (401, 403):
            raise DispatchError("Invalid or unauthorized HuggingFace API token", "huggingface", model) from error
        if status == 404:
            raise DispatchError("Model not found on HuggingFace", "huggingface", model) from error
        raise DispatchError(f"HuggingFace API error: {error}", "huggingface", model) from error

    if isinstance(error, (httpx.TimeoutException, httpx.TransportError, ConnectionError, TimeoutError)):
        logger.warning(f"HuggingFace connection error for {model}: {error}")
        raise ServiceUnavailableError(f"HuggingFace service unreachable: {error}")

    raise DispatchError(f"HuggingFace request failed: {error}", "huggingface", model) from error


def raise_for_ollama_error(error: Exception, model: Optional[str]) -> NoReturn:
    """Map an httpx failure talking to the Ollama daemon to a DispatchError."""
    if isinstance(error, httpx.ConnectError):
        raise DispatchError("Cannot connect to Ollama. Is it running?", "ollama", model) from error
    if isinstance(error, httpx.TimeoutException):
        raise DispatchError("Ollama request timed out", "ollama", model) from error
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        detail = ""
        try:
            detail = error.response.json().get("error", "")
        except ValueError:
            detail = error.response.text
        if status == 404:
            raise DispatchError(f"Model not found: {detail or status}", "ollama", model) from error
        raise DispatchError(f"Ollama returned {status}: {detail}", "ollama", model) from error
    raise DispatchError(f"Ollama request failed: {error}", "ollama", model) from error
