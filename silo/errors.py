"""Exception hierarchy shared by every SILO component.

Messages always name the component that failed (a backend, a model id or a
pipeline step) so they can be surfaced to users unchanged.
"""

from typing import List, Optional


class SiloError(Exception):
    """Base class for all SILO errors."""


class PipelineValidationError(SiloError):
    """Pipeline definition or supplied inputs are invalid. Never retried."""

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        super().__init__(message)
        self.problems = problems or []


class InvalidModelError(SiloError):
    """A model descriptor cannot be registered."""


class ModelNotFoundError(SiloError):
    """No descriptor is registered under the requested id."""

    def __init__(self, model_id: str):
        super().__init__(f"Model not found: {model_id}")
        self.model_id = model_id


class ResolutionError(SiloError):
    """The router could not pick a backend/model for a request."""


class NoAvailableProviderError(ResolutionError):
    """No backend is currently available to serve the request."""


class CapabilityUnsupportedError(ResolutionError):
    """The resolved backend or model does not support the requested task."""

    def __init__(self, capability: str, model_id: Optional[str] = None, backend: Optional[str] = None):
        target = model_id or backend or "any installed model"
        super().__init__(f"Capability '{capability}' is not supported by {target}")
        self.capability = capability
        self.model_id = model_id
        self.backend = backend


class DispatchError(SiloError):
    """A backend call failed (connection refused, bad response, model missing)."""

    def __init__(self, message: str, backend: str, model: Optional[str] = None):
        where = f"{backend}:{model}" if model and not model.startswith(f"{backend}:") else (model or backend)
        super().__init__(f"[{where}] {message}")
        self.backend = backend
        self.model = model


class ResourceError(SiloError):
    """Residency bookkeeping or an eviction unload failed. Logged, non-fatal."""


class DownloadError(SiloError):
    """A model pull failed."""

    def __init__(self, message: str, backend: str, model: Optional[str] = None):
        super().__init__(f"Download of {model or 'model'} from {backend} failed: {message}")
        self.backend = backend
        self.model = model


class UndefinedVariableError(SiloError):
    """A pipeline step referenced a context variable that was never produced."""

    def __init__(self, name: str, step: Optional[str] = None):
        where = f" in step '{step}'" if step else ""
        super().__init__(f"Undefined variable '${name}'{where}")
        self.name = name
        self.step = step


class TemplateSyntaxError(SiloError):
    """A prompt template is malformed (unbalanced conditional block)."""


class RunCancelledError(SiloError):
    """A pipeline run was cancelled between steps."""
