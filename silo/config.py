import logging
import os
from typing import Any, Optional


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


class Config:
    OLLAMA_BASE_URL: str = os.environ.get("OLLAMA_BASE_URL") or "http://localhost:11434"
    HF_API_TOKEN: Optional[str] = (
        os.environ.get("HF_API_TOKEN") or os.environ.get("HUGGINGFACE_API_KEY")
    )

    HARDWARE_TIER: str = os.environ.get("SILO_HARDWARE_TIER") or "STEADY"
    MEMORY_BUDGET_BYTES: int = _env_int("SILO_MEMORY_BUDGET_BYTES", 4 * 1024 * 1024 * 1024)
    PROBE_TTL_SECONDS: float = _env_float("SILO_PROBE_TTL_SECONDS", 5.0)
    PULL_WORKERS: int = _env_int("SILO_PULL_WORKERS", 2)

    MODELS_CACHE: str = os.environ.get("SILO_MODELS_CACHE") or os.path.join(
        os.path.expanduser("~"), ".silo", "models"
    )
    PIPELINES_DIR: Optional[str] = os.environ.get("SILO_PIPELINES_DIR")
    SETTINGS_FILE: Optional[str] = os.environ.get("SILO_SETTINGS_FILE")

    LOG_LEVEL: str = os.environ.get("SILO_LOG_LEVEL") or "INFO"

    @staticmethod
    def init_app(app: Any) -> None:
        os.makedirs(Config.MODELS_CACHE, exist_ok=True)


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for the server process."""
    logging.basicConfig(
        level=getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
