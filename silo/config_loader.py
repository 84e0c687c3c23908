"""YAML configuration loader with environment variable resolution."""
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from silo.models.schema import CustomModelConfig, HardwareTier

logger = logging.getLogger(__name__)


class ConfigLoader:
    """Load YAML documents (settings, pipelines) with ${ENV_VAR} support."""

    ENV_VAR_PATTERN = re.compile(r'\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}')

    @classmethod
    def resolve_env_vars(cls, value: Any) -> Any:
        """
        Resolve environment variables in configuration values.

        Supports ${ENV_VAR} and ${ENV_VAR:-default}.

        Args:
            value: Configuration value (str, dict, list, or other)

        Returns:
            Resolved value
        """
        if isinstance(value, str):
            def replace_env(match):
                var_name, default = match.group(1), match.group(2)
                env_value = os.environ.get(var_name)
                if env_value is None:
                    if default is not None:
                        return default
                    logger.warning(f"Environment variable '{var_name}' not set, using empty string")
                    return ""
                return env_value

            return cls.ENV_VAR_PATTERN.sub(replace_env, value)

        if isinstance(value, dict):
            return {k: cls.resolve_env_vars(v) for k, v in value.items()}

        if isinstance(value, list):
            return [cls.resolve_env_vars(item) for item in value]

        return value

    @classmethod
    def load_yaml(cls, config_path: Path) -> Dict[str, Any]:
        """
        Load a YAML file and resolve environment variables.

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the document is not a mapping
        """
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            raw_config = yaml.safe_load(f) or {}

        if not isinstance(raw_config, dict):
            raise ValueError(f"Expected a mapping at the top of {config_path}")

        return cls.resolve_env_vars(raw_config)

    @classmethod
    def load_settings(cls, config_path: Optional[Path]) -> "Settings":
        """
        Load the optional workbench settings file.

        Expected format:
        ```yaml
        tier: HEAVY
        memory_budget_bytes: 8589934592
        custom_models:
          - backend: transformers
            hf_id: "Qwen/Qwen2.5-0.5B-Instruct"
            name: "Qwen 2.5 0.5B"
            capabilities: [chat, generate]
            pipeline_type: text-generation
        ```

        A missing path yields default settings.
        """
        if not config_path:
            return Settings()

        config = cls.load_yaml(Path(config_path))
        settings = Settings()

        tier = config.get('tier')
        if tier:
            settings.tier = HardwareTier(str(tier).upper())

        budget = config.get('memory_budget_bytes')
        if budget is not None:
            settings.memory_budget_bytes = int(budget)

        for index, entry in enumerate(config.get('custom_models') or []):
            try:
                settings.custom_models.append(CustomModelConfig(**entry))
            except (TypeError, ValidationError) as e:
                raise ValueError(f"custom_models[{index}] in {config_path} is invalid: {e}") from e

        logger.info(
            f"Loaded settings from {config_path}: "
            f"{len(settings.custom_models)} custom model(s)"
        )
        return settings


class Settings:
    """Values read from the settings file; None means 'use Config'."""

    def __init__(self):
        self.tier: Optional[HardwareTier] = None
        self.memory_budget_bytes: Optional[int] = None
        self.custom_models: List[CustomModelConfig] = []
