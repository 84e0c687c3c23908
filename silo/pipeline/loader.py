"""Pipeline loader and validator.

Loads pipeline documents from YAML/JSON files, validates them,
and provides access to preset and custom pipelines.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

from pydantic import ValidationError

from silo.config_loader import ConfigLoader
from silo.errors import PipelineValidationError
from silo.pipeline.schema import Pipeline, TaskKind

logger = logging.getLogger(__name__)

PRESETS_DIR = Path(__file__).parent / "presets"


def format_problems(error: ValidationError) -> List[str]:
    """Flatten a pydantic ValidationError into readable problem strings."""
    problems = []
    for item in error.errors():
        message = item["msg"]
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        location = ".".join(str(part) for part in item["loc"])
        problems.append(f"{location}: {message}" if location else message)
    return problems


def required_task_kinds(pipeline: Pipeline) -> Set[TaskKind]:
    """Kinds of model a pipeline needs to run."""
    return {step.model for step in pipeline.steps}


class PipelineLoader:
    """Load and validate pipeline documents."""

    def __init__(self, presets_dir: Optional[Path] = None):
        """
        Args:
            presets_dir: Directory of built-in pipelines (defaults to the packaged presets)
        """
        self.presets_dir = Path(presets_dir) if presets_dir else PRESETS_DIR
        self._preset_cache: Dict[str, Pipeline] = {}

    def load_from_yaml(self, path: Path) -> Pipeline:
        """
        Load a pipeline from a YAML (or JSON) file.

        Raises:
            FileNotFoundError: If file doesn't exist
            PipelineValidationError: If the document is not a valid pipeline
        """
        path = Path(path)
        if path.suffix == ".json":
            if not path.exists():
                raise FileNotFoundError(f"Pipeline file not found: {path}")
            with open(path, 'r', encoding='utf-8') as f:
                raw = ConfigLoader.resolve_env_vars(json.load(f))
        else:
            try:
                raw = ConfigLoader.load_yaml(path)
            except ValueError as e:
                raise PipelineValidationError(str(e), [str(e)]) from e

        try:
            return self.load_from_dict(raw)
        except PipelineValidationError as e:
            raise PipelineValidationError(f"Invalid pipeline in {path}: {e}", e.problems) from e

    def load_from_dict(self, data: Dict[str, Any]) -> Pipeline:
        """
        Load a pipeline from a dictionary (API requests, parsed files).

        Raises:
            PipelineValidationError: If the pipeline is invalid
        """
        if not isinstance(data, dict):
            raise PipelineValidationError("Pipeline document must be a mapping", ["Pipeline document must be a mapping"])
        try:
            return Pipeline.model_validate(data)
        except ValidationError as e:
            problems = format_problems(e)
            raise PipelineValidationError("; ".join(problems), problems) from e

    def validate_pipeline(self, data: Union[Dict[str, Any], Pipeline]) -> List[str]:
        """
        Validate a pipeline document.

        Returns:
            List of problems (empty if the pipeline is valid)
        """
        if isinstance(data, Pipeline):
            data = data.model_dump(by_alias=True, exclude_none=True)
        try:
            self.load_from_dict(data)
        except PipelineValidationError as e:
            return e.problems
        return []

    def load_preset(self, preset_id: str) -> Pipeline:
        """
        Load a built-in pipeline by id.

        Raises:
            FileNotFoundError: If the preset doesn't exist
        """
        if preset_id in self._preset_cache:
            return self._preset_cache[preset_id]

        pipeline = self.load_from_yaml(self.presets_dir / f"{preset_id}.yaml")
        self._preset_cache[preset_id] = pipeline
        return pipeline

    def list_presets(self) -> List[str]:
        """Ids of the available built-in pipelines."""
        if not self.presets_dir.exists():
            return []
        return sorted(path.stem for path in self.presets_dir.glob("*.yaml"))


class PipelineRegistry:
    """Registry for built-in and custom pipelines."""

    def __init__(self, loader: Optional[PipelineLoader] = None, pipelines_dir: Optional[Path] = None):
        """
        Args:
            loader: Optional PipelineLoader instance
            pipelines_dir: Optional directory of user pipelines (*.yaml, *.json)
        """
        self.loader = loader or PipelineLoader()
        self.pipelines_dir = Path(pipelines_dir) if pipelines_dir else None
        self._custom: Dict[str, Pipeline] = {}

    def load_custom_dir(self) -> int:
        """Register every valid pipeline in the custom directory; invalid files are logged and skipped."""
        if not self.pipelines_dir or not self.pipelines_dir.is_dir():
            return 0

        loaded = 0
        for path in sorted(self.pipelines_dir.iterdir()):
            if path.suffix not in (".yaml", ".yml", ".json"):
                continue
            try:
                self.register_custom(self.loader.load_from_yaml(path))
                loaded += 1
            except (PipelineValidationError, ValueError) as e:
                logger.warning(f"Skipping pipeline {path.name}: {e}")
        logger.info(f"Loaded {loaded} custom pipeline(s) from {self.pipelines_dir}")
        return loaded

    def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        """Custom pipelines shadow presets with the same id."""
        if pipeline_id in self._custom:
            return self._custom[pipeline_id]
        try:
            return self.loader.load_preset(pipeline_id)
        except FileNotFoundError:
            return None

    def register_custom(self, pipeline: Pipeline) -> Pipeline:
        if pipeline.category == "builtin":
            pipeline = pipeline.model_copy(update={"category": "custom"})
        self._custom[pipeline.id] = pipeline
        return pipeline

    def remove_custom(self, pipeline_id: str) -> bool:
        return self._custom.pop(pipeline_id, None) is not None

    def list_all(self) -> List[Pipeline]:
        """Every pipeline, presets first."""
        pipelines = []
        for preset_id in self.loader.list_presets():
            if preset_id not in self._custom:
                pipelines.append(self.loader.load_preset(preset_id))
        pipelines.extend(self._custom.values())
        return pipelines
