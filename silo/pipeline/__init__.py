"""Pipeline execution framework for SILO.

This package provides:
- Pipeline schema definitions (schema.py)
- Prompt templates (template.py)
- Step conditions (gating.py)
- Pipeline loader, validator and registry (loader.py)
- Pipeline executor with event system (executor.py)
"""

from silo.pipeline.schema import (
    ConditionAction,
    ConditionOperator,
    ExecutionState,
    ExecutionStatus,
    Pipeline,
    PipelineCondition,
    PipelineInput,
    PipelineStep,
    TaskKind,
)
from silo.pipeline.loader import (
    PipelineLoader,
    PipelineRegistry,
    required_task_kinds,
)
from silo.pipeline.executor import (
    PipelineExecutor,
    PipelineRun,
)

__all__ = [
    "ConditionAction",
    "ConditionOperator",
    "ExecutionState",
    "ExecutionStatus",
    "Pipeline",
    "PipelineCondition",
    "PipelineInput",
    "PipelineStep",
    "TaskKind",
    "PipelineLoader",
    "PipelineRegistry",
    "required_task_kinds",
    "PipelineExecutor",
    "PipelineRun",
]
