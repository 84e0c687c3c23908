"""Condition evaluation for gated pipeline steps.

Provides:
- ConditionEvaluator: evaluate a step's condition against the execution context
- EvaluationResult: outcome plus the value that was compared
"""

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from silo.pipeline.schema import ConditionOperator, PipelineCondition

logger = logging.getLogger(__name__)


@dataclass
class EvaluationResult:
    """Result of condition evaluation."""
    satisfied: bool  # True if the condition holds
    resolved_value: str  # Value of the checked variable
    debug_info: Optional[str] = None  # Human-readable explanation


class ConditionEvaluator:
    """
    Deterministic condition evaluator.

    Comparison rules:
    - A variable that is not in the context compares as ""
    - contains / equals / not_equals are case-sensitive
    - empty / not_empty test length only (whitespace counts)
    """

    def evaluate(self, condition: PipelineCondition, context: Mapping[str, str]) -> EvaluationResult:
        """
        Evaluate a condition.

        Args:
            condition: Condition to evaluate
            context: Variable name -> current string value

        Returns:
            EvaluationResult with the outcome and the resolved value
        """
        name = condition.variable
        if name not in context:
            logger.debug(f"Condition variable '{name}' not set, comparing as empty")
        value = context.get(name, "")

        satisfied = self._compare(value, condition.operator, condition.value or "")
        shown = f" '{condition.value}'" if condition.value is not None else ""
        return EvaluationResult(
            satisfied=satisfied,
            resolved_value=value,
            debug_info=f"{condition.check} {condition.operator.value}{shown} → {satisfied}",
        )

    def _compare(self, value: str, operator: ConditionOperator, expected: str) -> bool:
        if operator == ConditionOperator.CONTAINS:
            return expected in value
        elif operator == ConditionOperator.EMPTY:
            return len(value) == 0
        elif operator == ConditionOperator.NOT_EMPTY:
            return len(value) > 0
        elif operator == ConditionOperator.EQUALS:
            return value == expected
        elif operator == ConditionOperator.NOT_EQUALS:
            return value != expected
        else:
            raise ValueError(f"Unknown operator: {operator}")
