"""Pipeline schema definitions using Pydantic for validation.

This module defines the structure of SILO pipelines, including:
- Pipeline documents and their user-facing inputs
- Pipeline steps (language, vision, audio)
- Conditions that continue, skip or stop a run
- Execution state reported for each run
"""

import time
from enum import Enum
from typing import Dict, List, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class TaskKind(str, Enum):
    """Kind of model a step needs."""
    LANGUAGE = "language"
    VISION = "vision"
    AUDIO = "audio"


class InputType(str, Enum):
    TEXT = "text"
    TEXTAREA = "textarea"
    FILE = "file"
    SELECT = "select"
    TOGGLE = "toggle"


class OutputFormat(str, Enum):
    CHAT = "chat"
    MARKDOWN = "markdown"
    JSON = "json"


class ConditionOperator(str, Enum):
    """Operators for step conditions."""
    CONTAINS = "contains"        # Value contains comparison value
    EMPTY = "empty"              # Value has zero length
    NOT_EMPTY = "not_empty"      # Value has non-zero length
    EQUALS = "equals"            # Exact match
    NOT_EQUALS = "not_equals"    # Anything but an exact match


class ConditionAction(str, Enum):
    """What a satisfied condition does."""
    CONTINUE = "continue"   # Run the step
    SKIP = "skip"           # Jump to skip_to (or past this step)
    STOP = "stop"           # End the run as completed


VALUE_OPERATORS = {ConditionOperator.CONTAINS, ConditionOperator.EQUALS, ConditionOperator.NOT_EQUALS}


def variable_name(reference: str) -> str:
    """Strip the leading '$' from a variable reference."""
    return reference[1:] if reference.startswith("$") else reference


class _PipelineModel(BaseModel):
    """Accepts both snake_case and the camelCase keys used in pipeline documents."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class PipelineInput(_PipelineModel):
    """A value the user supplies before a run starts."""
    name: str = Field(..., min_length=1, description="Variable name, referenced as $name")
    type: InputType = InputType.TEXT
    label: str = Field(..., min_length=1, description="Display label")
    required: bool = False
    placeholder: Optional[str] = None
    options: Optional[List[str]] = Field(None, description="Choices for select inputs")
    accepts: Optional[List[str]] = Field(None, description="Accepted MIME patterns for file inputs")
    default_value: Optional[Union[bool, str]] = None

    @model_validator(mode='after')
    def validate_options(self):
        if self.type == InputType.SELECT and not self.options:
            raise ValueError(f"Select input '{self.name}' must define options")
        return self


class PipelineCondition(_PipelineModel):
    """Gate evaluated before a step is dispatched.

    Examples:
        # Only reply at length when the classifier said LONG
        check: "$length"
        operator: equals
        value: "LONG"
        action: continue

        # Stop early when nothing was extracted
        check: "$extracted"
        operator: empty
        action: stop
    """
    check: str = Field(..., description="Variable reference, e.g. '$summary'")
    operator: ConditionOperator
    value: Optional[str] = Field(None, description="Comparison value for contains/equals/not_equals")
    action: ConditionAction = ConditionAction.CONTINUE
    skip_to: Optional[str] = Field(None, description="Step to jump to when action is 'skip'")

    @field_validator('check')
    @classmethod
    def validate_check(cls, check: str) -> str:
        if not check.startswith("$") or len(check) < 2:
            raise ValueError(f"Condition check must be a $variable reference, got '{check}'")
        return check

    @model_validator(mode='after')
    def validate_operands(self):
        if self.operator in VALUE_OPERATORS and self.value is None:
            raise ValueError(f"Operator '{self.operator.value}' requires a value")
        if self.skip_to and self.action != ConditionAction.SKIP:
            raise ValueError("skipTo is only valid with action 'skip'")
        return self

    @property
    def variable(self) -> str:
        return variable_name(self.check)


class PipelineStep(_PipelineModel):
    """A single step: one model call whose text result is stored under `output`."""
    name: str = Field(..., min_length=1, description="Unique step name")
    description: Optional[str] = None
    model: TaskKind = Field(..., description="Kind of model the step needs")
    input: str = Field(..., description="Variable reference, e.g. '$document'")
    prompt: str = Field(..., min_length=1, description="Instruction template")
    output: str = Field(..., min_length=1, description="Variable name the result is stored under")
    condition: Optional[PipelineCondition] = None

    @field_validator('input')
    @classmethod
    def validate_input(cls, value: str) -> str:
        if not value.startswith("$") or len(value) < 2:
            raise ValueError(f"Step input must be a $variable reference, got '{value}'")
        return value

    @property
    def input_variable(self) -> str:
        return variable_name(self.input)


class Pipeline(_PipelineModel):
    """Complete pipeline definition.

    Steps run strictly in order; any step may read the inputs and the outputs
    of the steps before it.
    """
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    icon: Optional[str] = None
    category: str = "custom"
    tags: List[str] = Field(default_factory=list)

    inputs: List[PipelineInput] = Field(default_factory=list)
    steps: List[PipelineStep] = Field(..., description="Ordered list of pipeline steps")

    system_prompt: Optional[str] = Field(None, description="Prepended to every step's instruction")
    output_format: OutputFormat = OutputFormat.CHAT

    @field_validator('steps')
    @classmethod
    def validate_steps(cls, steps: List[PipelineStep]):
        """Validate step list has at least one step and unique names."""
        if not steps:
            raise ValueError("Pipeline must have at least one step")

        names = [step.name for step in steps]
        if len(names) != len(set(names)):
            raise ValueError("Step names must be unique")

        outputs = [step.output for step in steps]
        if len(outputs) != len(set(outputs)):
            raise ValueError("Step output names must be unique")

        return steps

    @field_validator('inputs')
    @classmethod
    def validate_inputs(cls, inputs: List[PipelineInput]):
        names = [i.name for i in inputs]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate input names: {', '.join(duplicates)}")
        return inputs

    @model_validator(mode='after')
    def validate_references(self):
        """Validate $references and skip targets against the step order."""
        available = {i.name for i in self.inputs}
        positions = {step.name: index for index, step in enumerate(self.steps)}

        for index, step in enumerate(self.steps):
            if step.output in {i.name for i in self.inputs}:
                raise ValueError(f"Step '{step.name}' output '{step.output}' shadows an input")

            if step.input_variable not in available:
                raise ValueError(f"Step '{step.name}' input '{step.input}' not found")

            condition = step.condition
            if condition:
                if condition.variable not in available:
                    raise ValueError(f"Step '{step.name}' condition checks unknown variable '{condition.check}'")
                if condition.skip_to:
                    target = positions.get(condition.skip_to)
                    if target is None:
                        raise ValueError(f"Step '{step.name}' skips to unknown step '{condition.skip_to}'")
                    if target <= index:
                        raise ValueError(
                            f"Step '{step.name}' skips to '{condition.skip_to}', which is not a later step"
                        )

            available.add(step.output)

        return self

    def get_step(self, name: str) -> Optional[PipelineStep]:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def index_of(self, name: str) -> int:
        for index, step in enumerate(self.steps):
            if step.name == name:
                return index
        return -1

    @property
    def required_inputs(self) -> List[PipelineInput]:
        return [i for i in self.inputs if i.required]

    def optional_variables(self) -> Set[str]:
        """Variables that may legitimately be absent when a prompt is rendered.

        Non-required inputs, plus outputs of steps that might not run: steps with
        a condition and steps a skip can jump over.
        """
        names = {i.name for i in self.inputs if not i.required}
        for index, step in enumerate(self.steps):
            condition = step.condition
            if not condition:
                continue
            names.add(step.output)
            if condition.action == ConditionAction.SKIP and condition.skip_to:
                target = self.index_of(condition.skip_to)
                names.update(s.output for s in self.steps[index:target])
        return names


class ExecutionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"   # reserved for human-in-the-loop steps
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.ERROR)


class ExecutionState(_PipelineModel):
    """Runtime state of one pipeline run.

    Tracks state as the run progresses through steps.
    """
    run_id: str
    pipeline_id: str
    status: ExecutionStatus = ExecutionStatus.IDLE
    current_step_index: int = 0

    # Named values available to steps (inputs + outputs so far)
    context: Dict[str, str] = Field(default_factory=dict)
    # Step name -> text, only for steps that were dispatched
    step_results: Dict[str, str] = Field(default_factory=dict)
    output: str = ""

    error: Optional[str] = None
    failed_step: Optional[str] = None

    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def duration_ms(self) -> int:
        if self.started_at is None:
            return 0
        end = self.completed_at if self.completed_at is not None else time.time()
        return int((end - self.started_at) * 1000)
