"""Pipeline executor for step-by-step workflow execution.

Runs a validated Pipeline against user inputs, dispatching each step through
the ProviderManager and emitting events for progress tracking. Steps run
strictly in order; independent runs may proceed concurrently.
"""

import logging
import threading
import time
import uuid
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from silo.errors import PipelineValidationError, RunCancelledError, SiloError, UndefinedVariableError
from silo.events import EventBus, EventEmitter
from silo.models.schema import AudioRequest, ChatMessage, ChatRequest, GenerateRequest
from silo.pipeline.gating import ConditionEvaluator
from silo.pipeline.loader import PipelineLoader
from silo.pipeline.schema import (
    ConditionAction,
    ExecutionState,
    ExecutionStatus,
    Pipeline,
    PipelineStep,
    TaskKind,
)
from silo.pipeline.template import interpolate

logger = logging.getLogger(__name__)

InputValue = Union[str, bool, List[str], None]
StateCallback = Callable[[ExecutionState], None]


def to_context_value(value: Any) -> str:
    """Convert a supplied input value to the string stored in the context."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return "\n".join(str(v) for v in value)
    return str(value)


def is_missing(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, tuple)) and len(value) == 0)


class PipelineRun:
    """Handle for a run submitted in the background."""

    def __init__(self, run_id: str, pipeline_id: str):
        self.run_id = run_id
        self.pipeline_id = pipeline_id
        self.cancel_event = threading.Event()
        self._lock = threading.Lock()
        self._state = ExecutionState(run_id=run_id, pipeline_id=pipeline_id)
        self._future: Optional[Future] = None

    @property
    def state(self) -> ExecutionState:
        with self._lock:
            return self._state

    def _update(self, state: ExecutionState) -> None:
        with self._lock:
            self._state = state

    @property
    def done(self) -> bool:
        return self.state.status.terminal

    def cancel(self) -> None:
        """Stop before the next step starts. A step already dispatched runs to completion."""
        self.cancel_event.set()

    def wait(self, timeout: Optional[float] = None) -> ExecutionState:
        if self._future is not None:
            wait([self._future], timeout=timeout)
        return self.state


class PipelineExecutor:
    """Execute pipelines step-by-step with event broadcasting."""

    def __init__(
        self,
        manager,
        event_bus: Optional[EventBus] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        loader: Optional[PipelineLoader] = None,
        max_workers: int = 4,
        max_runs: int = 100,
    ):
        """
        Args:
            manager: ProviderManager that serves every step
            event_bus: Bus for pipeline/step events (none: events are dropped)
            evaluator: Condition evaluator
            loader: Loader used to validate pipelines passed as dicts
            max_workers: Concurrent background runs
            max_runs: Finished runs kept for lookup
        """
        self.manager = manager
        self.event_bus = event_bus
        self.evaluator = evaluator or ConditionEvaluator()
        self.loader = loader or PipelineLoader()
        self.max_runs = max_runs
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="silo-run")
        self._runs_lock = threading.Lock()
        self._runs: "OrderedDict[str, PipelineRun]" = OrderedDict()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute(
        self,
        pipeline: Union[Pipeline, Dict[str, Any]],
        inputs: Mapping[str, InputValue],
        run_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        models: Optional[Mapping[TaskKind, str]] = None,
        on_state: Optional[StateCallback] = None,
    ) -> ExecutionState:
        """
        Execute a pipeline.

        Args:
            pipeline: Pipeline (or pipeline document) to execute
            inputs: Input name -> value
            run_id: Optional run ID (generated if not provided)
            cancel_event: Set to stop the run before its next step
            models: Explicit model id per task kind (otherwise the router decides)
            on_state: Receives a snapshot of the state after every transition

        Returns:
            Final ExecutionState (completed or error)
        """
        run_id = run_id or uuid.uuid4().hex
        emitter = EventEmitter(run_id, self.event_bus)
        models = models or {}

        if isinstance(pipeline, dict):
            pipeline_id = str(pipeline.get("id") or "unknown")
            try:
                pipeline = self.loader.load_from_dict(pipeline)
            except PipelineValidationError as e:
                state = ExecutionState(run_id=run_id, pipeline_id=pipeline_id)
                return self._fail(state, emitter, f"Invalid pipeline: {e}", on_state)

        state = ExecutionState(run_id=run_id, pipeline_id=pipeline.id)

        # 1. Validate required inputs
        context = self._seed_context(pipeline, inputs)
        missing = [i.label or i.name for i in pipeline.required_inputs if i.name not in context]
        if missing:
            return self._fail(state, emitter, f"Missing required input(s): {', '.join(missing)}", on_state)

        # 2. Seed context and start
        state.context = context
        state.status = ExecutionStatus.RUNNING
        state.started_at = time.time()
        self._publish(state, on_state)

        emitter.pipeline_started(pipeline.id, pipeline.name, len(pipeline.steps))
        logger.info(f"Run {run_id}: starting pipeline '{pipeline.id}' ({len(pipeline.steps)} steps)")

        optional = pipeline.optional_variables()
        steps = pipeline.steps
        index = 0
        last_output = ""

        # 3. Steps
        try:
            while index < len(steps):
                step = steps[index]
                state.current_step_index = index
                self._publish(state, on_state)

                if cancel_event is not None and cancel_event.is_set():
                    raise RunCancelledError(f"Run cancelled before step '{step.name}'")

                try:
                    # a. resolve input
                    if step.input_variable not in context:
                        raise UndefinedVariableError(step.input_variable, step.name)
                    value = context[step.input_variable]

                    # b. interpolate
                    instruction = interpolate(step.prompt, context, optional, step.name)
                    system = interpolate(pipeline.system_prompt or "", context, optional, step.name)

                    # c. condition
                    if step.condition:
                        result = self.evaluator.evaluate(step.condition, context)
                        logger.debug(f"Run {run_id}: step '{step.name}' condition {result.debug_info}")

                        if not result.satisfied:
                            emitter.step_skipped(step.name, index, "Condition not met")
                            index += 1
                            continue

                        action = step.condition.action
                        if action == ConditionAction.STOP:
                            emitter.step_skipped(step.name, index, "Stopped by condition")
                            logger.info(f"Run {run_id}: stopped at step '{step.name}'")
                            break

                        if action == ConditionAction.SKIP:
                            target = step.condition.skip_to
                            next_index = pipeline.index_of(target) if target else index + 1
                            if next_index <= index:
                                raise PipelineValidationError(f"Step '{step.name}': skip target '{target}' not found")
                            emitter.step_skipped(step.name, index, f"Skipped to '{target}'" if target else "Skipped")
                            index = next_index
                            continue

                    # d. dispatch
                    emitter.step_started(step.name, index, step.model.value)
                    step_start = time.time()

                    text = self._dispatch(step, value, instruction, system, models.get(step.model))

                    context[step.output] = text
                    state.step_results[step.name] = text
                    last_output = text
                    emitter.step_completed(step.name, index, int((time.time() - step_start) * 1000))

                except SiloError as e:
                    state.failed_step = step.name
                    emitter.step_failed(step.name, index, str(e))
                    return self._fail(state, emitter, f"Step '{step.name}' failed: {e}", on_state)

                # e. advance
                index += 1

        except RunCancelledError as e:
            return self._fail(state, emitter, f"Cancelled: {e}", on_state)
        except Exception as e:
            self._fail(state, emitter, f"Pipeline failed: {e}", on_state)
            raise

        # 4. Completed
        state.status = ExecutionStatus.COMPLETED
        state.output = last_output
        state.completed_at = time.time()
        self._publish(state, on_state)

        emitter.pipeline_completed(pipeline.id, state.duration_ms)
        logger.info(f"Run {run_id}: completed in {state.duration_ms}ms")
        return state

    def submit(
        self,
        pipeline: Pipeline,
        inputs: Mapping[str, InputValue],
        models: Optional[Mapping[TaskKind, str]] = None,
    ) -> PipelineRun:
        """Start a run in the background and return its handle immediately."""
        run = PipelineRun(uuid.uuid4().hex, pipeline.id)
        with self._runs_lock:
            self._runs[run.run_id] = run
            self._prune()

        run._future = self._pool.submit(
            self.execute,
            pipeline,
            dict(inputs),
            run_id=run.run_id,
            cancel_event=run.cancel_event,
            models=models,
            on_state=run._update,
        )
        return run

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        with self._runs_lock:
            return self._runs.get(run_id)

    def list_runs(self) -> List[PipelineRun]:
        with self._runs_lock:
            return list(self._runs.values())

    def cancel(self, run_id: str) -> bool:
        run = self.get_run(run_id)
        if run is None or run.done:
            return False
        run.cancel()
        logger.info(f"Run {run_id}: cancellation requested")
        return True

    def shutdown(self) -> None:
        for run in self.list_runs():
            run.cancel()
        self._pool.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _seed_context(self, pipeline: Pipeline, inputs: Mapping[str, InputValue]) -> Dict[str, str]:
        context = {}
        for name, value in inputs.items():
            if not is_missing(value):
                context[name] = to_context_value(value)

        for declared in pipeline.inputs:
            if declared.name not in context and not is_missing(declared.default_value):
                context[declared.name] = to_context_value(declared.default_value)
        return context

    def _dispatch(
        self,
        step: PipelineStep,
        value: str,
        instruction: str,
        system: str,
        model: Optional[str],
    ) -> str:
        """Run one step through the router and return its text result."""
        if step.model == TaskKind.VISION:
            request = GenerateRequest(
                prompt=instruction,
                images=[value],
                system=system or None,
                model=model,
            )
            return self.manager.generate(request).response

        if step.model == TaskKind.AUDIO:
            response = self.manager.audio(AudioRequest(audio=value, model=model))
            return str(response.result.get("text", ""))

        system_text = "\n\n".join(part for part in (system, instruction) if part)
        messages = []
        if system_text:
            messages.append(ChatMessage(role="system", content=system_text))
        messages.append(ChatMessage(role="user", content=value))
        return self.manager.chat(ChatRequest(messages=messages, model=model)).message.content

    def _fail(
        self,
        state: ExecutionState,
        emitter: EventEmitter,
        error: str,
        on_state: Optional[StateCallback],
    ) -> ExecutionState:
        state.status = ExecutionStatus.ERROR
        state.error = error
        state.completed_at = time.time()
        self._publish(state, on_state)

        emitter.pipeline_failed(state.pipeline_id, error, state.failed_step)
        logger.error(f"Run {state.run_id}: {error}")
        return state

    def _publish(self, state: ExecutionState, on_state: Optional[StateCallback]) -> None:
        if on_state is not None:
            on_state(state.model_copy(deep=True))

    def _prune(self) -> None:
        finished = [run_id for run_id, run in self._runs.items() if run.done]
        while len(self._runs) > self.max_runs and finished:
            self._runs.pop(finished.pop(0), None)
