#!/usr/bin/env python3
"""Test pipeline schema validation, the loader and the built-in presets."""

import json

import pytest
from pydantic import ValidationError

from silo.errors import PipelineValidationError
from silo.pipeline.loader import PipelineLoader, PipelineRegistry, required_task_kinds
from silo.pipeline.schema import (
    ConditionAction,
    ConditionOperator,
    ExecutionState,
    ExecutionStatus,
    Pipeline,
    PipelineCondition,
    PipelineInput,
    TaskKind,
)


def _doc(**overrides):
    """A minimal valid pipeline document using the camelCase file keys."""
    doc = {
        "id": "test-pipeline",
        "name": "Test",
        "inputs": [{"name": "text", "type": "textarea", "label": "Text", "required": True}],
        "steps": [
            {"name": "first", "model": "language", "input": "$text", "prompt": "Summarize.", "output": "summary"},
        ],
    }
    doc.update(overrides)
    return doc


def _step(name, input_ref, output, **extra):
    step = {"name": name, "model": "language", "input": input_ref, "prompt": "Go.", "output": output}
    step.update(extra)
    return step


# ============================================================================
# Schema
# ============================================================================

def test_valid_simple_pipeline():
    """Test a minimal pipeline validates and accepts camelCase keys."""
    pipeline = Pipeline.model_validate(_doc(systemPrompt="Be brief.", outputFormat="markdown"))

    assert pipeline.id == "test-pipeline"
    assert pipeline.system_prompt == "Be brief."
    assert pipeline.output_format.value == "markdown"
    assert pipeline.category == "custom"
    assert pipeline.steps[0].model == TaskKind.LANGUAGE
    assert pipeline.steps[0].input_variable == "text"


def test_invalid_pipeline_no_steps():
    """Test a pipeline without steps fails validation."""
    with pytest.raises(ValidationError):
        Pipeline.model_validate(_doc(steps=[]))


def test_invalid_duplicate_step_names():
    """Test step names must be unique."""
    with pytest.raises(ValidationError, match="Step names must be unique"):
        Pipeline.model_validate(_doc(steps=[
            _step("a", "$text", "x"),
            _step("a", "$text", "y"),
        ]))


def test_invalid_duplicate_outputs():
    """Test two steps may not write the same variable."""
    with pytest.raises(ValidationError, match="output names must be unique"):
        Pipeline.model_validate(_doc(steps=[
            _step("a", "$text", "x"),
            _step("b", "$text", "x"),
        ]))


def test_invalid_duplicate_inputs():
    """Test input names must be unique."""
    inputs = [
        {"name": "text", "label": "Text"},
        {"name": "text", "label": "Again"},
    ]
    with pytest.raises(ValidationError, match="Duplicate input names: text"):
        Pipeline.model_validate(_doc(inputs=inputs))


def test_step_input_must_be_reference():
    """Test a step input is a $variable, not a literal."""
    with pytest.raises(ValidationError, match="variable reference"):
        Pipeline.model_validate(_doc(steps=[_step("a", "text", "x")]))


def test_step_input_must_exist_earlier():
    """Test a step may only read inputs and outputs of earlier steps."""
    with pytest.raises(ValidationError, match="input '\\$later' not found"):
        Pipeline.model_validate(_doc(steps=[
            _step("a", "$later", "x"),
            _step("b", "$text", "later"),
        ]))


def test_output_may_not_shadow_input():
    """Test a step output cannot reuse an input name."""
    with pytest.raises(ValidationError, match="shadows an input"):
        Pipeline.model_validate(_doc(steps=[_step("a", "$text", "text")]))


def test_select_input_requires_options():
    """Test select inputs must list their options."""
    with pytest.raises(ValidationError, match="must define options"):
        PipelineInput(name="language", type="select", label="Language")


def test_toggle_default_value():
    """Test toggle inputs keep boolean defaults."""
    toggle = PipelineInput.model_validate(
        {"name": "keep", "type": "toggle", "label": "Keep", "defaultValue": True}
    )
    assert toggle.default_value is True


# ============================================================================
# Conditions
# ============================================================================

def test_condition_requires_value_for_comparisons():
    """Test contains/equals/not_equals need a comparison value."""
    with pytest.raises(ValidationError, match="requires a value"):
        PipelineCondition(check="$x", operator=ConditionOperator.EQUALS)

    condition = PipelineCondition(check="$x", operator=ConditionOperator.EMPTY)
    assert condition.value is None
    assert condition.action == ConditionAction.CONTINUE


def test_condition_check_must_be_reference():
    """Test the checked variable is a $reference."""
    with pytest.raises(ValidationError):
        PipelineCondition(check="x", operator=ConditionOperator.NOT_EMPTY)


def test_skip_to_only_with_skip_action():
    """Test skipTo combined with another action is rejected."""
    with pytest.raises(ValidationError, match="skipTo is only valid"):
        PipelineCondition.model_validate(
            {"check": "$x", "operator": "not_empty", "action": "stop", "skipTo": "b"}
        )


def test_condition_variable_must_exist():
    """Test a condition may only check known variables."""
    with pytest.raises(ValidationError, match="unknown variable"):
        Pipeline.model_validate(_doc(steps=[
            _step("a", "$text", "x", condition={"check": "$missing", "operator": "not_empty"}),
        ]))


def test_skip_target_must_be_later_step():
    """Test skip targets are forward-only."""
    backward = _doc(steps=[
        _step("a", "$text", "x"),
        _step("b", "$text", "y", condition={
            "check": "$x", "operator": "not_empty", "action": "skip", "skipTo": "a",
        }),
    ])
    with pytest.raises(ValidationError, match="not a later step"):
        Pipeline.model_validate(backward)

    unknown = _doc(steps=[
        _step("a", "$text", "x", condition={
            "check": "$text", "operator": "not_empty", "action": "skip", "skipTo": "nowhere",
        }),
    ])
    with pytest.raises(ValidationError, match="unknown step 'nowhere'"):
        Pipeline.model_validate(unknown)


def test_optional_variables():
    """Test optional variables cover optional inputs, conditional outputs and skipped-over outputs."""
    pipeline = Pipeline.model_validate(_doc(
        inputs=[
            {"name": "text", "label": "Text", "required": True},
            {"name": "focus", "label": "Focus"},
        ],
        steps=[
            _step("a", "$text", "x", condition={
                "check": "$text", "operator": "contains", "value": "LONG", "action": "skip", "skipTo": "c",
            }),
            _step("b", "$text", "y"),
            _step("c", "$text", "z"),
        ],
    ))

    assert pipeline.optional_variables() == {"focus", "x", "y"}
    assert [i.name for i in pipeline.required_inputs] == ["text"]
    assert pipeline.index_of("c") == 2
    assert pipeline.index_of("missing") == -1
    assert pipeline.get_step("b").output == "y"


def test_execution_state_defaults():
    """Test a fresh execution state is idle with no duration."""
    state = ExecutionState(run_id="r1", pipeline_id="p1")

    assert state.status == ExecutionStatus.IDLE
    assert state.duration_ms == 0
    assert not state.status.terminal
    assert ExecutionStatus.ERROR.terminal


# ============================================================================
# Loader
# ============================================================================

def test_loader_reports_problems():
    """Test load_from_dict raises with readable problems."""
    loader = PipelineLoader()

    with pytest.raises(PipelineValidationError) as excinfo:
        loader.load_from_dict(_doc(steps=[]))
    assert any("at least one step" in p for p in excinfo.value.problems)


def test_validate_pipeline_returns_problem_list():
    """Test validate_pipeline returns [] for valid documents and problems otherwise."""
    loader = PipelineLoader()

    assert loader.validate_pipeline(_doc()) == []
    assert loader.validate_pipeline(Pipeline.model_validate(_doc())) == []

    problems = loader.validate_pipeline(_doc(steps=[_step("a", "$nope", "x")]))
    assert len(problems) == 1
    assert "not found" in problems[0]


def test_validate_non_mapping():
    """Test a document that is not a mapping is rejected."""
    assert PipelineLoader().validate_pipeline(["not", "a", "pipeline"])


def test_load_from_yaml_and_json(tmp_path):
    """Test pipelines load from YAML and JSON files."""
    yaml_path = tmp_path / "custom.yaml"
    yaml_path.write_text(
        "id: from-yaml\n"
        "name: From YAML\n"
        "inputs:\n"
        "  - {name: text, label: Text, required: true}\n"
        "steps:\n"
        "  - {name: a, model: language, input: $text, prompt: Go., output: x}\n"
    )
    json_path = tmp_path / "custom.json"
    json_path.write_text(json.dumps(_doc(id="from-json")))

    loader = PipelineLoader()
    assert loader.load_from_yaml(yaml_path).id == "from-yaml"
    assert loader.load_from_yaml(json_path).id == "from-json"


def test_load_from_yaml_invalid(tmp_path):
    """Test an invalid file names the file in the error."""
    path = tmp_path / "broken.yaml"
    path.write_text("id: broken\nname: Broken\nsteps: []\n")

    with pytest.raises(PipelineValidationError, match="broken.yaml"):
        PipelineLoader().load_from_yaml(path)


def test_load_missing_file(tmp_path):
    """Test loading a file that does not exist."""
    with pytest.raises(FileNotFoundError):
        PipelineLoader().load_from_yaml(tmp_path / "missing.yaml")


# ============================================================================
# Presets & registry
# ============================================================================

def test_all_presets_valid():
    """Test every built-in pipeline loads and is marked builtin."""
    loader = PipelineLoader()
    presets = loader.list_presets()

    assert "builtin-chat" in presets
    assert "builtin-smart-reply" in presets
    for preset_id in presets:
        pipeline = loader.load_preset(preset_id)
        assert pipeline.id == preset_id
        assert pipeline.category == "builtin"


def test_preset_cached():
    """Test presets are parsed once."""
    loader = PipelineLoader()
    assert loader.load_preset("builtin-chat") is loader.load_preset("builtin-chat")


def test_required_task_kinds():
    """Test the kinds of model a preset needs."""
    loader = PipelineLoader()

    assert required_task_kinds(loader.load_preset("builtin-chat")) == {TaskKind.LANGUAGE}
    assert required_task_kinds(loader.load_preset("builtin-transcribe")) == {TaskKind.AUDIO, TaskKind.LANGUAGE}


def test_registry_custom_shadows_preset():
    """Test a custom pipeline with a preset's id takes precedence and is never 'builtin'."""
    registry = PipelineRegistry()
    custom = Pipeline.model_validate(_doc(id="builtin-chat", category="builtin"))

    registered = registry.register_custom(custom)

    assert registered.category == "custom"
    assert registry.get_pipeline("builtin-chat").name == "Test"
    ids = [p.id for p in registry.list_all()]
    assert ids.count("builtin-chat") == 1

    assert registry.remove_custom("builtin-chat") is True
    assert registry.get_pipeline("builtin-chat").name == "Chat"


def test_registry_unknown_pipeline():
    """Test unknown ids return None."""
    assert PipelineRegistry().get_pipeline("does-not-exist") is None


def test_registry_loads_custom_dir(tmp_path):
    """Test valid files in the pipelines directory are registered and invalid ones skipped."""
    (tmp_path / "good.json").write_text(json.dumps(_doc(id="good")))
    (tmp_path / "bad.yaml").write_text("id: bad\nname: Bad\nsteps: []\n")
    (tmp_path / "notes.txt").write_text("ignored")

    registry = PipelineRegistry(pipelines_dir=tmp_path)

    assert registry.load_custom_dir() == 1
    assert registry.get_pipeline("good") is not None
    assert registry.get_pipeline("bad") is None
