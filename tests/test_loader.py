"""Tests for stepflow.workflow.loader module."""

import pytest
from pathlib import Path

from stepflow.workflow.loader import WorkflowLoadError, load_workflow, parse_workflow
from stepflow.workflow.models import (
    ApiCallStep,
    DisplayStep,
    ElicitStep,
    RouteStep,
    StepAction,
    SubWorkflowStep,
    TemplateStep,
    ValidateStep,
)


VALID = """
name: setup
description: Project setup
variables:
  LEVEL: 2
steps:
  - name: greet
    action: display
    message: "Hello {{USER}}"
  - name: ask
    action: elicit
    prompt: "Project name?"
    variable: PROJECT
  - name: check
    action: validate
    condition: "${LEVEL} >= 0"
    error_message: "Level must be positive"
  - name: render
    action: render_template
    template: templates/prd.md
    output_file: "docs/{{PROJECT}}.md"
  - name: route
    action: route
    condition: LEVEL
    output_var: routed
    routing:
      level_0: [minimal.yaml]
      default:
        workflows: [standard.yaml, extra.yaml]
"""


class TestParseWorkflow:
    """Parsing valid definitions into the model."""

    def test_builds_typed_steps(self):
        """Each action becomes its step class."""
        workflow = parse_workflow(VALID)
        assert workflow.name == "setup"
        assert workflow.variables == {"LEVEL": 2}
        kinds = [type(s) for s in workflow.steps]
        assert kinds == [DisplayStep, ElicitStep, ValidateStep, TemplateStep, RouteStep]

    def test_validate_condition_is_the_check(self):
        """For validate, condition is the check, not a gate."""
        step = parse_workflow(VALID).steps[2]
        assert step.check == "${LEVEL} >= 0"
        assert step.condition is None

    def test_route_condition_names_level_variable(self):
        """For route, condition names the level variable."""
        step = parse_workflow(VALID).steps[4]
        assert step.level_var == "LEVEL"
        assert step.condition is None
        assert step.routing == {
            "level_0": ("minimal.yaml",),
            "default": ("standard.yaml", "extra.yaml"),
        }

    def test_render_template_keeps_action(self):
        """render_template keeps its own action."""
        step = parse_workflow(VALID).steps[3]
        assert step.action == StepAction.RENDER_TEMPLATE

    def test_workflow_wrapper_accepted(self):
        """A top-level workflow: key is unwrapped."""
        text = """
workflow:
  name: wrapped
  description: d
  agent: pm
  phase: 1
  steps:
    - name: s
      action: guide
"""
        workflow = parse_workflow(text)
        assert workflow.name == "wrapped"
        assert workflow.agent == "pm"
        assert workflow.phase == 1

    def test_legacy_subworkflow_fields(self):
        """subworkflow and variables.workflow_name give the child path."""
        text = """
name: parent
description: d
steps:
  - name: a
    action: sub-workflow
    subworkflow: child.yaml
  - name: b
    action: sub-workflow
    variables:
      workflow_name: other.yaml
"""
        steps = parse_workflow(text).steps
        assert isinstance(steps[0], SubWorkflowStep)
        assert steps[0].workflow_path == "child.yaml"
        assert steps[1].workflow_path == "other.yaml"

    def test_api_call_loads_with_options(self):
        """api_call keeps extra keys as options."""
        text = """
name: api
description: d
steps:
  - name: call
    action: api_call
    params:
      url: http://example.invalid
"""
        step = parse_workflow(text).steps[0]
        assert isinstance(step, ApiCallStep)
        assert step.options == {"params": {"url": "http://example.invalid"}}

    def test_step_condition_kept_as_gate(self):
        """Other actions keep condition as a skip gate."""
        text = """
name: gated
description: d
steps:
  - name: s
    action: display
    message: hi
    condition: "${LEVEL} === 0"
"""
        assert parse_workflow(text).steps[0].condition == "${LEVEL} === 0"


class TestLoadErrors:
    """Malformed definitions fail with the file and field named."""

    def test_missing_name(self):
        """The file and field are named."""
        with pytest.raises(WorkflowLoadError) as exc_info:
            parse_workflow("description: d\nsteps:\n  - name: s\n    action: guide\n", "wf.yaml")
        assert exc_info.value.field == "name"
        assert "wf.yaml" in str(exc_info.value)

    def test_empty_steps(self):
        """A workflow needs at least one step."""
        with pytest.raises(WorkflowLoadError) as exc_info:
            parse_workflow("name: n\ndescription: d\nsteps: []\n")
        assert exc_info.value.field == "steps"

    def test_unknown_action(self):
        """Unknown actions name the step field."""
        with pytest.raises(WorkflowLoadError) as exc_info:
            parse_workflow("name: n\ndescription: d\nsteps:\n  - name: s\n    action: launch\n")
        assert exc_info.value.field == "steps[0].action"

    @pytest.mark.parametrize("step_yaml,field", [
        ("action: elicit", "steps[0].prompt"),
        ("action: template\n    output_file: out.md", "steps[0].template"),
        ("action: render_template\n    template: t.md", "steps[0].output_file"),
        ("action: validate", "steps[0].condition"),
        ("action: display", "steps[0].message"),
        ("action: route\n    condition: LEVEL", "steps[0].routing"),
        ("action: sub-workflow", "steps[0].workflow_path"),
    ])
    def test_action_required_fields(self, step_yaml, field):
        """Each action's required field is enforced."""
        text = f"name: n\ndescription: d\nsteps:\n  - name: s\n    {step_yaml}\n"
        with pytest.raises(WorkflowLoadError) as exc_info:
            parse_workflow(text)
        assert exc_info.value.field == field

    def test_route_without_levels(self):
        """A routing map needs level_N or default."""
        text = """
name: n
description: d
steps:
  - name: r
    action: route
    condition: LEVEL
    routing:
      description: nothing here
"""
        with pytest.raises(WorkflowLoadError, match="no level_N or default"):
            parse_workflow(text)

    def test_invalid_yaml(self):
        """YAML syntax errors are load errors."""
        with pytest.raises(WorkflowLoadError, match="invalid YAML"):
            parse_workflow("name: [unclosed")

    def test_not_a_mapping(self):
        """The document must be a mapping."""
        with pytest.raises(WorkflowLoadError, match="mapping"):
            parse_workflow("- just\n- a list\n")


class TestLoadWorkflow:
    """Loading from disk."""

    def test_records_resolved_source_path(self, tmp_path):
        """source_path is the absolute file path."""
        path = tmp_path / "wf.yaml"
        path.write_text(VALID)
        workflow = load_workflow(path)
        assert workflow.source_path == str(path.resolve())

    def test_missing_file(self, tmp_path):
        """An unreadable file is a load error."""
        with pytest.raises(WorkflowLoadError, match="cannot read file"):
            load_workflow(tmp_path / "nope.yaml")

    def test_parse_without_path_has_no_source(self):
        """Parsed text has no source path."""
        assert parse_workflow(VALID).source_path is None
