"""
Workflow definition loader.

Parses a YAML workflow definition, validates it against the workflow
schema, checks action-specific required fields, and builds the immutable
Workflow model. Any problem raises WorkflowLoadError naming the file and
the offending field; callers must fix the definition.
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from stepflow.lib.errors import StepflowError
from stepflow.lib.validate import ValidationError, validate
from stepflow.workflow.models import (
    ACTION_TYPES,
    ApiCallStep,
    DisplayStep,
    ElicitStep,
    GuideStep,
    LoadStateMachineStep,
    ReflectStep,
    RouteStep,
    Step,
    StepAction,
    SubWorkflowStep,
    TemplateStep,
    ValidateStep,
    Workflow,
)

logger = logging.getLogger(__name__)

# Action -> fields that must be present and non-empty
REQUIRED_FIELDS: dict[StepAction, tuple[str, ...]] = {
    StepAction.ELICIT: ("prompt",),
    StepAction.TEMPLATE: ("template", "output_file"),
    StepAction.RENDER_TEMPLATE: ("template", "output_file"),
    StepAction.VALIDATE: ("condition",),
    StepAction.DISPLAY: ("message",),
    StepAction.ROUTE: ("routing", "condition"),
}

ROUTING_KEYS = ("level_0", "level_1", "level_2", "level_3", "level_4", "default")

# Step keys consumed by the typed variants; anything else on an api_call is kept as options
_COMMON_KEYS = {"name", "action", "condition"}


class WorkflowLoadError(StepflowError):
    """A workflow definition is malformed. Not recoverable without editing it."""

    def __init__(self, message: str, path: str, field: str | None = None):
        self.path = path
        self.field = field
        self.message = message
        where = f" (field: {field})" if field else ""
        super().__init__(f"Failed to load workflow {path}{where}: {message}")


def _unwrap(document: Any, path: str) -> dict:
    """Accept both `workflow: {...}` and a bare definition."""
    if not isinstance(document, dict):
        raise WorkflowLoadError("definition must be a mapping", path)
    if "workflow" in document and isinstance(document["workflow"], dict):
        return document["workflow"]
    return document


def _workflow_list(value: Any) -> tuple[str, ...]:
    if isinstance(value, dict):
        value = value.get("workflows") or []
    return tuple(value)


def _build_step(raw: dict, index: int, path: str) -> Step:
    action = StepAction(raw["action"])
    name = raw["name"]
    where = f"steps[{index}]"

    # Legacy sub-workflow spellings: `subworkflow:` or variables.workflow_name
    if action == StepAction.SUB_WORKFLOW:
        workflow_path = (
            raw.get("workflow_path")
            or raw.get("subworkflow")
            or (raw.get("variables") or {}).get("workflow_name")
        )
        if not workflow_path:
            raise WorkflowLoadError(
                f"Step '{name}' requires workflow_path", path, f"{where}.workflow_path"
            )
        return SubWorkflowStep(
            name=name,
            condition=raw.get("condition"),
            workflow_path=workflow_path,
            context_vars=dict(raw.get("context_vars") or {}),
        )

    for field_name in REQUIRED_FIELDS.get(action, ()):
        if not raw.get(field_name):
            raise WorkflowLoadError(
                f"{action.value} step '{name}' requires {field_name}", path, f"{where}.{field_name}"
            )

    cls = ACTION_TYPES[action]
    if cls is GuideStep:
        return GuideStep(name=name, condition=raw.get("condition"),
                         prompt=raw.get("prompt"), content=raw.get("content"))
    if cls is ElicitStep:
        return ElicitStep(name=name, condition=raw.get("condition"), prompt=raw["prompt"],
                          variable=raw.get("variable"), validation=raw.get("validation"))
    if cls is ReflectStep:
        return ReflectStep(name=name, condition=raw.get("condition"), prompt=raw.get("prompt"),
                           variable=raw.get("variable"), model=raw.get("model"),
                           params=dict(raw.get("params") or {}))
    if cls is TemplateStep:
        return TemplateStep(name=name, condition=raw.get("condition"), template=raw["template"],
                            output_file=raw["output_file"], variables=dict(raw.get("variables") or {}),
                            action=action)
    if cls is ValidateStep:
        return ValidateStep(name=name, check=raw["condition"], error_message=raw.get("error_message"))
    if cls is DisplayStep:
        return DisplayStep(name=name, condition=raw.get("condition"), message=raw["message"])
    if cls is LoadStateMachineStep:
        return LoadStateMachineStep(name=name, condition=raw.get("condition"),
                                    status_file=raw.get("status_file"))
    if cls is RouteStep:
        routing = {
            key: _workflow_list(raw["routing"][key])
            for key in ROUTING_KEYS
            if key in raw["routing"]
        }
        if not routing:
            raise WorkflowLoadError(
                f"route step '{name}' has no level_N or default entries", path, f"{where}.routing"
            )
        return RouteStep(name=name, level_var=raw["condition"], routing=routing,
                         output_var=raw.get("output_var"))
    return ApiCallStep(
        name=name,
        condition=raw.get("condition"),
        options={k: v for k, v in raw.items() if k not in _COMMON_KEYS},
    )


def parse_workflow(text: str, path: str = "<string>") -> Workflow:
    """Parse definition text into a Workflow.

    Raises:
        WorkflowLoadError: if the text is not valid YAML or the definition is malformed
    """
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise WorkflowLoadError(f"invalid YAML: {e}", path) from e

    definition = _unwrap(document, path)

    try:
        validate(definition, "workflow")
    except ValidationError as e:
        raise WorkflowLoadError(e.message, path, e.path) from e

    steps = tuple(_build_step(raw, i, path) for i, raw in enumerate(definition["steps"]))

    return Workflow(
        name=definition["name"],
        description=definition["description"],
        steps=steps,
        variables=dict(definition.get("variables") or {}),
        agent=definition.get("agent"),
        phase=definition.get("phase"),
        source_path=path if path != "<string>" else None,
    )


def load_workflow(path: str | Path) -> Workflow:
    """Load and validate a workflow definition file.

    Raises:
        WorkflowLoadError: if the file can't be read or the definition is malformed
    """
    resolved = Path(path).resolve()
    try:
        text = resolved.read_text(encoding="utf-8")
    except OSError as e:
        raise WorkflowLoadError(f"cannot read file: {e}", str(resolved)) from e

    workflow = parse_workflow(text, str(resolved))
    logger.debug(f"Loaded workflow '{workflow.name}' ({len(workflow.steps)} steps) from {resolved}")
    return workflow
