"""
Data models for the workflow engine.

Steps are a closed set of frozen dataclasses, one per action. The executor
matches on the step class, so adding an action means adding a variant here
and a case there.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Optional

# Reserved variables injected by the engine
PARENT_WORKFLOW_VAR = "PARENT_WORKFLOW"
WORKFLOW_DEPTH_VAR = "WORKFLOW_DEPTH"
VISITED_WORKFLOWS_VAR = "_VISITED_WORKFLOWS"
ROUTING_DECISION_VAR = "routing_decision"


class StepAction(str, Enum):
    """Action tags accepted in workflow definitions."""
    ELICIT = "elicit"
    REFLECT = "reflect"
    GUIDE = "guide"
    TEMPLATE = "template"
    RENDER_TEMPLATE = "render_template"
    VALIDATE = "validate"
    DISPLAY = "display"
    LOAD_STATE_MACHINE = "load_state_machine"
    SUB_WORKFLOW = "sub-workflow"
    ROUTE = "route"
    API_CALL = "api_call"


@dataclass(frozen=True, kw_only=True)
class Step:
    """Fields shared by every step. `condition` gates execution."""
    name: str
    condition: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class GuideStep(Step):
    prompt: Optional[str] = None
    content: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class ElicitStep(Step):
    prompt: str
    variable: Optional[str] = None
    validation: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class ReflectStep(Step):
    prompt: Optional[str] = None
    variable: Optional[str] = None
    model: Optional[str] = None
    params: dict = field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class TemplateStep(Step):
    template: str
    output_file: str
    variables: dict = field(default_factory=dict)
    action: StepAction = StepAction.TEMPLATE


@dataclass(frozen=True, kw_only=True)
class ValidateStep(Step):
    """Fails the run when `check` is false.

    The definition's `condition` field is the check itself, so a validate
    step has no separate gate.
    """
    check: str
    error_message: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class DisplayStep(Step):
    message: str


@dataclass(frozen=True, kw_only=True)
class LoadStateMachineStep(Step):
    status_file: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class SubWorkflowStep(Step):
    workflow_path: str
    context_vars: dict = field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class RouteStep(Step):
    """Runs the workflow list selected by the level stored in `level_var`.

    The definition's `condition` field names the level variable, so a route
    step has no separate gate.
    """
    level_var: str
    routing: dict  # "level_N" / "default" -> tuple of workflow paths
    output_var: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class ApiCallStep(Step):
    options: dict = field(default_factory=dict)


ACTION_TYPES: dict[StepAction, type] = {
    StepAction.GUIDE: GuideStep,
    StepAction.ELICIT: ElicitStep,
    StepAction.REFLECT: ReflectStep,
    StepAction.TEMPLATE: TemplateStep,
    StepAction.RENDER_TEMPLATE: TemplateStep,
    StepAction.VALIDATE: ValidateStep,
    StepAction.DISPLAY: DisplayStep,
    StepAction.LOAD_STATE_MACHINE: LoadStateMachineStep,
    StepAction.SUB_WORKFLOW: SubWorkflowStep,
    StepAction.ROUTE: RouteStep,
    StepAction.API_CALL: ApiCallStep,
}


@dataclass(frozen=True)
class Workflow:
    """A loaded workflow definition. Immutable once loaded."""
    name: str
    description: str
    steps: tuple[Step, ...]
    variables: dict = field(default_factory=dict)
    agent: Optional[str] = None
    phase: Optional[Any] = None
    source_path: Optional[str] = None  # Absolute path the definition was loaded from


def _now() -> str:
    return datetime.now().isoformat()


class ChildStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class ChildWorkflowState:
    """A child workflow started by a sub-workflow or route step."""
    workflow_path: str
    state_file: str
    status: ChildStatus = ChildStatus.RUNNING
    step_index: Optional[int] = None  # Parent step that started the child
    batch_index: Optional[int] = None  # Position in a route step's workflow list
    started_at: str = field(default_factory=_now)
    completed_at: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ChildWorkflowState":
        return cls(
            workflow_path=data["workflow_path"],
            state_file=data["state_file"],
            status=ChildStatus(data["status"]),
            step_index=data.get("step_index"),
            batch_index=data.get("batch_index"),
            started_at=data["started_at"],
            completed_at=data.get("completed_at"),
            error=data.get("error"),
        )


@dataclass
class WorkflowState:
    """Execution state of one workflow instance.

    Invariant: completed == (current_step >= number of steps).
    """
    workflow_name: str
    current_step: int = 0
    variables: dict = field(default_factory=dict)
    completed: bool = False
    started_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    parent_workflow: Optional[str] = None
    parent_state_file: Optional[str] = None
    child_workflows: list[ChildWorkflowState] = field(default_factory=list)

    def touch(self) -> None:
        self.updated_at = _now()

    def running_children(self) -> list[ChildWorkflowState]:
        return [c for c in self.child_workflows if c.status == ChildStatus.RUNNING]

    def to_dict(self) -> dict:
        return {
            "workflow_name": self.workflow_name,
            "current_step": self.current_step,
            "variables": self.variables,
            "completed": self.completed,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "parent_workflow": self.parent_workflow,
            "parent_state_file": self.parent_state_file,
            "child_workflows": [c.to_dict() for c in self.child_workflows],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowState":
        return cls(
            workflow_name=data["workflow_name"],
            current_step=data["current_step"],
            variables=dict(data["variables"]),
            completed=data["completed"],
            started_at=data["started_at"],
            updated_at=data["updated_at"],
            parent_workflow=data.get("parent_workflow"),
            parent_state_file=data.get("parent_state_file"),
            child_workflows=[ChildWorkflowState.from_dict(c) for c in data.get("child_workflows") or []],
        )


@dataclass
class RoutingResult:
    """Outcome of one route step, stored into workflow variables."""
    level: int
    workflows_executed: int
    workflow_paths: list[str]
    started_at: str
    completed_at: str
    success: bool
    errors: Optional[list[str]] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.errors is None:
            del data["errors"]
        return data


@dataclass
class ExecutionResult:
    """Outcome of executeNextStep / resume. Never raised, always returned."""
    success: bool
    message: str
    state: Optional[WorkflowState] = None
    error: Optional[Exception] = None
    skipped: bool = False
    step: Optional[str] = None
