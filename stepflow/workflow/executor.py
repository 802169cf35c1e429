"""
Workflow step executor.

Drives one workflow instance a step at a time:

    Uninitialized -> Idle -> Executing(i) -> Advanced(i+1) | Failed(i) -> ... -> Completed

Each successful step advances the pointer and persists the state before
returning. A failed step leaves the pointer where it was, so calling
execute_next_step() again retries it. Step failures are returned as an
ExecutionResult and never raised.
"""

import logging
from typing import Any

from stepflow.lib.errors import StepExecutionError, StepflowError
from stepflow.lib.placeholders import resolve_placeholders
from stepflow.pm.state_machine import StoryStateMachine
from stepflow.workflow.collaborators import ExecutionServices
from stepflow.workflow.conditions import ConditionError, evaluate_condition
from stepflow.workflow.loader import load_workflow
from stepflow.workflow.models import (
    WORKFLOW_DEPTH_VAR,
    ApiCallStep,
    DisplayStep,
    ElicitStep,
    ExecutionResult,
    GuideStep,
    LoadStateMachineStep,
    ReflectStep,
    RouteStep,
    Step,
    SubWorkflowStep,
    TemplateStep,
    ValidateStep,
    Workflow,
    WorkflowState,
)
from stepflow.workflow.persistence import StateStore, state_file_name
from stepflow.workflow.routing import RoutingDispatcher
from stepflow.workflow.subworkflow import ChildWorkflowFailed, SubWorkflowCoordinator

logger = logging.getLogger(__name__)


class WorkflowExecutor:
    """Executes one workflow instance against shared ExecutionServices."""

    def __init__(self, workflow: Workflow, services: ExecutionServices):
        self.workflow = workflow
        self.services = services
        self.state: WorkflowState | None = None
        self.coordinator = SubWorkflowCoordinator(self)
        self.router = RoutingDispatcher(self.coordinator)

    @property
    def store(self) -> StateStore:
        return self.services.store

    @property
    def state_file(self) -> str:
        return state_file_name(self.workflow.name)

    @property
    def total_steps(self) -> int:
        return len(self.workflow.steps)

    def spawn(self, workflow: Workflow) -> "WorkflowExecutor":
        """Executor for a child workflow sharing this executor's services."""
        return type(self)(workflow, self.services)

    def save(self) -> None:
        self.state.touch()
        self.store.save(self.state)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> WorkflowState:
        """Load the persisted state for this workflow, or start fresh at step 0.

        Raises:
            ValidationError, OSError: if a fresh state can't be persisted
        """
        existing = self.store.load(self.workflow.name)
        if existing is not None:
            existing.variables = {**self.workflow.variables, **existing.variables}
            existing.completed = existing.current_step >= self.total_steps
            self.state = existing
            logger.info(
                f"[STATE] Resuming {self.workflow.name} at step "
                f"{existing.current_step}/{self.total_steps}"
            )
            return self.state

        self.state = WorkflowState(
            workflow_name=self.workflow.name,
            variables=dict(self.workflow.variables),
            completed=self.total_steps == 0,
        )
        self.save()
        logger.info(f"[STATE] Initialized {self.workflow.name} ({self.total_steps} steps)")
        return self.state

    def initialize_child(
        self, parent_workflow: str, parent_state_file: str, context: dict[str, Any]
    ) -> WorkflowState:
        """Start this workflow fresh as a child, replacing any earlier record."""
        self.state = WorkflowState(
            workflow_name=self.workflow.name,
            variables={**self.workflow.variables, **context},
            completed=self.total_steps == 0,
            parent_workflow=parent_workflow,
            parent_state_file=parent_state_file,
        )
        self.save()
        return self.state

    def get_state(self) -> WorkflowState | None:
        return self.state

    def reset(self) -> bool:
        """Delete the persisted record and return to Uninitialized."""
        removed = self.store.delete(self.workflow.name)
        self.state = None
        return removed

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _not_initialized(self) -> ExecutionResult:
        return ExecutionResult(
            False, "Workflow not initialized", error=StepflowError("Call initialize() first")
        )

    def execute_next_step(self) -> ExecutionResult:
        """Execute the current step and advance on success."""
        if self.state is None:
            return self._not_initialized()

        if self.state.current_step >= self.total_steps:
            self.state.completed = True
            return ExecutionResult(True, "Workflow already completed", self.state)

        index = self.state.current_step
        step = self.workflow.steps[index]
        position = f"{index + 1}/{self.total_steps}"

        if step.condition is not None:
            try:
                should_run = evaluate_condition(step.condition, self.state.variables, strict=False)
            except ConditionError as e:
                logger.warning(f"[STEP] {step.name} ({position}): bad condition: {e}")
                return ExecutionResult(
                    False, f"Step '{step.name}' has an invalid condition: {e.message}",
                    self.state, error=e, step=step.name,
                )
            if not should_run:
                logger.info(f"[STEP] Skipping {step.name} ({position}): condition is false")
                return self._advance(step, f"Skipped step '{step.name}' (condition false)", skipped=True)

        logger.info(f"[STEP] Executing {step.name} ({position})")
        try:
            self._dispatch(step, index)
        except StepflowError as e:
            logger.error(f"[STEP] {step.name} failed: {e}")
            return ExecutionResult(False, f"Step '{step.name}' failed: {e}", self.state, error=e, step=step.name)
        except Exception as e:
            logger.exception(f"[STEP] {step.name} raised")
            error = StepExecutionError(step.name, str(e))
            return ExecutionResult(
                False, f"Step '{step.name}' failed: {e}", self.state, error=error, step=step.name,
            )

        return self._advance(step, f"Completed step '{step.name}'")

    def _advance(self, step: Step, message: str, skipped: bool = False) -> ExecutionResult:
        previous = (self.state.current_step, self.state.completed, self.state.updated_at)
        self.state.current_step += 1
        self.state.completed = self.state.current_step >= self.total_steps
        try:
            self.save()
        except (OSError, StepflowError) as e:
            self.state.current_step, self.state.completed, self.state.updated_at = previous
            logger.error(f"[STATE] Failed to persist after {step.name}: {e}")
            return ExecutionResult(
                False, f"Failed to save state after '{step.name}': {e}", self.state,
                error=e, step=step.name,
            )

        if self.state.completed:
            logger.info(f"[STEP] Workflow {self.workflow.name} completed")
        return ExecutionResult(True, message, self.state, skipped=skipped, step=step.name)

    def resume(self) -> ExecutionResult:
        """Finish any running child first, then execute the next own step."""
        if self.state is None:
            return self._not_initialized()

        while self.state.running_children():
            result = self.coordinator.resume_pending()
            if result is None:
                break
            if not result.success:
                return result

        return self.execute_next_step()

    def run_to_completion(self) -> ExecutionResult:
        """Resume, then execute steps until completed or a step fails."""
        result = self.resume()
        while result.success and not self.state.completed:
            result = self.execute_next_step()
        return result

    # ------------------------------------------------------------------
    # Step actions
    # ------------------------------------------------------------------

    def _resolve(self, text: str | None) -> str:
        return resolve_placeholders(text or "", self.state.variables)

    def _dispatch(self, step: Step, index: int) -> None:
        variables = self.state.variables
        services = self.services

        match step:
            case GuideStep():
                text = self._resolve(step.content or step.prompt)
                if text:
                    services.output(text)

            case ElicitStep():
                if services.input_provider is None:
                    raise StepExecutionError(step.name, "No input provider configured")
                prompt = self._resolve(step.prompt)
                value = services.input_provider.request(prompt, step.validation, step.variable)
                if value is None:
                    raise StepExecutionError(step.name, f"No input available for: {prompt}")
                if step.variable:
                    variables[step.variable] = value

            case ReflectStep():
                if services.generator is None:
                    raise StepExecutionError(step.name, "No text generator configured")
                prompt = self._resolve(step.prompt)
                if not prompt:
                    raise StepExecutionError(step.name, "reflect step requires a prompt")
                text = services.generator.generate(prompt, model=step.model, **step.params)
                if step.variable:
                    variables[step.variable] = text

            case TemplateStep():
                if services.renderer is None:
                    raise StepExecutionError(step.name, "No template renderer configured")
                merged = dict(variables)
                for key, value in step.variables.items():
                    merged[key] = self._resolve(value) if isinstance(value, str) else value
                content = services.renderer.render(self._resolve(step.template), merged)
                output_file = resolve_placeholders(step.output_file, merged)
                services.storage.write_text(output_file, content)
                logger.info(f"[STEP] Wrote {output_file}")

            case ValidateStep():
                if not evaluate_condition(step.check, variables, strict=True):
                    message = self._resolve(step.error_message) or f"Validation failed: {step.check}"
                    raise StepExecutionError(step.name, message)

            case DisplayStep():
                services.output(self._resolve(step.message))

            case LoadStateMachineStep():
                self._load_state_machine(step)

            case SubWorkflowStep():
                try:
                    self.coordinator.run_child(step.workflow_path, index, step.context_vars)
                except ChildWorkflowFailed as e:
                    raise StepExecutionError(step.name, str(e)) from e

            case RouteStep():
                self.router.dispatch(step, index)

            case ApiCallStep():
                raise StepExecutionError(step.name, "api_call actions are not supported")

            case _:
                raise StepExecutionError(step.name, f"Unknown step type: {type(step).__name__}")

    def _load_state_machine(self, step: LoadStateMachineStep) -> None:
        if step.status_file:
            path = self._resolve(step.status_file)
        elif self.services.status_file is not None:
            path = self.services.status_file
        else:
            raise StepExecutionError(step.name, "No status_file given and none configured")

        machine = StoryStateMachine(self.services.storage, path)
        machine.load()
        report = machine.validate()
        if not report.valid:
            logger.warning(f"[STORY] {path}: {'; '.join(report.errors)}")

        variables = self.state.variables
        for prefix, story in (("todo", machine.current_todo()), ("in_progress", machine.current_in_progress())):
            if story is None:
                continue
            variables[f"{prefix}_story_id"] = story.id
            variables[f"{prefix}_story_title"] = story.title
            variables[f"{prefix}_story_points"] = story.points if story.points is not None else 0

    # ------------------------------------------------------------------
    # Hierarchy
    # ------------------------------------------------------------------

    def get_hierarchy(self) -> dict | None:
        """Tree of this workflow and its tracked children, read from persisted records."""
        if self.state is None:
            return None
        return self._hierarchy_node(self.workflow, self.state, frozenset())

    def _hierarchy_node(self, workflow: Workflow, state: WorkflowState, seen: frozenset) -> dict:
        if state.completed:
            status = "completed"
        elif state.current_step == 0:
            status = "pending"
        else:
            status = "running"

        try:
            depth = int(state.variables.get(WORKFLOW_DEPTH_VAR) or 0)
        except (TypeError, ValueError):
            depth = 0

        seen = seen | {workflow.name}
        children = []
        added = set()
        for entry in state.child_workflows:
            if entry.workflow_path in added:
                continue
            try:
                child_workflow = load_workflow(entry.workflow_path)
            except StepflowError as e:
                logger.warning(f"[SUBFLOW] Omitting child {entry.workflow_path} from hierarchy: {e}")
                continue
            if child_workflow.name in seen:
                continue
            child_state = self.store.load(child_workflow.name)
            if child_state is None:
                logger.warning(f"[SUBFLOW] No state record for child {child_workflow.name}")
                continue
            added.add(entry.workflow_path)
            children.append(self._hierarchy_node(child_workflow, child_state, seen))

        return {
            "workflow": workflow.name,
            "status": status,
            "current_step": state.current_step,
            "total_steps": len(workflow.steps),
            "depth": depth,
            "children": children,
        }
