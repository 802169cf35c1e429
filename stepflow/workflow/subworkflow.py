"""
Sub-workflow coordination.

A parent step starts a child workflow, tracks it in the parent's state,
and drives it to completion before the parent moves on. Children run
strictly one at a time.

Cycle detection uses the ancestor chain stored in _VISITED_WORKFLOWS: a
tuple of resolved workflow paths from the root down to the current
workflow. Each child receives its parent's chain extended with its own
path, so a workflow that reappears anywhere among its ancestors is
rejected before it is loaded. The parent's own variables are never
modified to record the chain. A workflow built without a source path is
known by its name, so once a child is loaded (and before anything runs)
its name is also checked against the names of all its ancestors.
"""

import copy
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from stepflow.lib.errors import StepflowError
from stepflow.lib.placeholders import resolve_placeholders
from stepflow.workflow.loader import load_workflow
from stepflow.workflow.models import (
    PARENT_WORKFLOW_VAR,
    VISITED_WORKFLOWS_VAR,
    WORKFLOW_DEPTH_VAR,
    ChildStatus,
    ChildWorkflowState,
    ExecutionResult,
    Workflow,
    WorkflowState,
)
from stepflow.workflow.persistence import state_file_name

if TYPE_CHECKING:
    from stepflow.workflow.executor import WorkflowExecutor

logger = logging.getLogger(__name__)


class CycleDetected(StepflowError):
    """A workflow would (transitively) invoke itself, or nesting is too deep."""

    def __init__(self, chain: tuple[str, ...], message: str | None = None):
        self.chain = tuple(chain)
        super().__init__(message or f"Circular workflow reference: {' -> '.join(self.chain)}")


class ChildWorkflowFailed(StepflowError):
    """A child workflow returned a failure result."""

    def __init__(self, workflow_path: str, message: str, cause: Exception | None = None):
        self.workflow_path = workflow_path
        self.message = message
        self.cause = cause
        super().__init__(f"Workflow failed: {workflow_path} - {message}")


def workflow_identity(workflow: Workflow) -> str:
    """The path a workflow is known by in ancestor chains."""
    return workflow.source_path or workflow.name


def ancestor_chain(workflow: Workflow, variables: dict[str, Any]) -> tuple[str, ...]:
    """Chain of workflow paths from the root to this workflow (inclusive)."""
    chain = tuple(variables.get(VISITED_WORKFLOWS_VAR) or ())
    if not chain:
        return (workflow_identity(workflow),)
    return chain


def _depth(variables: dict[str, Any]) -> int:
    try:
        return int(variables.get(WORKFLOW_DEPTH_VAR) or 0)
    except (TypeError, ValueError):
        return 0


def check_cycle(chain: tuple[str, ...], child_path: str, depth: int, max_depth: int) -> None:
    """Raise CycleDetected if child_path is an ancestor or nesting exceeds max_depth."""
    if child_path in chain:
        raise CycleDetected(chain + (child_path,))
    if depth + 1 > max_depth:
        raise CycleDetected(
            chain + (child_path,),
            f"Maximum workflow depth {max_depth} exceeded: {' -> '.join(chain + (child_path,))}",
        )


def build_child_context(
    variables: dict[str, Any],
    parent_name: str,
    chain: tuple[str, ...],
    child_path: str,
    overrides: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Starting variables for a child workflow.

    A copy of the parent's variables, overridden by the step's overrides
    (string values have placeholders resolved against the parent), plus
    the parent name, the incremented depth and the extended chain.
    """
    context = copy.deepcopy(variables)
    for key, value in (overrides or {}).items():
        context[key] = resolve_placeholders(value, variables) if isinstance(value, str) else value
    context[PARENT_WORKFLOW_VAR] = parent_name
    context[WORKFLOW_DEPTH_VAR] = _depth(variables) + 1
    context[VISITED_WORKFLOWS_VAR] = chain + (child_path,)
    return context


def _now() -> str:
    return datetime.now().isoformat()


class SubWorkflowCoordinator:
    """Starts, tracks and resumes the children of one executor."""

    def __init__(self, parent: "WorkflowExecutor"):
        self.parent = parent

    @property
    def state(self) -> WorkflowState:
        return self.parent.state

    def _find_entry(
        self, step_index: int, workflow_path: str, batch_index: int | None = None
    ) -> ChildWorkflowState | None:
        for entry in reversed(self.state.child_workflows):
            if (
                entry.step_index == step_index
                and entry.batch_index == batch_index
                and entry.workflow_path == workflow_path
            ):
                return entry
        return None

    def ancestor_names(self) -> list[str]:
        """Names of this workflow and every ancestor, following persisted parent records."""
        names = [self.parent.workflow.name]
        parent_name = self.state.parent_workflow
        while parent_name and parent_name not in names:
            names.append(parent_name)
            record = self.parent.store.load(parent_name)
            parent_name = record.parent_workflow if record else None
        return names

    def _finish(self, entry: ChildWorkflowState, status: ChildStatus, error: str | None = None) -> None:
        entry.status = status
        entry.error = error
        entry.completed_at = _now()
        self.parent.save()

    def run_child(
        self,
        workflow_path: str,
        step_index: int,
        overrides: dict | None = None,
        batch_index: int | None = None,
    ) -> str:
        """Run one child workflow to completion on behalf of the step at step_index.

        batch_index is the child's position in a route step's workflow list,
        so the same workflow listed twice is tracked (and run) twice. A child
        already completed for this step and position is not run again, and a
        child left running by an interrupted attempt is resumed from its
        persisted state rather than restarted.

        Returns:
            The resolved path of the child workflow

        Raises:
            CycleDetected: if the child is an ancestor (by path or by name)
                or nesting is too deep
            WorkflowLoadError: if the child definition is malformed
            ChildWorkflowFailed: if the child returns a failure
        """
        variables = self.state.variables
        resolved = str(self.parent.services.resolve_path(resolve_placeholders(workflow_path, variables)))
        chain = ancestor_chain(self.parent.workflow, variables)

        check_cycle(chain, resolved, _depth(variables), self.parent.services.max_depth)

        entry = self._find_entry(step_index, resolved, batch_index)
        if entry is not None and entry.status == ChildStatus.COMPLETED:
            logger.info(f"[SUBFLOW] {resolved} already completed for step {step_index + 1}, skipping")
            return resolved

        child_workflow = load_workflow(resolved)
        # State records are keyed by name, so a child sharing an ancestor's name is the same instance
        if child_workflow.name in self.ancestor_names():
            raise CycleDetected(
                chain + (resolved,),
                f"Circular workflow reference: {' -> '.join(chain + (resolved,))} "
                f"(workflow '{child_workflow.name}' is already running above this step)",
            )
        child = self.parent.spawn(child_workflow)

        if entry is not None and entry.status == ChildStatus.RUNNING and self.parent.store.exists(child_workflow.name):
            logger.info(f"[SUBFLOW] Resuming child {child_workflow.name} ({resolved})")
            child.initialize()
        else:
            context = build_child_context(variables, self.parent.workflow.name, chain, resolved, overrides)
            entry = ChildWorkflowState(
                workflow_path=resolved,
                state_file=state_file_name(child_workflow.name),
                step_index=step_index,
                batch_index=batch_index,
            )
            self.state.child_workflows.append(entry)
            self.parent.save()
            logger.info(
                f"[SUBFLOW] Starting child {child_workflow.name} "
                f"(depth {context[WORKFLOW_DEPTH_VAR]}) from {self.parent.workflow.name}"
            )
            child.initialize_child(self.parent.workflow.name, self.parent.state_file, context)

        result = child.run_to_completion()
        if not result.success:
            self._finish(entry, ChildStatus.ERROR, str(result.error) if result.error else result.message)
            logger.error(f"[SUBFLOW] Child {child_workflow.name} failed: {result.message}")
            raise ChildWorkflowFailed(resolved, result.message, result.error)

        self._finish(entry, ChildStatus.COMPLETED)
        logger.info(f"[SUBFLOW] Child {child_workflow.name} completed")
        return resolved

    def resume_pending(self) -> ExecutionResult | None:
        """Resume the first running child, driving it to completion.

        Returns None if no child is running. The child resumes its own
        running children first, so the deepest pending workflow goes first.
        """
        entry = next(iter(self.state.running_children()), None)
        if entry is None:
            return None

        logger.info(f"[SUBFLOW] Resuming child workflow: {entry.workflow_path}")
        try:
            child_workflow = load_workflow(entry.workflow_path)
        except StepflowError as e:
            return ExecutionResult(
                False, f"Failed to resume child workflow: {e}", self.state, error=e,
            )

        child = self.parent.spawn(child_workflow)
        try:
            child.initialize()
        except (OSError, StepflowError) as e:
            return ExecutionResult(
                False, f"Failed to resume child workflow: {e}", self.state, error=e,
            )
        result = child.resume()
        while result.success and not child.state.completed:
            result = child.execute_next_step()

        try:
            if not result.success:
                self._finish(entry, ChildStatus.ERROR, str(result.error) if result.error else result.message)
                error = ChildWorkflowFailed(entry.workflow_path, result.message, result.error)
                return ExecutionResult(
                    False, f"Child workflow failed: {result.message}", self.state, error=error,
                )
            self._finish(entry, ChildStatus.COMPLETED)
        except (OSError, StepflowError) as e:
            return ExecutionResult(False, f"Failed to record child status: {e}", self.state, error=e)

        logger.info(f"[SUBFLOW] Child workflow completed: {entry.workflow_path}")
        return ExecutionResult(True, f"Child workflow {child_workflow.name} completed", self.state)
