"""
Routing dispatcher.

A route step reads a complexity level from a workflow variable, picks the
workflow list configured for that level (falling back to `default`), and
runs the list strictly in order through the SubWorkflowCoordinator. The
first failing child aborts the rest of the batch.
"""

import logging
import re
from datetime import datetime
from typing import Any

from stepflow.lib.errors import StepflowError
from stepflow.workflow.models import ROUTING_DECISION_VAR, RouteStep, RoutingResult
from stepflow.workflow.subworkflow import ChildWorkflowFailed, SubWorkflowCoordinator

logger = logging.getLogger(__name__)

MIN_LEVEL = 0
MAX_LEVEL = 4

_LEVEL_PATTERN = re.compile(r"level[_-]?(\d+)", re.IGNORECASE)
_DIGITS_PATTERN = re.compile(r"\d+")


class RoutingError(StepflowError):
    """A route step could not select or complete its workflows."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        self.message = message
        where = f" at workflow {path}" if path else ""
        super().__init__(f"Routing failed{where}: {message}")


class InvalidLevelError(RoutingError):
    """The level variable does not hold a level in 0-4."""

    def __init__(self, value: Any, message: str | None = None):
        self.value = value
        super().__init__(message or f"Invalid complexity level: {value!r} (must be {MIN_LEVEL}-{MAX_LEVEL})")


def extract_level(value: Any) -> int:
    """Resolve a level from a number, "N", "level_N", or any text containing digits.

    Raises:
        InvalidLevelError: if no level can be found or it is outside 0-4
    """
    level = None
    if isinstance(value, bool):
        level = None
    elif isinstance(value, int):
        level = value
    elif isinstance(value, float) and value.is_integer():
        level = int(value)
    elif isinstance(value, str):
        text = value.strip()
        try:
            level = int(text)
        except ValueError:
            match = _LEVEL_PATTERN.search(text) or _DIGITS_PATTERN.search(text)
            if match:
                level = int(match.group(1) if match.re is _LEVEL_PATTERN else match.group(0))

    if level is None:
        raise InvalidLevelError(value, f"Could not extract complexity level from {value!r}")
    if not MIN_LEVEL <= level <= MAX_LEVEL:
        raise InvalidLevelError(value)
    return level


def select_workflows(routing: dict, level: int) -> tuple[str, ...]:
    """The workflow list for level_N, else default.

    Raises:
        RoutingError: if neither is configured
    """
    key = f"level_{level}"
    if key in routing:
        return tuple(routing[key])
    if "default" in routing:
        logger.info(f"[ROUTE] No {key} route, using default")
        return tuple(routing["default"])
    raise RoutingError(f"No route configured for level {level} and no default")


def _level_variable(name: str) -> str:
    """Strip ${...} / {{...}} wrapping from the configured level variable."""
    name = name.strip()
    match = re.fullmatch(r"\$\{\s*(\w+)\s*\}|\{\{\s*(\w+)\s*\}\}", name)
    if match:
        return match.group(1) or match.group(2)
    return name


class RoutingDispatcher:
    """Executes route steps for one executor."""

    def __init__(self, coordinator: SubWorkflowCoordinator):
        self.coordinator = coordinator

    def dispatch(self, step: RouteStep, step_index: int) -> RoutingResult:
        """Run the workflows selected by the step's level and record the result.

        Raises:
            InvalidLevelError: if the level is missing or invalid (nothing runs)
            RoutingError: if no list matches or a child fails
            CycleDetected: if a selected workflow is an ancestor
        """
        variables = self.coordinator.state.variables
        var_name = _level_variable(step.level_var)
        if var_name not in variables:
            raise InvalidLevelError(None, f"Level variable '{var_name}' is not set")

        level = extract_level(variables[var_name])
        paths = select_workflows(step.routing, level)
        logger.info(f"[ROUTE] {step.name}: level {level} -> {len(paths)} workflow(s)")

        started_at = datetime.now().isoformat()
        executed: list[str] = []
        for position, path in enumerate(paths):
            try:
                executed.append(self.coordinator.run_child(path, step_index, batch_index=position))
            except ChildWorkflowFailed as e:
                logger.error(f"[ROUTE] Aborting batch at {path}: {e.message}")
                raise RoutingError(e.message, path) from e

        result = RoutingResult(
            level=level,
            workflows_executed=len(executed),
            workflow_paths=executed,
            started_at=started_at,
            completed_at=datetime.now().isoformat(),
            success=True,
        )

        decision = result.to_dict()
        if step.output_var:
            variables[step.output_var] = decision
        variables[ROUTING_DECISION_VAR] = dict(decision)
        logger.info(f"[ROUTE] Routing complete: {len(executed)}/{len(paths)} workflows executed")
        return result
