"""Driver loop for workflow execution.

Wrapped with Prefect @flow for observability. Holds the per-instance
lock for the whole run, so two drivers never advance the same state
record. Interruption is only honoured between steps: the cancel flag is
checked right after each step has been persisted.
"""

import logging
import threading
from typing import Optional

from prefect import flow
from pydantic import BaseModel

from stepflow.lib.locking import instance_lock
from stepflow.workflow.executor import WorkflowExecutor

logger = logging.getLogger(__name__)

# Safety cap on steps per run; a workflow with sub-workflows counts one per parent step
DEFAULT_MAX_STEPS = 1000

EXIT_OK = 0
EXIT_STEP_FAILED = 1


class RunOutcome(BaseModel):
    """Summary of one driver run."""
    workflow: str
    status: str  # completed, failed, cancelled, max_steps
    steps_executed: int
    current_step: int
    total_steps: int
    message: str
    failed_step: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return EXIT_STEP_FAILED if self.status == "failed" else EXIT_OK


def _outcome(executor: WorkflowExecutor, status: str, steps: int, message: str,
             failed_step: str | None = None) -> RunOutcome:
    return RunOutcome(
        workflow=executor.workflow.name,
        status=status,
        steps_executed=steps,
        current_step=executor.state.current_step if executor.state else 0,
        total_steps=executor.total_steps,
        message=message,
        failed_step=failed_step,
    )


@flow(name="stepflow-run", retries=0, validate_parameters=False)
def run_workflow(
    executor: WorkflowExecutor,
    max_steps: int = DEFAULT_MAX_STEPS,
    cancel_event: threading.Event | None = None,
    lock_timeout: int = 60,
) -> RunOutcome:
    """Drive a workflow to completion, first failure, cancellation or the step cap.

    Running children left by an interrupted run are finished first.

    Raises:
        LockTimeout: if another driver holds the instance lock
    """
    with instance_lock(executor.store.state_dir, executor.workflow.name, timeout=lock_timeout):
        if executor.state is None:
            executor.initialize()

        if executor.state.completed:
            return _outcome(executor, "completed", 0, "Workflow already completed")

        logger.info(f"[STEP] Running {executor.workflow.name} from step {executor.state.current_step}")
        result = executor.resume()
        steps = 1

        while True:
            if not result.success:
                logger.error(f"[STEP] Run stopped: {result.message}")
                return _outcome(executor, "failed", steps, result.message, result.step)
            if executor.state.completed:
                return _outcome(executor, "completed", steps, f"Workflow {executor.workflow.name} completed")
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"[STEP] Cancelled after step {executor.state.current_step}")
                return _outcome(executor, "cancelled", steps, "Run cancelled")
            if steps >= max_steps:
                logger.warning(f"[STEP] Stopping after {steps} steps (MAX_STEPS)")
                return _outcome(executor, "max_steps", steps, f"Stopped after {steps} steps")

            result = executor.execute_next_step()
            steps += 1
