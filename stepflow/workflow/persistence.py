"""
Durable storage of workflow execution state.

One JSON record per workflow instance, named .<workflow>.state.json inside
the state directory. Records are schema-checked on the way in and out: an
invalid record on disk is treated as absent, and an invalid record is
never written.
"""

import json
import logging
import re
from pathlib import Path

from stepflow.lib.storage import Storage
from stepflow.lib.validate import ValidationError, validate, validate_before_write
from stepflow.workflow.models import WorkflowState

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def state_file_name(workflow_name: str) -> str:
    """File name of the state record for a workflow instance."""
    safe = _UNSAFE_CHARS.sub("-", workflow_name.strip()).strip("-") or "workflow"
    return f".{safe}.state.json"


class StateStore:
    """Reads and writes WorkflowState records through a Storage."""

    def __init__(self, storage: Storage, state_dir: Path | str):
        self.storage = storage
        self.state_dir = Path(state_dir)

    def path_for(self, workflow_name: str) -> Path:
        return self.state_dir / state_file_name(workflow_name)

    def exists(self, workflow_name: str) -> bool:
        return self.storage.exists(self.path_for(workflow_name))

    def load(self, workflow_name: str) -> WorkflowState | None:
        """Load the record for a workflow, or None if missing or invalid."""
        path = self.path_for(workflow_name)
        if not self.storage.exists(path):
            return None

        try:
            data = json.loads(self.storage.read_text(path))
            validate(data, "state")
            state = WorkflowState.from_dict(data)
        except (OSError, json.JSONDecodeError, ValidationError, KeyError, ValueError) as e:
            logger.warning(f"[STATE] Ignoring unreadable state record {path}: {e}")
            return None

        if state.workflow_name != workflow_name:
            logger.warning(
                f"[STATE] Record {path} belongs to '{state.workflow_name}', not '{workflow_name}'; ignoring"
            )
            return None
        return state

    def save(self, state: WorkflowState) -> Path:
        """Persist a state record.

        Raises:
            ValidationError: if the record does not match the state schema
            OSError: if the write fails
        """
        path = self.path_for(state.workflow_name)
        data = state.to_dict()
        validate_before_write(data, "state", path)
        self.storage.mkdir(self.state_dir)
        self.storage.write_text(path, json.dumps(data, indent=2) + "\n")
        logger.debug(f"[STATE] Saved {state.workflow_name} at step {state.current_step} -> {path}")
        return path

    def delete(self, workflow_name: str) -> bool:
        """Remove a workflow's record. Returns False if there was none."""
        removed = self.storage.delete(self.path_for(workflow_name))
        if removed:
            logger.info(f"[STATE] Deleted state for {workflow_name}")
        return removed
