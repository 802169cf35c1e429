"""Tests for stepflow.workflow.persistence and schema validation of state records."""

import json

import pytest

from stepflow.lib.storage import LocalStorage
from stepflow.lib.validate import ValidationError, validate
from stepflow.workflow.models import ChildStatus, ChildWorkflowState, WorkflowState
from stepflow.workflow.persistence import StateStore, state_file_name


@pytest.fixture
def store(tmp_path):
    return StateStore(LocalStorage(tmp_path), tmp_path / "state")


class TestStateFileName:

    def test_dot_prefixed_json(self):
        """Records are hidden .<name>.state.json files."""
        assert state_file_name("setup") == ".setup.state.json"

    def test_unsafe_characters_replaced(self):
        """Path-unsafe characters become dashes."""
        assert state_file_name("my flow/v2") == ".my-flow-v2.state.json"


class TestStateStore:
    """Round trip, absence and invalid records."""

    def test_save_then_load(self, store):
        """A saved record loads back with its children."""
        state = WorkflowState(workflow_name="setup", current_step=2, variables={"A": 1})
        state.child_workflows.append(
            ChildWorkflowState(workflow_path="/w/child.yaml", state_file=".child.state.json", step_index=1)
        )
        store.save(state)

        loaded = store.load("setup")
        assert loaded.current_step == 2
        assert loaded.variables == {"A": 1}
        assert loaded.child_workflows[0].status == ChildStatus.RUNNING
        assert loaded.child_workflows[0].step_index == 1

    def test_missing_record_is_none(self, store):
        """No file means no state."""
        assert store.load("nothing") is None

    def test_corrupt_record_is_none(self, store, caplog):
        """Unparseable JSON is logged and treated as absent."""
        store.path_for("setup").parent.mkdir(parents=True)
        store.path_for("setup").write_text("{not json")
        assert store.load("setup") is None
        assert "Ignoring unreadable state record" in caplog.text

    def test_structurally_invalid_record_is_none(self, store):
        """A record failing the schema is treated as absent."""
        store.path_for("setup").parent.mkdir(parents=True)
        store.path_for("setup").write_text(json.dumps({"workflow_name": "setup"}))
        assert store.load("setup") is None

    def test_record_for_other_workflow_is_none(self, store):
        """A record naming another workflow is ignored."""
        store.save(WorkflowState(workflow_name="other"))
        store.path_for("other").rename(store.path_for("setup"))
        assert store.load("setup") is None

    def test_refuses_to_write_invalid_record(self, store):
        """Invalid state never reaches disk."""
        state = WorkflowState(workflow_name="setup", current_step=-1)
        with pytest.raises(ValidationError, match="Refusing to write"):
            store.save(state)
        assert not store.exists("setup")

    def test_delete(self, store):
        """delete() reports whether a record existed."""
        store.save(WorkflowState(workflow_name="setup"))
        assert store.delete("setup") is True
        assert store.delete("setup") is False
        assert store.load("setup") is None


class TestStateSchema:

    def test_required_field_named(self):
        """The missing field is the error path."""
        with pytest.raises(ValidationError) as exc_info:
            validate({"workflow_name": "x"}, "state")
        assert exc_info.value.path == "current_step"

    def test_child_status_enum(self):
        """Child status must be a known value."""
        data = WorkflowState(workflow_name="x").to_dict()
        data["child_workflows"] = [{
            "workflow_path": "a", "state_file": "b", "status": "paused", "started_at": "t",
        }]
        with pytest.raises(ValidationError) as exc_info:
            validate(data, "state")
        assert exc_info.value.path == "child_workflows[0].status"
