"""Tests for story state machine transitions and WIP limits."""

import pytest
from unittest.mock import patch

from stepflow.lib.storage import LocalStorage
from stepflow.pm import (
    DisallowedTransitionError,
    StoryState,
    StoryStateMachine,
    TransitionError,
    UnknownStoryError,
    WipLimitExceeded,
)
from stepflow.pm.models import Story, StatusDocument
from stepflow.pm.state_machine import TRIGGER_FOR, StoryFSM


BOARD = """# Sprint Board

## BACKLOG
- [S1] First backlog story [Points: 3]
- [S2] Second backlog story

## TODO
- [S3] Ready story

## IN PROGRESS
- [S4] Active story [Points: 5]

## DONE
- [S5] Shipped story
"""


@pytest.fixture
def board(tmp_path):
    path = tmp_path / "status.md"
    path.write_text(BOARD)
    machine = StoryStateMachine(LocalStorage(tmp_path), path)
    machine.load()
    return machine


def ids(machine, state):
    return [s.id for s in machine.document.stories(state)]


class TestTriggerTable:
    """Only the four documented edges exist."""

    def test_edges(self):
        """plan, defer, start and finish are the only triggers."""
        assert TRIGGER_FOR == {
            ("BACKLOG", "TODO"): "plan",
            ("TODO", "BACKLOG"): "defer",
            ("TODO", "IN_PROGRESS"): "start",
            ("IN_PROGRESS", "DONE"): "finish",
        }

    def test_no_auto_transitions(self):
        """No to_<STATE> shortcuts exist."""
        fsm = StoryFSM(Story("S1", "t", StoryState.BACKLOG), StatusDocument())
        assert not hasattr(fsm, "to_DONE")

    def test_guard_blocks_full_target(self):
        """A full target bucket blocks the trigger."""
        document = StatusDocument(todo=(Story("S3", "t", StoryState.TODO),))
        fsm = StoryFSM(Story("S1", "t", StoryState.BACKLOG), document)
        assert fsm.may_trigger("plan") is False
        assert fsm.plan() is False
        assert fsm.state == "BACKLOG"


class TestBoardScenario:
    """Moves across a board with both capped buckets full."""

    def test_loads_board(self, board):
        """The sample board parses into its buckets."""
        assert ids(board, StoryState.BACKLOG) == ["S1", "S2"]
        assert ids(board, StoryState.TODO) == ["S3"]
        assert ids(board, StoryState.IN_PROGRESS) == ["S4"]
        assert ids(board, StoryState.DONE) == ["S5"]
        assert board.validate().valid

    def test_plan_into_full_todo_refused(self, board):
        """TODO holds one story, and the file is untouched."""
        with pytest.raises(WipLimitExceeded) as exc_info:
            board.transition("S1", StoryState.TODO)
        assert exc_info.value.state == StoryState.TODO
        assert board.path.read_text() == BOARD
        assert ids(board, StoryState.TODO) == ["S3"]

    def test_defer_then_plan(self, board):
        """Freeing TODO lets another story in."""
        board.transition("S3", StoryState.BACKLOG)
        assert ids(board, StoryState.BACKLOG) == ["S1", "S2", "S3"]
        assert ids(board, StoryState.TODO) == []

        moved = board.transition("S1", StoryState.TODO)
        assert moved.state == StoryState.TODO
        assert ids(board, StoryState.TODO) == ["S1"]
        assert ids(board, StoryState.BACKLOG) == ["S2", "S3"]

    def test_skip_to_done_never_allowed(self, board):
        """TODO cannot jump to DONE."""
        board.transition("S3", StoryState.BACKLOG)
        board.transition("S1", StoryState.TODO)
        with pytest.raises(DisallowedTransitionError) as exc_info:
            board.transition("S1", StoryState.DONE)
        assert exc_info.value.source == "TODO"
        assert exc_info.value.target == "DONE"

    def test_start_into_full_in_progress_refused(self, board):
        """IN_PROGRESS holds one story."""
        with pytest.raises(WipLimitExceeded):
            board.transition("S3", StoryState.IN_PROGRESS)

    def test_finish_then_start(self, board):
        """Finishing frees IN_PROGRESS for the next story."""
        board.transition("S4", StoryState.DONE)
        board.transition("S3", "in progress")
        assert ids(board, StoryState.IN_PROGRESS) == ["S3"]
        assert ids(board, StoryState.DONE) == ["S5", "S4"]

    def test_points_survive_move(self, board):
        """Points are kept across moves."""
        board.transition("S4", StoryState.DONE)
        assert board.document.find("S4").points == 5

    @pytest.mark.parametrize("story,target", [
        ("S1", "IN_PROGRESS"),
        ("S4", "TODO"),
        ("S5", "BACKLOG"),
        ("S5", "IN_PROGRESS"),
        ("S4", "BACKLOG"),
    ])
    def test_disallowed_edges(self, board, story, target):
        """Moves off the four edges are refused without writing."""
        with pytest.raises(DisallowedTransitionError):
            board.transition(story, target)
        assert board.path.read_text() == BOARD

    def test_unknown_story(self, board):
        """An unknown ID is named in the error."""
        with pytest.raises(UnknownStoryError, match="S99"):
            board.transition("S99", StoryState.TODO)

    def test_unknown_target_state(self, board):
        """An unknown target state is disallowed."""
        with pytest.raises(DisallowedTransitionError):
            board.transition("S1", "ARCHIVED")


class TestPersistence:

    def test_transition_is_written_and_reloadable(self, board):
        """A fresh machine sees the move."""
        board.transition("S4", StoryState.DONE)
        fresh = StoryStateMachine(board.storage, board.path)
        fresh.load()
        assert ids(fresh, StoryState.DONE) == ["S5", "S4"]
        assert fresh.document.title == "Sprint Board"

    def test_write_failure_leaves_memory_unchanged(self, board):
        """A failed write rolls back the in-memory move."""
        with patch.object(board.storage, "write_text", side_effect=OSError("read-only")):
            with pytest.raises(TransitionError, match="read-only"):
                board.transition("S4", StoryState.DONE)
        assert ids(board, StoryState.IN_PROGRESS) == ["S4"]

    def test_missing_file_loads_empty(self, tmp_path):
        """A missing document is empty."""
        machine = StoryStateMachine(LocalStorage(tmp_path), tmp_path / "none.md")
        document = machine.load()
        assert document.all_stories() == []
        assert machine.current_todo() is None


class TestValidation:
    """Invalid documents are reported, never fixed."""

    def test_over_limit_reported(self, tmp_path):
        """Over-limit buckets are reported as loaded."""
        path = tmp_path / "status.md"
        path.write_text("## TODO\n- [A] a\n- [B] b\n\n## IN PROGRESS\n- [C] c\n")
        machine = StoryStateMachine(LocalStorage(tmp_path), path)
        machine.load()

        report = machine.validate()
        assert not report.valid
        assert report.errors == ["Too many stories in TODO: 2 (expected 1)"]
        assert ids(machine, StoryState.TODO) == ["A", "B"]

    def test_move_out_of_invalid_bucket_cannot_write_invalid(self, tmp_path):
        """A move that leaves the document invalid is refused."""
        path = tmp_path / "status.md"
        path.write_text("## TODO\n- [A] a\n- [B] b\n- [C] c\n")
        machine = StoryStateMachine(LocalStorage(tmp_path), path)
        machine.load()
        with pytest.raises(TransitionError, match="Refusing to write"):
            machine.transition("A", StoryState.BACKLOG)
        assert ids(machine, StoryState.TODO) == ["A", "B", "C"]


class TestCanTransition:

    def test_queries(self, board):
        """can_transition mirrors transition without raising."""
        assert board.can_transition("S3", StoryState.BACKLOG) is True
        assert board.can_transition("S1", StoryState.TODO) is False
        assert board.can_transition("S1", StoryState.DONE) is False
        assert board.can_transition("S4", "DONE") is True
        assert board.can_transition("S99", "TODO") is False
        assert board.can_transition("S1", "nowhere") is False

    def test_query_does_not_move(self, board):
        """Querying never moves a story."""
        board.can_transition("S4", StoryState.DONE)
        assert ids(board, StoryState.IN_PROGRESS) == ["S4"]

    def test_current_stories(self, board):
        """The single TODO and IN_PROGRESS stories are returned."""
        assert board.current_todo().id == "S3"
        assert board.current_in_progress().id == "S4"
