"""Story state machine using transitions library.

Stories move between four buckets along exactly four edges:

    BACKLOG --plan--> TODO --start--> IN_PROGRESS --finish--> DONE
    BACKLOG <--defer-- TODO

TODO and IN_PROGRESS hold at most one story each. The limit is a guard on
the edges into those buckets, so a transition into a full bucket is
refused by the FSM itself.

Usage:
    from stepflow.pm.state_machine import StoryStateMachine

    machine = StoryStateMachine(storage, Path("docs/workflow-status.md"))
    machine.load()
    machine.transition("STORY-003", StoryState.IN_PROGRESS)
"""

import logging
from pathlib import Path

from transitions import Machine

from stepflow.lib.errors import StepflowError
from stepflow.lib.storage import Storage
from stepflow.pm.document import parse_status_document, render_status_document
from stepflow.pm.models import (
    WIP_LIMITS,
    StatusDocument,
    Story,
    StoryState,
    ValidationReport,
    parse_state,
)

logger = logging.getLogger(__name__)


STATES = [state.value for state in StoryState]

TRANSITIONS = [
    {"trigger": "plan", "source": "BACKLOG", "dest": "TODO", "conditions": "todo_has_room"},
    {"trigger": "defer", "source": "TODO", "dest": "BACKLOG"},
    {"trigger": "start", "source": "TODO", "dest": "IN_PROGRESS", "conditions": "in_progress_has_room"},
    {"trigger": "finish", "source": "IN_PROGRESS", "dest": "DONE"},
]


def _build_trigger_lookup() -> dict[tuple[str, str], str]:
    """Build lookup from (source, dest) -> trigger name."""
    lookup: dict[tuple[str, str], str] = {}
    for t in TRANSITIONS:
        key = (t["source"], t["dest"])
        if key not in lookup:
            lookup[key] = t["trigger"]
    return lookup


TRIGGER_FOR = _build_trigger_lookup()


class TransitionError(StepflowError):
    """A story transition was refused. The document is left unchanged."""
    pass


class UnknownStoryError(TransitionError):
    def __init__(self, story_id: str):
        self.story_id = story_id
        super().__init__(f"Story not found: {story_id}")


class DisallowedTransitionError(TransitionError):
    def __init__(self, story_id: str, source: str, target: str):
        self.story_id = story_id
        self.source = source
        self.target = target
        super().__init__(f"Invalid transition: {source} -> {target} for story {story_id}")


class WipLimitExceeded(TransitionError):
    def __init__(self, state: StoryState, limit: int):
        self.state = state
        self.limit = limit
        super().__init__(f"Cannot move to {state.value}: already has {limit} story")


class StatusDocumentError(StepflowError):
    """The status document could not be read or written."""
    pass


class StoryFSM:
    """FSM for one story, guarded by the WIP counts of a document."""

    def __init__(self, story: Story, document: StatusDocument):
        self.story = story
        self.document = document
        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=story.state.value,
            auto_transitions=False,  # Only explicit transitions
        )

    def _has_room(self, state: StoryState) -> bool:
        return len(self.document.stories(state)) < WIP_LIMITS[state]

    def todo_has_room(self) -> bool:
        return self._has_room(StoryState.TODO)

    def in_progress_has_room(self) -> bool:
        return self._has_room(StoryState.IN_PROGRESS)


class StoryStateMachine:
    """Loads, validates and mutates one status document."""

    def __init__(self, storage: Storage, path: Path | str):
        self.storage = storage
        self.path = Path(path)
        self.document = StatusDocument()

    def load(self) -> StatusDocument:
        """Read the document. A missing file loads as an empty board.

        Raises:
            StatusDocumentError: if the file exists but can't be read
        """
        if not self.storage.exists(self.path):
            logger.debug(f"[STORY] No status document at {self.path}, starting empty")
            self.document = StatusDocument()
            return self.document
        try:
            text = self.storage.read_text(self.path)
        except OSError as e:
            raise StatusDocumentError(f"Failed to load status file {self.path}: {e}") from e
        self.document = parse_status_document(text)
        return self.document

    def validate(self) -> ValidationReport:
        errors = self.document.wip_violations()
        return ValidationReport(valid=not errors, errors=errors)

    def _target(self, story_id: str, target: "StoryState | str") -> StoryState:
        state = parse_state(target)
        if state is None:
            story = self.document.find(story_id)
            source = story.state.value if story else "?"
            raise DisallowedTransitionError(story_id, source, str(target))
        return state

    def can_transition(self, story_id: str, target: "StoryState | str") -> bool:
        """True if the story exists, the edge is allowed, and the target has room."""
        story = self.document.find(story_id)
        state = parse_state(target)
        if story is None or state is None:
            return False
        trigger = TRIGGER_FOR.get((story.state.value, state.value))
        if trigger is None:
            return False
        return StoryFSM(story, self.document).may_trigger(trigger)

    def transition(self, story_id: str, target: "StoryState | str") -> Story:
        """Move a story and persist the document.

        Raises:
            UnknownStoryError, DisallowedTransitionError, WipLimitExceeded:
                the move is refused
            TransitionError: the resulting document can't be written
        """
        story = self.document.find(story_id)
        if story is None:
            raise UnknownStoryError(story_id)
        state = self._target(story_id, target)

        trigger = TRIGGER_FOR.get((story.state.value, state.value))
        if trigger is None:
            raise DisallowedTransitionError(story_id, story.state.value, state.value)

        fsm = StoryFSM(story, self.document)
        if not fsm.trigger(trigger):
            raise WipLimitExceeded(state, WIP_LIMITS[state])

        updated = self.document.moved(story_id, state)
        violations = updated.wip_violations()
        if violations:
            raise TransitionError(f"Refusing to write invalid status document: {', '.join(violations)}")

        try:
            self.storage.write_text(self.path, render_status_document(updated))
        except OSError as e:
            raise TransitionError(f"Failed to save status file {self.path}: {e}") from e

        self.document = updated
        moved = updated.find(story_id)
        logger.info(f"[STORY] {story_id}: {story.state.value} -> {state.value} ({trigger})")
        return moved

    def current_todo(self) -> Story | None:
        return next(iter(self.document.todo), None)

    def current_in_progress(self) -> Story | None:
        return next(iter(self.document.in_progress), None)
