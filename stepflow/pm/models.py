"""
Data models for the story status document.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional


class StoryState(str, Enum):
    """The four buckets of the status document, in board order."""
    BACKLOG = "BACKLOG"
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


# Buckets with a work-in-progress cap
WIP_LIMITS = {
    StoryState.TODO: 1,
    StoryState.IN_PROGRESS: 1,
}


def parse_state(value: "str | StoryState") -> StoryState | None:
    """Parse "TODO", "in progress", "IN_PROGRESS", ... into a StoryState.

    Returns None if the value names no state.
    """
    if isinstance(value, StoryState):
        return value
    normalized = str(value).strip().upper().replace(" ", "_").replace("-", "_")
    for state in StoryState:
        if state.value == normalized:
            return state
    return None


@dataclass(frozen=True)
class Story:
    """One entry of the status document."""
    id: str                                    # STORY-001
    title: str
    state: StoryState
    points: Optional[int] = None
    milestone: Optional[str] = None            # ### heading the story was listed under


@dataclass(frozen=True)
class StatusDocument:
    """Four ordered story lists, one per state. Operations return new documents."""
    backlog: tuple[Story, ...] = ()
    todo: tuple[Story, ...] = ()
    in_progress: tuple[Story, ...] = ()
    done: tuple[Story, ...] = ()
    title: Optional[str] = None                # First "# " heading, kept on write

    def stories(self, state: StoryState) -> tuple[Story, ...]:
        return getattr(self, state.value.lower())

    def all_stories(self) -> list[Story]:
        return [story for state in StoryState for story in self.stories(state)]

    def find(self, story_id: str) -> Story | None:
        for story in self.all_stories():
            if story.id == story_id:
                return story
        return None

    def wip_violations(self) -> list[str]:
        """Human-readable WIP-limit violations. Empty if the document is valid."""
        errors = []
        for state, limit in WIP_LIMITS.items():
            count = len(self.stories(state))
            if count > limit:
                label = state.value.replace("_", " ")
                errors.append(f"Too many stories in {label}: {count} (expected {limit})")
        return errors

    def moved(self, story_id: str, target: StoryState) -> "StatusDocument":
        """A copy with the story removed from its list and appended to target's."""
        story = self.find(story_id)
        if story is None:
            raise KeyError(story_id)
        source_key = story.state.value.lower()
        target_key = target.value.lower()
        remaining = tuple(s for s in self.stories(story.state) if s.id != story_id)
        updated = replace(self, **{source_key: remaining})
        return replace(
            updated,
            **{target_key: updated.stories(target) + (replace(story, state=target),)},
        )


@dataclass
class ValidationReport:
    """Result of StoryStateMachine.validate(). Reports, never fixes."""
    valid: bool
    errors: list[str] = field(default_factory=list)
