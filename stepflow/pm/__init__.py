"""
PM (Project Management) module for stepflow.

Parses the story status document and moves stories between BACKLOG,
TODO, IN_PROGRESS and DONE under work-in-progress limits.
"""

from stepflow.pm.models import Story, StoryState, StatusDocument
from stepflow.pm.document import parse_status_document, render_status_document
from stepflow.pm.state_machine import (
    StoryStateMachine,
    TransitionError,
    UnknownStoryError,
    DisallowedTransitionError,
    WipLimitExceeded,
)

__all__ = [
    "Story",
    "StoryState",
    "StatusDocument",
    "parse_status_document",
    "render_status_document",
    "StoryStateMachine",
    "TransitionError",
    "UnknownStoryError",
    "DisallowedTransitionError",
    "WipLimitExceeded",
]
