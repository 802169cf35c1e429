"""
Status document parsing and rendering.

The document is markdown with one `## ` section per state:

    ## BACKLOG
    ### Milestone 1
    - [STORY-001] Set up project [Points: 3]

    ## TODO
    - [STORY-002] Login page

    ## IN PROGRESS
    (Empty)

    ## DONE
    - [STORY-000] Repository bootstrap [Points: 1]

Lines outside story entries are ignored on parse and regenerated on render.
"""

import re
from datetime import date

from stepflow.pm.models import StatusDocument, Story, StoryState, parse_state

DEFAULT_TITLE = "Workflow Status"

_TITLE_PATTERN = re.compile(r"^#\s+(.+?)\s*$")
_SECTION_PATTERN = re.compile(r"^##\s+(.+?)\s*$")
_MILESTONE_PATTERN = re.compile(r"^###\s+(.+?)\s*$")
_STORY_PATTERN = re.compile(r"^[-*]\s*\[([^\]]+)\]\s*(.+?)\s*$")
_POINTS_PATTERN = re.compile(r"\s*\[Points:\s*(\d+)\]\s*$", re.IGNORECASE)

SECTION_NOTES = {
    StoryState.TODO: "Story ready for drafting (only ONE at a time):",
    StoryState.IN_PROGRESS: "Story being implemented (only ONE at a time):",
    StoryState.DONE: "Completed stories:",
}


def parse_status_document(text: str) -> StatusDocument:
    """Parse status document text. Unknown sections and stray lines are ignored."""
    buckets: dict[StoryState, list[Story]] = {state: [] for state in StoryState}
    title = None
    section: StoryState | None = None
    milestone = None

    for raw_line in text.splitlines():
        line = raw_line.strip()

        match = _SECTION_PATTERN.match(line)
        if match and not line.startswith("###"):
            section = parse_state(match.group(1))
            milestone = None
            continue

        match = _MILESTONE_PATTERN.match(line)
        if match:
            milestone = match.group(1)
            continue

        match = _TITLE_PATTERN.match(line)
        if match and title is None and not line.startswith("##"):
            title = match.group(1)
            continue

        if section is None:
            continue

        match = _STORY_PATTERN.match(line)
        if not match:
            continue

        rest = match.group(2)
        points = None
        points_match = _POINTS_PATTERN.search(rest)
        if points_match:
            points = int(points_match.group(1))
            rest = rest[:points_match.start()]

        buckets[section].append(Story(
            id=match.group(1).strip(),
            title=rest.strip(),
            state=section,
            points=points,
            milestone=milestone,
        ))

    return StatusDocument(
        backlog=tuple(buckets[StoryState.BACKLOG]),
        todo=tuple(buckets[StoryState.TODO]),
        in_progress=tuple(buckets[StoryState.IN_PROGRESS]),
        done=tuple(buckets[StoryState.DONE]),
        title=title,
    )


def format_story(story: Story) -> str:
    line = f"- [{story.id}] {story.title}"
    if story.points is not None:
        line += f" [Points: {story.points}]"
    return line


def _section_lines(stories: tuple[Story, ...]) -> list[str]:
    if not stories:
        return ["(Empty)", ""]

    lines = []
    current = None
    for story in stories:
        if story.milestone != current:
            if lines:
                lines.append("")
            if story.milestone:
                lines.extend([f"### {story.milestone}", ""])
            current = story.milestone
        lines.append(format_story(story))
    lines.append("")
    return lines


def render_status_document(document: StatusDocument, today: date | None = None) -> str:
    """Render a document back to markdown."""
    today = today or date.today()
    lines = [
        f"# {document.title or DEFAULT_TITLE}",
        "",
        f"**Last Updated:** {today.isoformat()}",
        "",
        "---",
        "",
    ]
    for i, state in enumerate(StoryState):
        lines.extend([f"## {state.value.replace('_', ' ')}", ""])
        if state in SECTION_NOTES:
            lines.extend([SECTION_NOTES[state], ""])
        lines.extend(_section_lines(document.stories(state)))
        if i < len(StoryState) - 1:
            lines.extend(["---", ""])
    return "\n".join(lines)
