"""Tests for stepflow.pm.document module."""

from datetime import date

from stepflow.pm.document import format_story, parse_status_document, render_status_document
from stepflow.pm.models import StatusDocument, Story, StoryState, parse_state


SAMPLE = """# Project Status

**Last Updated:** 2024-01-01

---

## BACKLOG

### Milestone 1

- [STORY-001] Set up project [Points: 3]
- [STORY-002] Login page

### Milestone 2

* [STORY-003] Reports

## TODO

Story ready for drafting (only ONE at a time):

- [STORY-004] Signup form [points: 2]

## IN PROGRESS

(Empty)

## DONE

- [STORY-000] Repository bootstrap [Points: 1]

## NOTES

- [X-1] Not a story section
"""


class TestParseState:

    def test_spellings(self):
        """Case, spaces and dashes are normalized."""
        assert parse_state("in progress") == StoryState.IN_PROGRESS
        assert parse_state("IN-PROGRESS") == StoryState.IN_PROGRESS
        assert parse_state(" todo ") == StoryState.TODO
        assert parse_state(StoryState.DONE) == StoryState.DONE

    def test_unknown(self):
        """Unknown state names give None."""
        assert parse_state("archived") is None


class TestParse:

    def test_sections(self):
        """Stories land in the section they are listed under."""
        doc = parse_status_document(SAMPLE)
        assert [s.id for s in doc.backlog] == ["STORY-001", "STORY-002", "STORY-003"]
        assert [s.id for s in doc.todo] == ["STORY-004"]
        assert doc.in_progress == ()
        assert [s.id for s in doc.done] == ["STORY-000"]
        assert doc.title == "Project Status"

    def test_points_and_milestones(self):
        """Points and ### milestone headings are captured."""
        doc = parse_status_document(SAMPLE)
        first, second, third = doc.backlog
        assert first.points == 3 and first.title == "Set up project"
        assert second.points is None
        assert first.milestone == "Milestone 1"
        assert third.milestone == "Milestone 2"
        assert doc.todo[0].points == 2

    def test_unknown_section_ignored(self):
        """Items under other headings are not stories."""
        doc = parse_status_document(SAMPLE)
        assert doc.find("X-1") is None

    def test_story_state_matches_section(self):
        """Each story's state is its section."""
        doc = parse_status_document(SAMPLE)
        assert all(s.state == StoryState.BACKLOG for s in doc.backlog)

    def test_empty_text(self):
        """An empty document has no stories."""
        assert parse_status_document("").all_stories() == []


class TestRender:

    def test_layout(self):
        """Title, date, section order and placeholders."""
        doc = StatusDocument(
            todo=(Story("S1", "Do it", StoryState.TODO, points=2),),
            title="Board",
        )
        text = render_status_document(doc, today=date(2024, 5, 1))
        assert text.startswith("# Board\n\n**Last Updated:** 2024-05-01\n")
        assert "## IN PROGRESS\n\nStory being implemented (only ONE at a time):\n\n(Empty)" in text
        assert "- [S1] Do it [Points: 2]" in text
        assert text.index("## BACKLOG") < text.index("## TODO") < text.index("## IN PROGRESS") < text.index("## DONE")

    def test_default_title(self):
        """Untitled documents get the default heading."""
        assert render_status_document(StatusDocument()).startswith("# Workflow Status")

    def test_milestones_rendered(self):
        """Milestone headings precede their stories."""
        doc = StatusDocument(backlog=(
            Story("A", "a", StoryState.BACKLOG, milestone="M1"),
            Story("B", "b", StoryState.BACKLOG, milestone="M2"),
        ))
        text = render_status_document(doc)
        assert text.index("### M1") < text.index("- [A] a") < text.index("### M2") < text.index("- [B] b")

    def test_reparse_keeps_stories(self):
        """Rendering then parsing keeps every story."""
        doc = parse_status_document(SAMPLE)
        again = parse_status_document(render_status_document(doc))
        assert again.all_stories() == doc.all_stories()
        assert again.title == doc.title

    def test_format_story(self):
        """Stories without points have no suffix."""
        assert format_story(Story("S", "Title", StoryState.DONE)) == "- [S] Title"
