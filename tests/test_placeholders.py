"""Tests for stepflow.lib.placeholders module."""

from stepflow.lib.placeholders import resolve_placeholders, stringify


class TestResolvePlaceholders:
    """Free-text substitution."""

    def test_double_brace(self):
        """{{NAME}} is replaced by its value."""
        assert resolve_placeholders("Hi {{NAME}}!", {"NAME": "Ada"}) == "Hi Ada!"

    def test_double_brace_with_spaces(self):
        """Whitespace inside the braces is allowed."""
        assert resolve_placeholders("{{ NAME }}", {"NAME": "Ada"}) == "Ada"

    def test_legacy_single_brace(self):
        """{name} is replaced as well."""
        assert resolve_placeholders("docs/{project}.md", {"project": "x"}) == "docs/x.md"

    def test_unknown_names_left_intact(self):
        """Unknown names stay as written."""
        text = "{{MISSING}} and {missing}"
        assert resolve_placeholders(text, {}) == text

    def test_stringify(self):
        """Values render in their JSON spelling."""
        assert stringify(None) == "null"
        assert stringify(True) == "true"
        assert stringify({"a": 1}) == '{"a": 1}'
        assert stringify(3) == "3"
