"""
Collaborator contracts consumed by the executor.

The engine does not render templates, call models, or ask humans for
input itself. Drivers inject implementations of the protocols below via
ExecutionServices. FileTemplateRenderer and MappingInputProvider are the
stock implementations the CLI uses.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol

from stepflow.lib.placeholders import resolve_placeholders
from stepflow.lib.storage import Storage
from stepflow.workflow.persistence import StateStore

logger = logging.getLogger(__name__)


class TemplateRenderer(Protocol):
    """Renders a named template with variables and returns the text."""

    def render(self, template: str, variables: dict[str, Any]) -> str: ...


class TextGenerator(Protocol):
    """Generates text from a prompt (an LLM, typically)."""

    def generate(self, prompt: str, model: str | None = None, **params: Any) -> str: ...


class InputProvider(Protocol):
    """Supplies a value for an elicit step, or None if none is available yet."""

    def request(self, prompt: str, validation: str | None = None, variable: str | None = None) -> Any: ...


# Pattern to strip HTML comments (including multiline)
_HTML_COMMENT_PATTERN = re.compile(r"<!--.*?-->\s*", re.DOTALL)


class FileTemplateRenderer:
    """Loads template files through a Storage and fills {{name}} placeholders.

    HTML comments are stripped before rendering, so templates can carry
    author notes that never reach the output.
    """

    def __init__(self, storage: Storage, base_dir: Path | None = None):
        self.storage = storage
        self.base_dir = base_dir

    def render(self, template: str, variables: dict[str, Any]) -> str:
        path = Path(template)
        if self.base_dir is not None and not path.is_absolute():
            path = self.base_dir / path
        logger.debug(f"Rendering template: {path}")
        content = self.storage.read_text(path)
        content = _HTML_COMMENT_PATTERN.sub("", content)
        return resolve_placeholders(content, variables)


class MappingInputProvider:
    """Answers elicit steps from a fixed mapping.

    Looks the answer up by the step's variable name first, then by the
    prompt text. Returns None when there is no answer.
    """

    def __init__(self, answers: dict[str, Any] | None = None):
        self.answers = dict(answers or {})

    def request(self, prompt: str, validation: str | None = None, variable: str | None = None) -> Any:
        if variable and variable in self.answers:
            return self.answers[variable]
        return self.answers.get(prompt)


def _log_output(text: str) -> None:
    logger.info(text)


@dataclass
class ExecutionServices:
    """Everything an executor needs besides its workflow.

    One instance is shared by a root executor and every child it spawns.
    """
    storage: Storage
    store: StateStore
    renderer: TemplateRenderer | None = None
    generator: TextGenerator | None = None
    input_provider: InputProvider | None = None
    output: Callable[[str], None] = field(default=_log_output)  # Sink for display/guide text
    base_dir: Path = field(default_factory=Path.cwd)  # Base for relative workflow paths
    status_file: Path | None = None  # Default story status document
    max_depth: int = 10

    def resolve_path(self, path: str | Path) -> Path:
        """Resolve a workflow or document path against base_dir."""
        path = Path(path)
        if not path.is_absolute():
            path = self.base_dir / path
        return path.resolve()
