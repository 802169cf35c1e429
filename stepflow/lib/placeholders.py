"""
Free-text placeholder substitution.

Messages, prompts and output paths reference workflow variables as
{{name}}. The single-brace {name} form from older definitions is still
resolved. Names with no bound variable are left untouched.
"""

import json
import re
from typing import Any

DOUBLE_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][\w-]*)\s*\}\}")
SINGLE_PATTERN = re.compile(r"(?<!\{)\{([A-Za-z_][\w-]*)\}(?!\})")


def stringify(value: Any) -> str:
    """Render a variable value for free text."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def resolve_placeholders(text: str, variables: dict[str, Any]) -> str:
    """Replace {{name}} and {name} with the stringified variable value."""

    def _sub(match: re.Match) -> str:
        name = match.group(1)
        if name not in variables:
            return match.group(0)
        return stringify(variables[name])

    result = DOUBLE_PATTERN.sub(_sub, text)
    return SINGLE_PATTERN.sub(_sub, result)

