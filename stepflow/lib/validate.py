"""
Schema validation for stepflow.

Enforces JSON Schema validation at the data boundaries: workflow
definitions on load and state records before they are written.
Fails hard with clear errors when data doesn't match schema.
"""

import json
from pathlib import Path
from typing import Any

import jsonschema

from stepflow.lib.errors import StepflowError


class ValidationError(StepflowError):
    """Schema validation failed."""

    def __init__(self, schema_name: str, message: str, path: str = None):
        self.schema_name = schema_name
        self.path = path
        self.message = message
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


# Cache loaded schemas
_schema_cache: dict[str, dict] = {}


def _get_schemas_dir() -> Path:
    """Get path to schemas directory."""
    return Path(__file__).parent.parent / "schemas"


def _load_schema(schema_name: str) -> dict:
    """Load schema by name, with caching."""
    if schema_name not in _schema_cache:
        schema_path = _get_schemas_dir() / f"{schema_name}.schema.json"
        if not schema_path.exists():
            raise ValidationError(schema_name, f"Schema file not found: {schema_path}")
        _schema_cache[schema_name] = json.loads(schema_path.read_text())
    return _schema_cache[schema_name]


def _format_path(parts) -> str:
    """Render a jsonschema path deque as steps[0].prompt"""
    out = ""
    for part in parts:
        if isinstance(part, int):
            out += f"[{part}]"
        else:
            out += f".{part}" if out else str(part)
    return out


def validate(data: Any, schema_name: str) -> None:
    """
    Validate data against named schema.

    Args:
        data: Document to validate
        schema_name: Schema name (e.g., "workflow", "state")

    Raises:
        ValidationError: If validation fails
    """
    schema = _load_schema(schema_name)

    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as e:
        path = _format_path(e.absolute_path) if e.absolute_path else "(root)"
        # Name the missing property rather than its parent object
        if e.validator == "required" and isinstance(e.validator_value, list):
            missing = [p for p in e.validator_value if isinstance(e.instance, dict) and p not in e.instance]
            if missing:
                path = missing[0] if path == "(root)" else f"{path}.{missing[0]}"
        raise ValidationError(schema_name, e.message, path) from None


def validate_before_write(data: dict, schema_name: str, filepath: Path | str) -> None:
    """
    Validate data before writing to file. Ensures we never write invalid data.

    Raises:
        ValidationError: If data doesn't match schema
    """
    try:
        validate(data, schema_name)
    except ValidationError as e:
        raise ValidationError(
            schema_name,
            f"Refusing to write invalid data to {filepath}: {e}"
        ) from None
