"""
Schema validation at data boundaries.

Workflow definition files (and anything else read from disk that callers do
not control) are checked against a JSON Schema before they are used.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Any

import jsonschema


class SchemaValidationError(Exception):
    """Schema validation failed."""

    def __init__(self, schema_name: str, message: str, path: str | None = None):
        self.schema_name = schema_name
        self.path = path
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


def _get_schemas_dir() -> Path:
    return Path(__file__).parent.parent / "schemas"


@lru_cache(maxsize=None)
def load_schema(schema_name: str) -> dict:
    """Load schema by name, with caching."""
    schema_path = _get_schemas_dir() / f"{schema_name}.schema.json"
    if not schema_path.exists():
        raise SchemaValidationError(schema_name, f"Schema file not found: {schema_path}")
    return json.loads(schema_path.read_text())


def validate(data: Any, schema_name: str) -> None:
    """
    Validate data against named schema.

    Raises:
        SchemaValidationError: If validation fails
    """
    schema = load_schema(schema_name)

    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as e:
        path = ".".join(str(p) for p in e.absolute_path) if e.absolute_path else "(root)"
        raise SchemaValidationError(schema_name, e.message, path) from None


def validate_file(filepath: Path, schema_name: str) -> dict:
    """
    Load JSON file and validate against schema.

    Returns:
        Parsed and validated data

    Raises:
        SchemaValidationError: If file is unreadable, not JSON, or doesn't match
    """
    try:
        text = filepath.read_text()
    except OSError as e:
        raise SchemaValidationError(schema_name, f"Cannot read {filepath}: {e}") from None

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise SchemaValidationError(schema_name, f"Invalid JSON in {filepath}: {e}") from None

    validate(data, schema_name)
    return data
