"""JSON Schema utilities for tool parameters."""

from typing import Any

from jsonschema import Draft7Validator

from shared.models import ToolParameters


def validate_schema(data: Any, schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate data against a JSON Schema.

    Args:
        data: The data to validate
        schema: JSON Schema to validate against

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    if not schema:
        return True, []

    validator = Draft7Validator(schema)
    errors = list(validator.iter_errors(data))

    if not errors:
        return True, []

    error_messages = [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]

    return False, error_messages


def schema_for(record: type[ToolParameters]) -> dict[str, Any]:
    """
    Build the input JSON Schema for a tool from its parameter record.

    The variant tag is an implementation detail and is removed so the model
    only sees real parameters.
    """
    raw = record.model_json_schema()
    properties = {
        name: {key: value for key, value in spec.items() if key != "title"}
        for name, spec in raw.get("properties", {}).items()
        if name != "tool"
    }

    schema: dict[str, Any] = {
        "type": "object",
        "properties": properties,
        "required": [name for name in raw.get("required", []) if name != "tool"],
        "additionalProperties": False,
    }
    return schema


def _type_label(spec: dict[str, Any]) -> str:
    if "type" in spec:
        return spec["type"]
    if "enum" in spec:
        return "|".join(str(v) for v in spec["enum"])
    variants = [s.get("type") for s in spec.get("anyOf", []) if s.get("type") != "null"]
    return "|".join(v for v in variants if v) or "any"


def describe_parameters(schema: dict[str, Any]) -> list[str]:
    """Render schema properties as prompt lines: ``name (type, required): description``."""
    required = set(schema.get("required", []))
    lines = []
    for name, spec in schema.get("properties", {}).items():
        flag = "required" if name in required else "optional"
        line = f"{name} ({_type_label(spec)}, {flag})"
        if spec.get("description"):
            line += f": {spec['description']}"
        if "default" in spec and spec["default"] is not None:
            line += f" (default {spec['default']})"
        lines.append(line)
    return lines
