"""Translate JSON-schema tool parameters into pydantic validation models."""

import re
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, create_model

_TYPE_MAP: dict[str, Any] = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
    "array": list[Any],
    "object": dict[str, Any],
}

_UNSAFE_NAME_RE = re.compile(r"[^0-9a-zA-Z_]")


class ToolInput(BaseModel):
    """Base for generated tool input models."""

    model_config = ConfigDict(extra="allow")


def python_type_for(prop: Any) -> Any:
    """Map one property schema to a Python type; unknown or composite types accept anything."""
    if not isinstance(prop, dict):
        return Any
    return _TYPE_MAP.get(prop.get("type"), Any) if isinstance(prop.get("type"), str) else Any


def _model_name(name: str) -> str:
    cleaned = _UNSAFE_NAME_RE.sub("_", name or "tool").strip("_") or "tool"
    return f"{cleaned}_input"


def model_from_schema(name: str, schema: Any) -> type[ToolInput]:
    """Build an input model for `schema`.

    Properties keep their original names as aliases, so keys that are not
    valid Python identifiers still validate. A property is optional unless
    listed in `required`.
    """
    properties = schema.get("properties") if isinstance(schema, dict) else None
    if not isinstance(properties, dict):
        properties = {}
    required_raw = schema.get("required") if isinstance(schema, dict) else None
    required = {str(item) for item in required_raw} if isinstance(required_raw, list) else set()

    fields: dict[str, Any] = {}
    for index, (prop_name, prop) in enumerate(properties.items()):
        annotation = python_type_for(prop)
        description = prop.get("description") if isinstance(prop, dict) else None
        field_name = f"field_{index}"
        if prop_name in required:
            fields[field_name] = (annotation, Field(..., alias=prop_name, description=description))
        else:
            fields[field_name] = (Optional[annotation], Field(None, alias=prop_name, description=description))

    return create_model(_model_name(name), __base__=ToolInput, **fields)


def validate_arguments(model: type[ToolInput], arguments: dict[str, Any] | None) -> dict[str, Any]:
    """Validate `arguments` and return them keyed by their original names.

    Optional properties the caller omitted are left out so tool defaults apply.
    """
    validated = model.model_validate(arguments or {})
    return validated.model_dump(by_alias=True, exclude_unset=True)
