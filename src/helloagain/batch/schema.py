# src/helloagain/batch/schema.py
"""Strict-mode response schema checks.

Structured output in strict mode is all-or-nothing: the remote rejects the
whole batch if any object node in the schema allows extra keys or leaves a
property optional. The rule checked here, at every object node reachable
from the root:

- ``properties`` is present
- ``required`` lists exactly the keys of ``properties`` (order-insensitive)
- ``additionalProperties`` is literally ``False``

Optional values are expressed as nullable leaves (``["string", "null"]``),
never by leaving a key out of ``required``.

Paths name nodes from ``root``: ``root.loc`` for a property,
``root.tags[items]`` for array items, ``root.value[anyOf:1]`` for a union
branch and ``root.$defs.Address`` for a definition.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from helloagain.contracts.errors import SchemaInvalid, SchemaViolation

ROOT_PATH = "root"


def _nullable(kind: str) -> list[str]:
    return [kind, "null"]


PROFILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "loc": {
            "type": "object",
            "properties": {
                "city": {"type": _nullable("string")},
                "country": {"type": _nullable("string")},
                "lat": {"type": _nullable("number")},
                "lng": {"type": _nullable("number")},
            },
            "required": ["city", "country", "lat", "lng"],
            "additionalProperties": False,
        },
        "stats": {
            "type": "object",
            "properties": {
                "conn": {"type": _nullable("integer")},
                "foll": {"type": _nullable("integer")},
            },
            "required": ["conn", "foll"],
            "additionalProperties": False,
        },
    },
    "required": ["loc", "stats"],
    "additionalProperties": False,
}


def _is_object_node(node: Mapping[str, Any]) -> bool:
    kind = node.get("type")
    if kind == "object":
        return True
    if isinstance(kind, list) and "object" in kind:
        return True
    return "properties" in node


def _check_object(node: Mapping[str, Any], path: str, violations: list[SchemaViolation]) -> None:
    properties = node.get("properties")
    if not isinstance(properties, Mapping):
        violations.append(SchemaViolation(path, "object node must declare 'properties'"))
        property_keys: set[str] = set()
    else:
        property_keys = set(properties)

    required = node.get("required")
    if not isinstance(required, list):
        violations.append(SchemaViolation(path, "object node must declare 'required' as a list"))
    elif set(required) != property_keys:
        missing = sorted(property_keys - set(required))
        extra = sorted(set(required) - property_keys)
        details = []
        if missing:
            details.append(f"not required: {missing}")
        if extra:
            details.append(f"required but not declared: {extra}")
        violations.append(SchemaViolation(path, f"'required' must list every property ({'; '.join(details)})"))

    if node.get("additionalProperties") is not False:
        violations.append(SchemaViolation(path, "'additionalProperties' must be false"))


def _walk(node: Any, path: str, violations: list[SchemaViolation]) -> None:
    if not isinstance(node, Mapping):
        violations.append(SchemaViolation(path, f"schema node must be an object, got {type(node).__name__}"))
        return

    if _is_object_node(node):
        _check_object(node, path, violations)

    properties = node.get("properties")
    if isinstance(properties, Mapping):
        for name, child in properties.items():
            _walk(child, f"{path}.{name}", violations)

    items = node.get("items")
    if items is not None:
        if isinstance(items, list):
            for index, child in enumerate(items):
                _walk(child, f"{path}[items:{index}]", violations)
        else:
            _walk(items, f"{path}[items]", violations)

    for keyword in ("anyOf", "oneOf"):
        branches = node.get(keyword)
        if isinstance(branches, list):
            for index, child in enumerate(branches):
                _walk(child, f"{path}[{keyword}:{index}]", violations)

    definitions = node.get("$defs")
    if isinstance(definitions, Mapping):
        for name, child in definitions.items():
            _walk(child, f"{path}.$defs.{name}", violations)


def validate_strict_schema(schema: Any) -> list[SchemaViolation]:
    """Every strict-mode violation in schema, in traversal order.

    An empty list means the schema is compliant.
    """
    violations: list[SchemaViolation] = []
    if isinstance(schema, Mapping) and not _is_object_node(schema):
        violations.append(SchemaViolation(ROOT_PATH, "top-level node must be an object"))
    _walk(schema, ROOT_PATH, violations)
    return violations


def ensure_strict_schema(schema: Any) -> None:
    """Raise SchemaInvalid listing every violation, if there are any."""
    violations = validate_strict_schema(schema)
    if violations:
        raise SchemaInvalid(violations)
