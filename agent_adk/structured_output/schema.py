"""
Declared output schemas for structured agent responses.

A small tree of schema nodes (object / array / string / number / boolean /
enum) with per-node nullable flags. Nodes convert to and from Draft-07 JSON
Schema so the same declaration can be sent to providers and validated locally.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator, SchemaError

from agent_adk.exceptions import AgentConfigurationException


@dataclass
class Schema:
    name: str
    description: str = ""
    nullable: bool = False

    def _type_json(self, base: Dict[str, Any]) -> Dict[str, Any]:
        if self.description:
            base["description"] = self.description
        if self.nullable:
            base["type"] = [base["type"], "null"]
        return base

    def to_json_schema(self) -> Dict[str, Any]:  # pragma: no cover - interface only
        raise NotImplementedError


@dataclass
class StringSchema(Schema):
    def to_json_schema(self) -> Dict[str, Any]:
        return self._type_json({"type": "string"})


@dataclass
class NumberSchema(Schema):
    def to_json_schema(self) -> Dict[str, Any]:
        return self._type_json({"type": "number"})


@dataclass
class BooleanSchema(Schema):
    def to_json_schema(self) -> Dict[str, Any]:
        return self._type_json({"type": "boolean"})


@dataclass
class EnumSchema(Schema):
    options: List[Any] = field(default_factory=list)

    def to_json_schema(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"enum": list(self.options) + ([None] if self.nullable else [])}
        if self.description:
            out["description"] = self.description
        return out


@dataclass
class ArraySchema(Schema):
    items: Optional[Schema] = None

    def to_json_schema(self) -> Dict[str, Any]:
        base: Dict[str, Any] = {"type": "array"}
        if self.items is not None:
            base["items"] = self.items.to_json_schema()
        return self._type_json(base)


@dataclass
class ObjectSchema(Schema):
    properties: List[Schema] = field(default_factory=list)
    required_fields: List[str] = field(default_factory=list)

    def to_json_schema(self) -> Dict[str, Any]:
        base: Dict[str, Any] = {
            "type": "object",
            "properties": {prop.name: prop.to_json_schema() for prop in self.properties},
        }
        if self.required_fields:
            base["required"] = list(self.required_fields)
        return self._type_json(base)


def _split_type(raw: Dict[str, Any]) -> tuple:
    declared = raw.get("type")
    nullable = bool(raw.get("nullable", False))
    if isinstance(declared, list):
        nullable = nullable or "null" in declared
        remaining = [t for t in declared if t != "null"]
        declared = remaining[0] if remaining else None
    return declared, nullable


def _from_node(raw: Dict[str, Any], name: str) -> Schema:
    description = str(raw.get("description", ""))
    declared, nullable = _split_type(raw)

    if "enum" in raw:
        options = [o for o in raw["enum"] if o is not None]
        nullable = nullable or None in raw["enum"]
        return EnumSchema(name=name, description=description, nullable=nullable, options=options)

    if declared == "object" or (declared is None and "properties" in raw):
        props = raw.get("properties") or {}
        return ObjectSchema(
            name=name,
            description=description,
            nullable=nullable,
            properties=[_from_node(sub, prop_name) for prop_name, sub in props.items()],
            required_fields=list(raw.get("required") or []),
        )
    if declared == "array":
        items = raw.get("items")
        return ArraySchema(
            name=name,
            description=description,
            nullable=nullable,
            items=_from_node(items, "item") if isinstance(items, dict) else None,
        )
    if declared in ("number", "integer"):
        return NumberSchema(name=name, description=description, nullable=nullable)
    if declared == "boolean":
        return BooleanSchema(name=name, description=description, nullable=nullable)
    if declared == "string":
        return StringSchema(name=name, description=description, nullable=nullable)
    raise AgentConfigurationException(f"Unsupported schema type for '{name}': {raw.get('type')!r}")


def from_json_schema(raw: Dict[str, Any], name: str = "response") -> Schema:
    """Build a schema tree from a Draft-07 JSON Schema mapping."""
    try:
        Draft7Validator.check_schema(raw)
    except SchemaError as exc:
        raise AgentConfigurationException(f"Invalid JSON schema '{name}': {exc.message}") from exc
    return _from_node(raw, name)
