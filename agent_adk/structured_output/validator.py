"""
Validate decoded data against a schema tree with jsonschema's Draft7Validator.

Error kinds: `required`, `type`, `enum`. Field paths use dotted notation for
nested objects and `name[index]` for array elements.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Set, Tuple

from jsonschema import Draft7Validator
from jsonschema.exceptions import ValidationError as SchemaViolation

from agent_adk.structured_output.schema import Schema


@dataclass
class ValidationError:
    field: str
    type: str
    message: str
    expected: Any = None
    actual: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "type": self.type,
            "message": self.message,
            "expected": self.expected,
            "actual": self.actual,
        }


@dataclass
class ValidationResult:
    valid: bool
    errors: List[ValidationError] = field(default_factory=list)

    @classmethod
    def success(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> "ValidationResult":
        return cls(valid=False, errors=list(errors))

    def is_valid(self) -> bool:
        return self.valid

    @property
    def messages(self) -> List[str]:
        return [f"{e.field}: {e.message}" for e in self.errors]

    def errors_by_field(self) -> Dict[str, List[ValidationError]]:
        grouped: Dict[str, List[ValidationError]] = {}
        for error in self.errors:
            grouped.setdefault(error.field, []).append(error)
        return grouped

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": [e.to_dict() for e in self.errors]}



def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    return type(value).__name__


def _field_path(parts: Any, root: str) -> str:
    path = ""
    for part in parts:
        if isinstance(part, int):
            path = f"{path or root}[{part}]"
        else:
            path = f"{path}.{part}" if path else str(part)
    return path


def _expected_type(declared: Any) -> str:
    if isinstance(declared, list):
        declared = [t for t in declared if t != "null"] or declared
        return str(declared[0])
    return str(declared)


def _convert(err: SchemaViolation, root: str, seen_required: Set[Tuple[Any, ...]]) -> List[ValidationError]:
    path = _field_path(err.absolute_path, root)
    if err.validator == "required":
        # One error per missing property, reported once per object.
        key = tuple(err.absolute_path)
        if key in seen_required:
            return []
        seen_required.add(key)
        return [
            ValidationError(
                field=f"{path}.{name}" if path else name,
                type="required",
                message=f"Missing required field: {name}",
                expected="present",
                actual="missing",
            )
            for name in err.validator_value
            if isinstance(err.instance, dict) and name not in err.instance
        ]
    field_name = path or root
    if err.validator == "type":
        expected = _expected_type(err.validator_value)
        actual = _type_name(err.instance)
        return [ValidationError(field_name, "type", f"Expected {expected}, got {actual}", expected, actual)]
    if err.validator == "enum":
        options = [o for o in err.validator_value if o is not None]
        return [
            ValidationError(
                field_name,
                "enum",
                "Value must be one of: " + ", ".join(str(o) for o in options),
                expected=list(err.validator_value),
                actual=err.instance,
            )
        ]
    return [ValidationError(field_name, str(err.validator), err.message, err.validator_value, err.instance)]


def validate(data: Any, schema: Schema) -> ValidationResult:
    """Validate `data` against `schema`; never raises for bad data."""
    if data is None and schema.nullable:
        return ValidationResult.success()
    validator = Draft7Validator(schema.to_json_schema())
    errors: List[ValidationError] = []
    seen_required: Set[Tuple[Any, ...]] = set()
    for err in validator.iter_errors(data):
        errors.extend(_convert(err, schema.name, seen_required))
    return ValidationResult.failure(errors) if errors else ValidationResult.success()
