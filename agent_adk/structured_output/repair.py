from __future__ import annotations

import json
from typing import Any, Dict, List

from agent_adk.structured_output.schema import Schema
from agent_adk.structured_output.validator import ValidationError

_SECTIONS = (
    ("required", "## Missing Required Fields"),
    ("type", "## Incorrect Types"),
    ("enum", "## Invalid Enum Values"),
)


def build_repair_prompt(errors: List[ValidationError], schema: Schema, previous_data: Any = None) -> str:
    """
    Build the follow-up prompt sent after an invalid structured response.

    Errors are grouped by kind so the model sees every field it has to fix.
    """
    grouped: Dict[str, List[ValidationError]] = {}
    for error in errors:
        grouped.setdefault(error.type, []).append(error)

    lines = ["Your previous response did not match the required schema. Please fix the following issues:", ""]

    for kind, heading in _SECTIONS:
        if not grouped.get(kind):
            continue
        lines.append(heading)
        for error in grouped[kind]:
            if kind == "required":
                lines.append(f"- `{error.field}` is required but was not provided")
            else:
                lines.append(f"- `{error.field}`: {error.message}")
        lines.append("")

    other = [e for kind, errs in grouped.items() if kind not in {"required", "type", "enum"} for e in errs]
    if other:
        lines.append("## Other Issues")
        lines.extend(f"- `{e.field}`: {e.message}" for e in other)
        lines.append("")

    if previous_data is not None:
        lines.append("Previous response:")
        lines.append(json.dumps(previous_data, default=str) if not isinstance(previous_data, str) else previous_data)
        lines.append("")

    lines.append("Please provide a complete response that:")
    lines.append("1. Includes ALL required fields")
    lines.append("2. Uses the correct data types for each field")
    lines.append("3. Uses valid enum values where specified")
    lines.append("")
    lines.append("Respond with valid JSON matching the schema:")
    lines.append(json.dumps(schema.to_json_schema(), indent=2, sort_keys=True))
    return "\n".join(lines)
