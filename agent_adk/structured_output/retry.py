"""
Generate, validate, repair loop for structured output.

The generator is called with `None` first and then with a repair prompt for
each retry until the data validates or `max_retries` is exhausted.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from agent_adk.structured_output.repair import build_repair_prompt
from agent_adk.structured_output.schema import ArraySchema, ObjectSchema, Schema
from agent_adk.structured_output.validator import ValidationError, validate

logger = logging.getLogger("agent-adk")

Generator = Callable[[Optional[str]], Any]
_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


@dataclass
class RetryResult:
    valid: bool
    data: Any = None
    retry_count: int = 0
    attempts: int = 1
    errors: List[ValidationError] = field(default_factory=list)

    def is_valid(self) -> bool:
        return self.valid

    @property
    def messages(self) -> List[str]:
        return [f"{e.field}: {e.message}" for e in self.errors]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "data": self.data,
            "retry_count": self.retry_count,
            "attempts": self.attempts,
            "errors": [e.to_dict() for e in self.errors],
        }


class RetryHandler:
    def __init__(
        self,
        schema: Schema,
        max_retries: int = 2,
        on_retry: Optional[Callable[[int, List[ValidationError]], None]] = None,
        on_success: Optional[Callable[[Any, int], None]] = None,
        on_failure: Optional[Callable[[List[ValidationError], int], None]] = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.schema = schema
        self.max_retries = max_retries
        self.on_retry = on_retry
        self.on_success = on_success
        self.on_failure = on_failure

    def _decode(self, data: Any) -> Any:
        # Providers often hand back JSON text; structured schemas want the decoded value.
        if isinstance(data, str) and isinstance(self.schema, (ObjectSchema, ArraySchema)):
            text = data.strip()
            fenced = _FENCE.search(text)
            if fenced is not None:
                text = fenced.group(1).strip()
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return data
        return data

    def execute(self, generator: Generator) -> RetryResult:
        repair_prompt: Optional[str] = None
        errors: List[ValidationError] = []
        data: Any = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                logger.info("structured output retry=%d errors=%d", attempt, len(errors))
                if self.on_retry is not None:
                    self.on_retry(attempt, errors)

            data = self._decode(generator(repair_prompt))
            result = validate(data, self.schema)
            if result.valid:
                if self.on_success is not None:
                    self.on_success(data, attempt)
                return RetryResult(valid=True, data=data, retry_count=attempt, attempts=attempt + 1)

            errors = result.errors
            repair_prompt = build_repair_prompt(errors, self.schema, data)

        total = self.max_retries + 1
        logger.warning("structured output invalid after attempts=%d errors=%s", total, [e.field for e in errors])
        if self.on_failure is not None:
            self.on_failure(errors, total)
        return RetryResult(valid=False, data=data, retry_count=self.max_retries, attempts=total, errors=errors)
