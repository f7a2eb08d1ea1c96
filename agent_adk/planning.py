"""
Value objects for plan / execute / reflect agents.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def extract_json_object(text: str) -> Dict[str, Any]:
    """Parse the first {...} block found in an LLM reply; {} when there is none."""
    if not isinstance(text, str):
        return dict(text) if isinstance(text, dict) else {}
    match = _JSON_OBJECT.search(text)
    if match is None:
        return {}
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value]


@dataclass
class PlanStep:
    id: int
    action: str
    dependencies: List[int] = field(default_factory=list)
    tools: List[str] = field(default_factory=list)
    completed: bool = False
    result: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlanStep":
        return cls(
            id=int(data.get("id", 0)),
            action=str(data.get("action", "")),
            dependencies=[int(d) for d in data.get("dependencies") or []],
            tools=_str_list(data.get("tools")),
            completed=bool(data.get("completed", False)),
            result=data.get("result"),
        )

    def are_dependencies_satisfied(self, completed_ids: List[int]) -> bool:
        return all(dep in completed_ids for dep in self.dependencies)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "dependencies": list(self.dependencies),
            "tools": list(self.tools),
            "completed": self.completed,
            "result": self.result,
        }


@dataclass
class Plan:
    goal: str
    steps: List[PlanStep] = field(default_factory=list)
    success_criteria: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Plan":
        return cls(
            goal=str(data.get("goal", "")),
            steps=[PlanStep.from_dict(s) for s in data.get("steps") or [] if isinstance(s, dict)],
            success_criteria=_str_list(data.get("success_criteria")),
        )

    @classmethod
    def from_json(cls, text: str) -> "Plan":
        return cls.from_dict(extract_json_object(text))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "goal": self.goal,
            "steps": [s.to_dict() for s in self.steps],
            "success_criteria": list(self.success_criteria),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class Reflection:
    satisfactory: bool
    score: float
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.score = min(1.0, max(0.0, float(self.score)))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Reflection":
        try:
            score = float(data.get("score", 0.0))
        except (TypeError, ValueError):
            score = 0.0
        return cls(
            satisfactory=bool(data.get("satisfactory", False)),
            score=score,
            strengths=_str_list(data.get("strengths")),
            weaknesses=_str_list(data.get("weaknesses")),
            suggestions=_str_list(data.get("suggestions")),
        )

    @classmethod
    def from_json(cls, text: str) -> "Reflection":
        return cls.from_dict(extract_json_object(text))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "satisfactory": self.satisfactory,
            "score": self.score,
            "strengths": list(self.strengths),
            "weaknesses": list(self.weaknesses),
            "suggestions": list(self.suggestions),
        }


@dataclass
class PlanningResponse:
    result: str
    plan: Optional[Plan]
    reflection: Optional[Reflection]
    attempts: int
    success: bool
    input: Any = None

    @property
    def score(self) -> Optional[float]:
        return self.reflection.score if self.reflection is not None else None

    @property
    def goal(self) -> Optional[str]:
        return self.plan.goal if self.plan is not None else None

    @property
    def steps(self) -> List[PlanStep]:
        return list(self.plan.steps) if self.plan is not None else []

    def is_success(self) -> bool:
        return self.success

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.result,
            "success": self.success,
            "attempts": self.attempts,
            "input": self.input,
            "goal": self.goal,
            "score": self.score,
            "plan": self.plan.to_dict() if self.plan is not None else None,
            "reflection": self.reflection.to_dict() if self.reflection is not None else None,
        }

    def __str__(self) -> str:
        return self.result
