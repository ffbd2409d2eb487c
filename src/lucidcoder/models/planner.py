"""Goal planner interface and planner-response parsing."""

from __future__ import annotations

import json
import re
from typing import Any, Callable, List, Optional, Sequence

from ..planning.heuristics import normalize_child_prompts

RESPONSE_NOT_JSON = "LLM planning response was not valid JSON"
RESPONSE_MISSING_CHILDREN = "LLM planning response missing childGoals array"
RESPONSE_EMPTY_CHILDREN = "LLM planning response has empty childGoals array"
NO_USABLE_PROMPTS = "LLM planning produced no usable child prompts"

_CHILD_KEYS = ("childGoals", "childPrompts", "child_goals", "child_prompts")
_FENCE = re.compile(r"^```(?:json)?\s*\n(.*?)\n?```$", re.IGNORECASE | re.DOTALL)


class PlannerError(RuntimeError):
    """Base error raised by goal planners."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class PlanningResponseError(PlannerError):
    """Raised when the planner returned something that cannot become child goals."""


def _strip_code_fence(payload: str) -> str:
    match = _FENCE.match(payload.strip())
    if match:
        return match.group(1).strip()
    return payload.strip()


def _decode_payload(raw: Any) -> Any:
    if not isinstance(raw, (str, bytes, bytearray)):
        return raw
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else raw
    text = _strip_code_fence(text)
    if not text:
        raise PlanningResponseError(RESPONSE_NOT_JSON)
    try:
        return json.loads(text)
    except json.JSONDecodeError as error:
        raise PlanningResponseError(RESPONSE_NOT_JSON) from error


def parse_planner_payload(raw: Any) -> List[str]:
    """Turn a raw planner reply into normalised child prompts.

    The reply is a JSON object (optionally fenced in Markdown) carrying a
    ``childGoals`` or ``childPrompts`` array of strings or ``{prompt, title}``
    objects. A bare JSON array is accepted as the child list itself.
    """
    payload = _decode_payload(raw)
    if isinstance(payload, list):
        entries = payload
    elif isinstance(payload, dict):
        entries = next((payload[key] for key in _CHILD_KEYS if key in payload), None)
        if not isinstance(entries, list):
            raise PlanningResponseError(RESPONSE_MISSING_CHILDREN)
    else:
        raise PlanningResponseError(RESPONSE_MISSING_CHILDREN)

    if not entries:
        raise PlanningResponseError(RESPONSE_EMPTY_CHILDREN)
    prompts = [plan.prompt for plan in normalize_child_prompts(entries)]
    if not prompts:
        raise PlanningResponseError(NO_USABLE_PROMPTS)
    return prompts


class GoalPlanner:
    """Break a request into child prompts.

    Subclasses implement :meth:`_raw_plan`, returning the planner's raw reply
    (text or decoded JSON). :meth:`plan` validates it and raises
    :class:`PlanningResponseError` when it is unusable.
    """

    def plan(self, prompt: str, *, project_id: str) -> List[str]:
        raw = self._raw_plan(prompt, project_id=project_id)
        return parse_planner_payload(raw)

    def _raw_plan(self, prompt: str, *, project_id: str) -> Any:
        raise NotImplementedError("Subclasses must implement _raw_plan().")


class StaticGoalPlanner(GoalPlanner):
    """Planner that always answers with the configured child prompts."""

    def __init__(self, child_prompts: Sequence[Any]) -> None:
        self.child_prompts = list(child_prompts)

    def _raw_plan(self, prompt: str, *, project_id: str) -> Any:
        return {"childGoals": list(self.child_prompts)}


class CallableGoalPlanner(GoalPlanner):
    """Adapt a ``(prompt, project_id) -> raw reply`` callable to the planner interface."""

    def __init__(self, func: Callable[[str, str], Any], *, name: Optional[str] = None) -> None:
        self._func = func
        self.name = name or getattr(func, "__name__", "planner")

    def _raw_plan(self, prompt: str, *, project_id: str) -> Any:
        return self._func(prompt, project_id)


__all__ = [
    "CallableGoalPlanner",
    "GoalPlanner",
    "NO_USABLE_PROMPTS",
    "PlannerError",
    "PlanningResponseError",
    "RESPONSE_EMPTY_CHILDREN",
    "RESPONSE_MISSING_CHILDREN",
    "RESPONSE_NOT_JSON",
    "StaticGoalPlanner",
    "parse_planner_payload",
]
