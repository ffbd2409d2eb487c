"""Deterministic decomposition used when the LLM planner is unavailable."""

from __future__ import annotations

from typing import Any, Callable, List, Optional

from ..models.planner import PlanningResponseError

MAX_PROMPT_CHARS = 400
ELLIPSIS = "…"
FALLBACK_MESSAGE = "Goals planned using a simplified fallback because the LLM planner was unavailable."

PLANNING_ERROR_PHRASES: tuple[str, ...] = (
    "LLM planning response",
    "LLM planning produced",
)

GENERIC_CHILD_PROMPTS: tuple[str, ...] = (
    "Identify the core change needed and update the most relevant files.",
    "Implement the requested feature end-to-end, including any reusable pieces.",
    "Wire the feature into the app entry point and verify the behavior.",
)

CreateGoalWithChildren = Callable[..., Any]


def _clip(prompt: str) -> str:
    if len(prompt) <= MAX_PROMPT_CHARS:
        return prompt
    return f"{prompt[:MAX_PROMPT_CHARS]}{ELLIPSIS}"


def build_child_prompts(prompt: Optional[str]) -> List[str]:
    """Return the three canned child prompts for ``prompt``."""
    text = (prompt or "").strip() if isinstance(prompt, str) else ""
    if not text:
        return list(GENERIC_CHILD_PROMPTS)
    subject = _clip(text)
    return [
        f"Outline the main components/areas needed for: {subject}",
        f"Implement the primary feature described in: {subject} (include any reusable subcomponents).",
        f"Integrate the change into the app shell/layout and honor any placement constraints in: {subject}",
    ]


def is_planning_error(error: Any) -> bool:
    """Return True when ``error`` reports a planner failure the fallback can absorb."""
    if error is None:
        return False
    if isinstance(error, PlanningResponseError):
        return True
    message = getattr(error, "message", None)
    if not isinstance(message, str):
        if not isinstance(error, BaseException):
            return False
        message = str(error)
    return any(phrase in message for phrase in PLANNING_ERROR_PHRASES)


def plan_from_prompt(
    project_id: str,
    prompt: Optional[str],
    create_goal_with_children: CreateGoalWithChildren,
    **kwargs: Any,
) -> Any:
    """Persist a goal decomposed with :func:`build_child_prompts`."""
    return create_goal_with_children(
        project_id=project_id,
        prompt=prompt,
        child_prompts=build_child_prompts(prompt),
        **kwargs,
    )


__all__ = [
    "FALLBACK_MESSAGE",
    "GENERIC_CHILD_PROMPTS",
    "MAX_PROMPT_CHARS",
    "build_child_prompts",
    "is_planning_error",
    "plan_from_prompt",
]
