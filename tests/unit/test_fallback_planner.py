from __future__ import annotations

from types import SimpleNamespace

from lucidcoder.models.planner import PlanningResponseError
from lucidcoder.planning.fallback import (
    GENERIC_CHILD_PROMPTS,
    MAX_PROMPT_CHARS,
    build_child_prompts,
    is_planning_error,
    plan_from_prompt,
)


def test_empty_prompts_get_generic_children() -> None:
    for prompt in (None, "", "   \n"):
        assert build_child_prompts(prompt) == list(GENERIC_CHILD_PROMPTS)
    assert build_child_prompts("") == [
        "Identify the core change needed and update the most relevant files.",
        "Implement the requested feature end-to-end, including any reusable pieces.",
        "Wire the feature into the app entry point and verify the behavior.",
    ]


def test_prompt_is_embedded_in_every_child() -> None:
    children = build_child_prompts("  Add a navbar  ")
    assert children == [
        "Outline the main components/areas needed for: Add a navbar",
        "Implement the primary feature described in: Add a navbar (include any reusable subcomponents).",
        "Integrate the change into the app shell/layout and honor any placement constraints in: Add a navbar",
    ]


def test_long_prompts_are_clipped_with_ellipsis() -> None:
    prompt = "x" * (MAX_PROMPT_CHARS + 50)
    children = build_child_prompts(prompt)
    clipped = "x" * MAX_PROMPT_CHARS + "…"

    assert len(children) == 3
    assert all(clipped in child for child in children)
    assert all("x" * (MAX_PROMPT_CHARS + 1) not in child for child in children)

    exact = "y" * MAX_PROMPT_CHARS
    assert build_child_prompts(exact)[0].endswith(exact)


def test_is_planning_error_recognises_planner_messages() -> None:
    assert is_planning_error(RuntimeError("LLM planning response was not valid JSON")) is True
    assert is_planning_error(SimpleNamespace(message="LLM planning produced no usable child prompts")) is True
    assert is_planning_error(PlanningResponseError("anything")) is True
    assert is_planning_error(RuntimeError("LLM planning response malformed")) is True


def test_is_planning_error_rejects_everything_else() -> None:
    assert is_planning_error(None) is False
    assert is_planning_error("LLM planning response") is False
    assert is_planning_error(42) is False
    assert is_planning_error({}) is False
    assert is_planning_error(SimpleNamespace(message=None)) is False
    assert is_planning_error(RuntimeError("connection reset")) is False


def test_plan_from_prompt_delegates_with_fallback_children() -> None:
    received = {}

    def create_goal_with_children(**kwargs):
        received.update(kwargs)
        return "goal-plan"

    result = plan_from_prompt("project-1", "Add a navbar", create_goal_with_children)

    assert result == "goal-plan"
    assert received["project_id"] == "project-1"
    assert received["prompt"] == "Add a navbar"
    assert received["child_prompts"] == build_child_prompts("Add a navbar")
