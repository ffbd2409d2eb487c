from __future__ import annotations

import pytest

from lucidcoder.models.planner import (
    CallableGoalPlanner,
    GoalPlanner,
    PlanningResponseError,
    StaticGoalPlanner,
    parse_planner_payload,
)
from lucidcoder.planning.fallback import is_planning_error


def test_parses_child_goals_object_inside_code_fence() -> None:
    raw = '```json\n{"childGoals": ["Build header", {"prompt": "Add routes", "title": "Routes"}]}\n```'
    assert parse_planner_payload(raw) == ["Build header", "Add routes"]


def test_accepts_child_prompts_key_and_bare_list() -> None:
    assert parse_planner_payload({"childPrompts": ["One"]}) == ["One"]
    assert parse_planner_payload('["One", "Two"]') == ["One", "Two"]


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ("not json", "LLM planning response was not valid JSON"),
        ("", "LLM planning response was not valid JSON"),
        ('{"plan": []}', "LLM planning response missing childGoals array"),
        ('{"childGoals": "Build it"}', "LLM planning response missing childGoals array"),
        ('{"childGoals": []}', "LLM planning response has empty childGoals array"),
        ('{"childGoals": ["  ", "npm run test"]}', "LLM planning produced no usable child prompts"),
    ],
)
def test_unusable_payloads_raise_planning_errors(raw: str, message: str) -> None:
    with pytest.raises(PlanningResponseError) as excinfo:
        parse_planner_payload(raw)
    assert str(excinfo.value) == message
    assert is_planning_error(excinfo.value)


def test_static_and_callable_planners() -> None:
    assert StaticGoalPlanner(["A", "B"]).plan("anything", project_id="p") == ["A", "B"]

    seen = []

    def fake_llm(prompt: str, project_id: str) -> str:
        seen.append((prompt, project_id))
        return '{"childGoals": ["Do the thing"]}'

    planner = CallableGoalPlanner(fake_llm)
    assert planner.plan("Add a navbar", project_id="p1") == ["Do the thing"]
    assert seen == [("Add a navbar", "p1")]
    assert planner.name == "fake_llm"


def test_base_planner_requires_subclass() -> None:
    with pytest.raises(NotImplementedError):
        GoalPlanner().plan("x", project_id="p")
