"""Goal planner implementations used by the orchestrator."""

from .planner import (
    CallableGoalPlanner,
    GoalPlanner,
    PlannerError,
    PlanningResponseError,
    StaticGoalPlanner,
    parse_planner_payload,
)

__all__ = [
    "CallableGoalPlanner",
    "GoalPlanner",
    "PlannerError",
    "PlanningResponseError",
    "StaticGoalPlanner",
    "parse_planner_payload",
]
