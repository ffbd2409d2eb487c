"""Typed records tracked by the LucidCoder goal store."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class GoalStatus(str, Enum):
    """Lifecycle states for a goal."""

    PLANNING = "planning"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskType(str, Enum):
    """What a task asks the agent to do."""

    CLARIFICATION = "clarification"
    ANALYSIS = "analysis"
    IMPLEMENTATION = "implementation"


class TaskStatus(str, Enum):
    """Lifecycle states for a task."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TASK_STATUSES


TERMINAL_TASK_STATUSES: FrozenSet[TaskStatus] = frozenset(
    {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)

TASK_TRANSITIONS: Mapping[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED, TaskStatus.FAILED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.SUCCEEDED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Return True when ``current`` may move to ``target`` (same state counts)."""
    return current == target or target in TASK_TRANSITIONS[current]


class Goal(RecordModel):
    """A user request tracked from planning to completion."""

    id: str
    project_id: str
    prompt: str
    title: str
    status: GoalStatus = GoalStatus.PLANNING
    parent_goal_id: Optional[str] = None
    branch_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Task(RecordModel):
    """Single unit of work inside a goal."""

    id: str
    goal_id: str
    type: TaskType
    title: str
    prompt: str = ""
    status: TaskStatus = TaskStatus.PENDING
    position: int = 0
    branch_name: Optional[str] = None
    stash_label: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
