"""Goal and task lifecycle: request intake, planning and isolated task execution."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple
from uuid import uuid4

from .memory.schema import (
    Goal,
    GoalStatus,
    Task,
    TaskStatus,
    TaskType,
    can_transition,
)
from .memory.store import MemoryStore
from .models.planner import GoalPlanner
from .planning.fallback import FALLBACK_MESSAGE, is_planning_error, plan_from_prompt
from .planning.heuristics import build_goal_metadata, derive_goal_title, normalize_child_prompts
from .planning.prompt_analyzer import assess_prompt, extract_latest_request
from .tools.changeset import BranchRecord, ChangeSetResolver
from .tools.vcs import GitWorkspaceManager
from .utils.slug import goal_branch_name

LOGGER = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"
CLARIFICATION_TITLE = "Clarify request"

TaskWork = Callable[["TaskWorkspace"], Any]


class OrchestratorError(RuntimeError):
    """Base error for goal and task lifecycle failures."""


class GoalNotFoundError(OrchestratorError):
    pass


class TaskNotFoundError(OrchestratorError):
    pass


class ClarificationRequiredError(OrchestratorError):
    """Raised when a goal cannot be planned before its clarification is answered."""


class InvalidTransitionError(OrchestratorError):
    """Raised when a task status change is not allowed."""


class TaskCancelledError(OrchestratorError):
    """Raised when a git operation is attempted for a cancelled task."""


@dataclass(slots=True)
class GoalPlan:
    """A goal together with its ordered tasks."""

    goal: Goal
    tasks: List[Task] = field(default_factory=list)
    needs_clarification: bool = False
    used_fallback: bool = False
    message: Optional[str] = None

    @property
    def child_tasks(self) -> List[Task]:
        return [task for task in self.tasks if task.type is TaskType.IMPLEMENTATION]


@dataclass(slots=True)
class TaskRunResult:
    """Outcome of :meth:`GoalTaskOrchestrator.run_task`."""

    task: Task
    branch_name: str
    changed_paths: List[str] = field(default_factory=list)
    committed: bool = False
    commit_sha: Optional[str] = None
    stashed_label: Optional[str] = None
    restored_stash: bool = False
    output: Any = None


class TaskWorkspace:
    """Git handle given to task work; each call first checks the task was not cancelled."""

    def __init__(
        self,
        orchestrator: "GoalTaskOrchestrator",
        *,
        task_id: str,
        project_id: str,
        project_path: Path,
        branch_name: str,
    ) -> None:
        self._orchestrator = orchestrator
        self.task_id = task_id
        self.project_id = project_id
        self.project_path = project_path
        self.branch_name = branch_name

    @property
    def _git(self) -> GitWorkspaceManager:
        self._orchestrator.ensure_not_cancelled(self.task_id)
        return self._orchestrator.workspace

    def current_branch(self) -> str:
        return self._git.current_branch(self.project_path)

    def has_uncommitted_changes(self) -> bool:
        return self._git.has_uncommitted_changes(self.project_path)

    def commit_all(self, message: str) -> bool:
        return self._git.commit_all(self.project_path, message)

    def file_exists(self, relative_path: str) -> bool:
        return self._git.file_exists(self.project_path, relative_path)

    def stage_file(self, relative_path: str, *, source: str = "agent") -> None:
        """Record ``relative_path`` as touched on this task's branch."""
        self._orchestrator.ensure_not_cancelled(self.task_id)
        self._orchestrator.store.record_staged_file(
            self.project_id, self.branch_name, relative_path, source=source
        )


class GoalTaskOrchestrator:
    """Turn requests into goals and tasks, and run tasks in isolated git workspaces."""

    def __init__(
        self,
        store: MemoryStore,
        *,
        workspace: GitWorkspaceManager | None = None,
        planner: GoalPlanner | None = None,
        config: Mapping[str, Any] | None = None,
    ) -> None:
        self.store = store
        self.workspace = workspace or GitWorkspaceManager()
        self.planner = planner
        self._config = dict(config or {})
        git_section = self._config.get("git")
        self._git_config: Mapping[str, Any] = git_section if isinstance(git_section, Mapping) else {}
        self.default_branch = str(self._git_config.get("default_branch") or DEFAULT_BRANCH)
        self.base_ref = str(self._git_config.get("base_ref") or self.default_branch)
        self.resolver = ChangeSetResolver(self.workspace.list_branch_changed_paths, base_ref=self.base_ref)

    # ------------------------------------------------------------------ lookups
    def _require_goal(self, goal_id: str) -> Goal:
        goal = self.store.get_goal(goal_id)
        if goal is None:
            raise GoalNotFoundError(f"Goal {goal_id} not found")
        return goal

    def _require_task(self, task_id: str) -> Task:
        task = self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task

    def get_goal_with_tasks(self, goal_id: str) -> GoalPlan:
        goal = self._require_goal(goal_id)
        tasks = self.store.list_tasks(goal_id)
        pending = _pending_clarification(tasks)
        return GoalPlan(goal=goal, tasks=tasks, needs_clarification=pending is not None)

    def list_goals(self, project_id: Optional[str] = None) -> List[Goal]:
        return self.store.list_goals(project_id=project_id)

    # -------------------------------------------------------------- goal intake
    def create_goal_from_prompt(
        self,
        project_id: str,
        prompt: str,
        *,
        title: Optional[str] = None,
        parent_goal_id: Optional[str] = None,
        clarifying_questions: Optional[Sequence[str]] = None,
    ) -> GoalPlan:
        """Persist a goal and its single first task (clarification or analysis)."""
        if not project_id or not isinstance(project_id, str):
            raise ValueError("project_id is required")
        if not prompt or not isinstance(prompt, str):
            raise ValueError("prompt is required")
        if parent_goal_id:
            self._require_goal(parent_goal_id)

        assessment = assess_prompt(prompt)
        goal = Goal(
            id=uuid4().hex,
            project_id=project_id,
            prompt=prompt,
            title=(title or "").strip() or derive_goal_title(extract_latest_request(prompt)),
            parent_goal_id=parent_goal_id,
            metadata=build_goal_metadata(prompt, list(clarifying_questions or [])),
        )
        goal = self.store.save_goal(goal)

        if assessment.needs_clarification:
            first = Task(
                id=uuid4().hex,
                goal_id=goal.id,
                type=TaskType.CLARIFICATION,
                title=CLARIFICATION_TITLE,
                prompt=prompt,
                metadata={"questions": goal.metadata.get("clarifying_questions", [])},
            )
        else:
            first = Task(
                id=uuid4().hex,
                goal_id=goal.id,
                type=TaskType.ANALYSIS,
                title=f"Analyze: {goal.title}",
                prompt=prompt,
                metadata={"concrete_terms": assessment.concrete_terms},
            )
        first = self.store.save_task(first)
        LOGGER.info("Created goal %s (%s) with %s task", goal.id, goal.title, first.type.value)
        return GoalPlan(goal=goal, tasks=[first], needs_clarification=assessment.needs_clarification)

    def submit_request(self, project_id: str, prompt: str, **kwargs: Any) -> GoalPlan:
        """Create a goal and plan it unless the request needs clarification first."""
        created = self.create_goal_from_prompt(project_id, prompt, **kwargs)
        if created.needs_clarification:
            return created
        return self.plan_goal(created.goal.id)

    # ----------------------------------------------------------------- planning
    def plan_goal(self, goal_id: str) -> GoalPlan:
        goal = self._require_goal(goal_id)
        tasks = self.store.list_tasks(goal_id)
        if goal.status in (GoalStatus.FAILED, GoalStatus.CANCELLED):
            raise OrchestratorError(f"Goal {goal_id} is {goal.status.value} and cannot be planned")
        if _pending_clarification(tasks) is not None:
            raise ClarificationRequiredError(f"Goal {goal_id} is waiting for a clarification answer")
        if any(task.type is TaskType.IMPLEMENTATION for task in tasks):
            return GoalPlan(goal=goal, tasks=tasks)

        prompt = str(goal.metadata.get("planning_prompt") or goal.prompt)
        if self.planner is None:
            LOGGER.info("No LLM planner configured; using fallback plan for goal %s", goal_id)
            return self._plan_with_fallback(goal, prompt)

        try:
            child_prompts = self.planner.plan(prompt, project_id=goal.project_id)
        except Exception as error:
            if is_planning_error(error):
                LOGGER.warning("LLM planning failed for goal %s; using fallback: %s", goal_id, error)
                return self._plan_with_fallback(goal, prompt)
            for task in tasks:
                if task.type is TaskType.ANALYSIS and not task.status.is_terminal:
                    self.fail_task(task.id, error)
            self.store.update_goal_status(goal_id, GoalStatus.FAILED)
            raise
        return self.create_goal_with_children(goal.project_id, prompt, child_prompts, goal_id=goal_id)

    def _plan_with_fallback(self, goal: Goal, prompt: str) -> GoalPlan:
        plan = plan_from_prompt(goal.project_id, prompt, self.create_goal_with_children, goal_id=goal.id)
        plan.used_fallback = True
        plan.message = FALLBACK_MESSAGE
        return plan

    def create_goal_with_children(
        self,
        project_id: str,
        prompt: Optional[str],
        child_prompts: Sequence[Any],
        *,
        goal_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> GoalPlan:
        """Attach one implementation task per child prompt, creating the goal if needed."""
        children = normalize_child_prompts(child_prompts)
        if not children:
            raise ValueError("child_prompts must contain at least one usable prompt")

        if goal_id:
            goal = self._require_goal(goal_id)
            if goal.project_id != project_id:
                raise ValueError(f"Goal {goal_id} belongs to project {goal.project_id}")
        else:
            if not project_id:
                raise ValueError("project_id is required")
            text = prompt or ""
            goal = self.store.save_goal(
                Goal(
                    id=uuid4().hex,
                    project_id=project_id,
                    prompt=text,
                    title=(title or "").strip() or derive_goal_title(extract_latest_request(text)),
                    metadata=build_goal_metadata(text),
                )
            )

        existing = self.store.list_tasks(goal.id)
        offset = max((task.position for task in existing), default=-1) + 1
        new_tasks = [
            Task(
                id=uuid4().hex,
                goal_id=goal.id,
                type=TaskType.IMPLEMENTATION,
                title=child.title,
                prompt=child.prompt,
                position=offset + index,
            )
            for index, child in enumerate(children)
        ]
        self.store.save_tasks(new_tasks)
        # Planning is the analysis step; close it before the goal turns active.
        for task in existing:
            if task.type is TaskType.ANALYSIS and task.status is TaskStatus.PENDING:
                self.start_task(task.id)
                self.complete_task(task.id, metadata={"child_count": len(new_tasks)})
        self.store.update_goal_status(goal.id, GoalStatus.ACTIVE)
        LOGGER.info("Planned %d child task(s) for goal %s", len(new_tasks), goal.id)
        return GoalPlan(goal=self._require_goal(goal.id), tasks=self.store.list_tasks(goal.id))

    def resolve_clarification(self, goal_id: str, answer: str) -> GoalPlan:
        """Record the user's answer, close the clarification task and plan the goal."""
        if not answer or not isinstance(answer, str) or not answer.strip():
            raise ValueError("answer is required")
        goal = self._require_goal(goal_id)
        pending = _pending_clarification(self.store.list_tasks(goal_id))
        if pending is None:
            raise OrchestratorError(f"Goal {goal_id} has no pending clarification")

        answer = answer.strip()
        self.start_task(pending.id)
        self.complete_task(pending.id, metadata={"answer": answer})

        answers = list(goal.metadata.get("clarification_answers", []))
        answers.append(answer)
        metadata = dict(goal.metadata)
        metadata["clarification_answers"] = answers
        metadata["planning_prompt"] = f"{goal.prompt}\n\nUser answer: {answer}"
        self.store.save_goal(goal.model_copy(update={"metadata": metadata}))
        return self.plan_goal(goal_id)

    # ----------------------------------------------------------- task lifecycle
    def _transition(
        self,
        task_id: str,
        target: TaskStatus,
        *,
        metadata: Optional[Mapping[str, Any]] = None,
        updates: Optional[Mapping[str, Any]] = None,
    ) -> Task:
        task = self._require_task(task_id)
        if task.status == target:
            return task
        if not can_transition(task.status, target):
            raise InvalidTransitionError(
                f"Task {task_id} cannot move from {task.status.value} to {target.value}"
            )
        merged = dict(task.metadata)
        merged.update(metadata or {})
        changes: dict[str, Any] = {"status": target, "metadata": merged}
        changes.update(updates or {})
        saved = self.store.save_task(task.model_copy(update=changes))
        LOGGER.info("Task %s: %s -> %s", task_id, task.status.value, target.value)
        self._refresh_goal_status(saved.goal_id)
        return saved

    def start_task(self, task_id: str) -> Task:
        return self._transition(task_id, TaskStatus.RUNNING)

    def complete_task(self, task_id: str, *, metadata: Optional[Mapping[str, Any]] = None) -> Task:
        return self._transition(task_id, TaskStatus.SUCCEEDED, metadata=metadata)

    def fail_task(self, task_id: str, error: Any = None) -> Task:
        metadata = {"error": str(error)} if error is not None else None
        return self._transition(task_id, TaskStatus.FAILED, metadata=metadata)

    def cancel_task(self, task_id: str, reason: Optional[str] = None) -> Task:
        """Cancel a task; any git operation it attempts afterwards is refused."""
        metadata = {"cancel_reason": reason} if reason else None
        return self._transition(task_id, TaskStatus.CANCELLED, metadata=metadata)

    def ensure_not_cancelled(self, task_id: str) -> None:
        if self._require_task(task_id).status is TaskStatus.CANCELLED:
            raise TaskCancelledError(f"Task {task_id} was cancelled")

    def _refresh_goal_status(self, goal_id: str) -> None:
        goal = self.store.get_goal(goal_id)
        if goal is None or goal.status is not GoalStatus.ACTIVE:
            return
        statuses = [task.status for task in self.store.list_tasks(goal_id)]
        if not statuses or not all(status.is_terminal for status in statuses):
            return
        if TaskStatus.FAILED in statuses:
            final = GoalStatus.FAILED
        elif all(status is TaskStatus.CANCELLED for status in statuses):
            final = GoalStatus.CANCELLED
        else:
            final = GoalStatus.COMPLETED
        self.store.update_goal_status(goal_id, final)
        LOGGER.info("Goal %s %s", goal_id, final.value)

    # -------------------------------------------------------------- git runtime
    def _prepare_repository(self, project_path: Path) -> None:
        self.workspace.ensure_repository(project_path, default_branch=self.default_branch)
        self.workspace.configure_identity(
            project_path,
            name=self._git_config.get("user_name"),
            email=self._git_config.get("user_email"),
        )
        if self.workspace.head_commit(project_path) is None:
            self.workspace.ensure_initial_commit(project_path)

    def _switch_branch(self, project_path: Path, target: str) -> Tuple[Optional[str], bool]:
        """Park the current branch's dirty tree, check out ``target`` and restore its stash."""
        current = self.workspace.current_branch(project_path)
        if current == target:
            return None, False
        stashed = self.workspace.stash(project_path, current) if current != "HEAD" else None
        self.workspace.checkout_branch(project_path, target)
        restored = self.workspace.pop_stash_for_branch(project_path, target)
        return stashed, restored

    def ensure_goal_branch(
        self,
        goal_id: str,
        project_path: Path | str,
        *,
        default_branch: Optional[str] = None,
        checkout: bool = True,
    ) -> str:
        """Assign the goal its ``lucidcoder/<slug>`` branch once and optionally switch to it."""
        goal = self._require_goal(goal_id)
        path = Path(project_path)
        with self.workspace.locked(path):
            if default_branch and default_branch != self.default_branch:
                self.workspace.ensure_repository(path, default_branch=default_branch)
            self._prepare_repository(path)
            branch_name = goal.branch_name
            if not branch_name:
                branch_name = goal_branch_name(goal.title, goal.id)
                self.store.save_goal(goal.model_copy(update={"branch_name": branch_name}))
                LOGGER.info("Assigned branch %s to goal %s", branch_name, goal_id)
            if checkout:
                self._switch_branch(path, branch_name)
        return branch_name

    def run_task(
        self,
        task_id: str,
        project_path: Path | str,
        work: TaskWork,
        options: Optional[Mapping[str, Any]] = None,
    ) -> TaskRunResult:
        """Run ``work`` for a pending task on its goal branch and report what changed.

        The project's workspace lock is held for the whole run, so tasks on
        the same project never interleave branch switches.
        """
        task = self._require_task(task_id)
        if task.status is TaskStatus.CANCELLED:
            raise TaskCancelledError(f"Task {task_id} was cancelled")
        if task.status is not TaskStatus.PENDING:
            raise InvalidTransitionError(f"Task {task_id} is {task.status.value}; only pending tasks can run")
        if task.type is not TaskType.IMPLEMENTATION:
            raise OrchestratorError(f"Task {task_id} is a {task.type.value} task; only implementation tasks run")
        goal = self._require_goal(task.goal_id)
        path = Path(project_path)

        with self.workspace.locked(path):
            branch_name = self.ensure_goal_branch(goal.id, path, checkout=False)
            self.ensure_not_cancelled(task_id)
            stashed, restored = self._switch_branch(path, branch_name)
            self._transition(
                task_id,
                TaskStatus.RUNNING,
                updates={"branch_name": branch_name, "stash_label": stashed},
            )
            handle = TaskWorkspace(
                self,
                task_id=task_id,
                project_id=goal.project_id,
                project_path=path,
                branch_name=branch_name,
            )
            try:
                output = work(handle)
                self.ensure_not_cancelled(task_id)
                committed = self.workspace.ensure_clean(path, branch_label=branch_name)
                commit_sha = self.workspace.head_commit(path)
                branch = BranchRecord(
                    name=branch_name,
                    staged_files=self.store.get_staged_files(goal.project_id, branch_name),
                )
                changed = self.resolver.resolve(self.workspace.context_for(path), branch, options)
            except TaskCancelledError:
                LOGGER.info("Task %s cancelled; skipping remaining git operations", task_id)
                raise
            except Exception as error:
                if not self._require_task(task_id).status.is_terminal:
                    self.fail_task(task_id, error)
                raise

            finished = self.complete_task(
                task_id,
                metadata={"changed_paths": changed, "commit_sha": commit_sha, "auto_saved": committed},
            )
        return TaskRunResult(
            task=finished,
            branch_name=branch_name,
            changed_paths=changed,
            committed=committed,
            commit_sha=commit_sha,
            stashed_label=stashed,
            restored_stash=restored,
            output=output,
        )


def _pending_clarification(tasks: Sequence[Task]) -> Optional[Task]:
    for task in tasks:
        if task.type is TaskType.CLARIFICATION and task.status in (TaskStatus.PENDING, TaskStatus.RUNNING):
            return task
    return None


__all__ = [
    "ClarificationRequiredError",
    "GoalNotFoundError",
    "GoalPlan",
    "GoalTaskOrchestrator",
    "InvalidTransitionError",
    "OrchestratorError",
    "TaskCancelledError",
    "TaskNotFoundError",
    "TaskRunResult",
    "TaskWorkspace",
]
