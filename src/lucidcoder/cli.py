"""CLI commands for submitting requests and managing task workspaces."""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional, Tuple

import typer
import yaml

from .memory.schema import TaskStatus
from .memory.store import MemoryStore
from .models.planner import GoalPlanner, PlannerError, StaticGoalPlanner
from .orchestrator import GoalPlan, GoalTaskOrchestrator, OrchestratorError
from .tools.changeset import BranchRecord, ChangeSetResolver
from .tools.git_runner import DEFAULT_TIMEOUT_SECONDS, GitError, GitProcessRunner
from .tools.vcs import GitWorkspaceManager

APP_HELP = "LucidCoder task planning and git workspace tools."
DEFAULT_CONFIG_NAME = "config.yaml"
LOG_FILE_NAME = "lucidcoder.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "repo_root": ".",
    },
    "git": {
        "default_branch": "main",
        "base_ref": "main",
        "user_name": "LucidCoder",
        "user_email": "dev@lucidcoder.local",
        "timeout_seconds": DEFAULT_TIMEOUT_SECONDS,
    },
    "planning": {
        "child_prompts": [],
    },
    "paths": {
        "data": "data",
        "db_path": "data/lucidcoder.sqlite",
        "logs": "data/logs",
        "config": DEFAULT_CONFIG_NAME,
    },
}

LOGGER = logging.getLogger(__name__)

app = typer.Typer(help=APP_HELP)

ConfigOption = typer.Option(
    DEFAULT_CONFIG_NAME,
    "--config",
    "-c",
    help="Path to the LucidCoder configuration file.",
)


def _copy_config_template() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _write_config(config_path: Path, config_data: Dict[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config_data, handle, sort_keys=False)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse config: {error}")
        raise typer.Exit(code=1) from error

    if not isinstance(data, dict):
        typer.echo("Configuration must be a mapping at the top level.")
        raise typer.Exit(code=1)

    return data


def _section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = config.get(name)
    return value if isinstance(value, dict) else {}


def _resolve_repo_root(config: Dict[str, Any], config_path: Path) -> Path:
    repo_root = Path(_section(config, "project").get("repo_root") or ".")
    if not repo_root.is_absolute():
        repo_root = (config_path.parent / repo_root).resolve()
    return repo_root


def _resolve_relative(value: Optional[str], repo_root: Path) -> Optional[Path]:
    if not isinstance(value, str) or not value.strip():
        return None
    candidate = Path(value.strip())
    if not candidate.is_absolute():
        candidate = (repo_root / candidate).resolve()
    return candidate


def _project_id(config: Dict[str, Any], repo_root: Path) -> str:
    name = _section(config, "project").get("name")
    if isinstance(name, str) and name.strip():
        return name.strip()
    return repo_root.name or "project"


def _attach_log_file(config: Dict[str, Any], repo_root: Path) -> None:
    """Also append log records to ``<paths.logs>/lucidcoder.log`` when configured."""
    logs_dir = _resolve_relative(_section(config, "paths").get("logs"), repo_root)
    if logs_dir is None:
        return
    log_path = logs_dir / LOG_FILE_NAME
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == log_path:
            return
    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, encoding="utf-8")
    except OSError as error:
        LOGGER.warning("Cannot write log file %s: %s", log_path, error)
        return
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)


def _build_planner(config: Dict[str, Any]) -> Optional[GoalPlanner]:
    prompts = _section(config, "planning").get("child_prompts") or []
    if isinstance(prompts, list) and prompts:
        return StaticGoalPlanner(prompts)
    return None


def _build_workspace(config: Dict[str, Any]) -> GitWorkspaceManager:
    timeout = _section(config, "git").get("timeout_seconds") or DEFAULT_TIMEOUT_SECONDS
    try:
        timeout_value = float(timeout)
    except (TypeError, ValueError) as error:
        raise typer.BadParameter(f"git.timeout_seconds must be a number, got {timeout!r}") from error
    return GitWorkspaceManager(GitProcessRunner(timeout=timeout_value))


def _open(config: str) -> Tuple[Dict[str, Any], Path]:
    config_path = Path(config)
    config_data = load_config(config_path)
    repo_root = _resolve_repo_root(config_data, config_path)
    _attach_log_file(config_data, repo_root)
    return config_data, repo_root


def _store_for(config: Dict[str, Any], repo_root: Path) -> MemoryStore:
    paths = dict(_section(config, "paths"))
    db_path = _resolve_relative(paths.get("db_path"), repo_root)
    if db_path is not None:
        return MemoryStore(db_path)
    data_dir = _resolve_relative(paths.get("data"), repo_root) or (repo_root / "data")
    return MemoryStore.from_config({"paths": {"data": str(data_dir)}})


def _build_orchestrator(config: Dict[str, Any], store: MemoryStore) -> GoalTaskOrchestrator:
    return GoalTaskOrchestrator(
        store,
        workspace=_build_workspace(config),
        planner=_build_planner(config),
        config=config,
    )


def _fail(error: Exception) -> NoReturn:
    typer.echo(f"Error: {error}")
    raise typer.Exit(code=1) from error


def _render_goal_plan(plan: GoalPlan) -> None:
    goal = plan.goal
    typer.echo(f"Goal {goal.id} [{goal.status.value}] {goal.title}")
    if plan.message:
        typer.echo(plan.message)
    if plan.needs_clarification:
        typer.echo("Clarification needed before planning. Answer with `lucidcoder clarify`.")
        questions = goal.metadata.get("clarifying_questions") or []
        for question in questions:
            typer.echo(f"  ? {question}")
    for task in plan.tasks:
        typer.echo(f"- {task.position}. [{task.type.value}/{task.status.value}] {task.title} ({task.id})")


def _current_branch_or(workspace: GitWorkspaceManager, repo_root: Path, branch: Optional[str]) -> str:
    if branch and branch.strip():
        return branch.strip()
    return workspace.current_branch(repo_root)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    logging.getLogger().setLevel(logging.DEBUG if verbose else logging.INFO)


@app.command()
def init(
    config: str = ConfigOption,
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Project identifier used for goals."),
    git: bool = typer.Option(True, "--git/--no-git", help="Initialise the project repository."),
) -> None:
    """Write the default configuration and prepare the repository."""
    config_path = Path(config)
    config_exists = config_path.exists()
    config_data = load_config(config_path) if config_exists else _copy_config_template()

    dirty = not config_exists
    for key, defaults in DEFAULT_CONFIG_TEMPLATE.items():
        section = config_data.get(key)
        if not isinstance(section, dict):
            section = config_data[key] = {}
            dirty = True
        for option, value in defaults.items():
            if option not in section:
                section[option] = copy.deepcopy(value)
                dirty = True
    if name:
        config_data["project"]["name"] = name
        dirty = True
    if dirty:
        _write_config(config_path, config_data)
        typer.echo(f"{'Updated' if config_exists else 'Created'} configuration at {config_path}")
    else:
        typer.echo(f"Configuration already up to date at {config_path}")

    repo_root = _resolve_repo_root(config_data, config_path)
    _attach_log_file(config_data, repo_root)
    if not git:
        return

    git_cfg = _section(config_data, "git")
    workspace = _build_workspace(config_data)
    try:
        workspace.ensure_repository(repo_root, default_branch=git_cfg.get("default_branch") or "main")
        workspace.configure_identity(repo_root, name=git_cfg.get("user_name"), email=git_cfg.get("user_email"))
        if workspace.head_commit(repo_root) is None:
            workspace.ensure_initial_commit(repo_root)
    except GitError as error:
        _fail(error)
    typer.echo(f"Repository ready at {repo_root} (branch {workspace.current_branch(repo_root)})")


@app.command()
def request(
    prompt: str = typer.Argument(..., help="What you want changed."),
    config: str = ConfigOption,
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Project identifier override."),
) -> None:
    """Turn a request into a goal and plan its tasks."""
    config_data, repo_root = _open(config)
    project_id = project or _project_id(config_data, repo_root)
    with _store_for(config_data, repo_root) as store:
        orchestrator = _build_orchestrator(config_data, store)
        try:
            plan = orchestrator.submit_request(project_id, prompt)
        except (ValueError, OrchestratorError, PlannerError) as error:
            _fail(error)
        _render_goal_plan(plan)


@app.command()
def clarify(
    goal_id: str = typer.Argument(..., help="Goal waiting for clarification."),
    answer: str = typer.Argument(..., help="Answer to the clarification question."),
    config: str = ConfigOption,
) -> None:
    """Answer a goal's clarification and plan it."""
    config_data, repo_root = _open(config)
    with _store_for(config_data, repo_root) as store:
        orchestrator = _build_orchestrator(config_data, store)
        try:
            plan = orchestrator.resolve_clarification(goal_id, answer)
        except (ValueError, OrchestratorError, PlannerError) as error:
            _fail(error)
        _render_goal_plan(plan)


@app.command()
def status(
    config: str = ConfigOption,
    goal_id: Optional[str] = typer.Option(None, "--goal", "-g", help="Show the tasks of one goal."),
) -> None:
    """Report goals and task progress."""
    config_data, repo_root = _open(config)
    project_id = _project_id(config_data, repo_root)
    typer.echo(f"Project: {project_id}")
    with _store_for(config_data, repo_root) as store:
        orchestrator = _build_orchestrator(config_data, store)
        if goal_id:
            try:
                plan = orchestrator.get_goal_with_tasks(goal_id)
            except OrchestratorError as error:
                _fail(error)
            _render_goal_plan(plan)
            return

        goals = orchestrator.list_goals(project_id)
        if not goals:
            typer.echo("No goals recorded.")
            return
        for goal in goals:
            tasks = store.list_tasks(goal.id)
            done = sum(1 for task in tasks if task.status is TaskStatus.SUCCEEDED)
            typer.echo(f"- {goal.id} [{goal.status.value}] {goal.title} ({done}/{len(tasks)} tasks done)")


@app.command()
def stash(
    config: str = ConfigOption,
    branch: Optional[str] = typer.Option(None, "--branch", "-b", help="Branch label (defaults to current)."),
) -> None:
    """Stash uncommitted work under the branch's auto-stash label."""
    config_data, repo_root = _open(config)
    workspace = _build_workspace(config_data)
    try:
        label = workspace.stash(repo_root, _current_branch_or(workspace, repo_root, branch))
    except GitError as error:
        _fail(error)
    typer.echo(f"Stashed as {label}" if label else "Nothing to stash.")


@app.command()
def unstash(
    config: str = ConfigOption,
    branch: Optional[str] = typer.Option(None, "--branch", "-b", help="Branch label (defaults to current)."),
) -> None:
    """Restore the branch's auto-stash, if any."""
    config_data, repo_root = _open(config)
    workspace = _build_workspace(config_data)
    try:
        restored = workspace.pop_stash_for_branch(repo_root, _current_branch_or(workspace, repo_root, branch))
    except GitError as error:
        _fail(error)
    typer.echo("Stash restored." if restored else "No stash found for branch.")


@app.command("drop-stashes")
def drop_stashes(
    branch: str = typer.Argument(..., help="Branch whose auto-stashes are dropped."),
    config: str = ConfigOption,
) -> None:
    """Drop every auto-stash recorded for a branch."""
    config_data, repo_root = _open(config)
    workspace = _build_workspace(config_data)
    try:
        dropped = workspace.drop_branch_stashes(repo_root, branch)
    except GitError as error:
        _fail(error)
    typer.echo(f"Dropped {dropped} stash(es).")


@app.command("changed-files")
def changed_files(
    branch: str = typer.Argument(..., help="Task branch to inspect."),
    config: str = ConfigOption,
    base: Optional[str] = typer.Option(None, "--base", help="Base ref for the diff."),
    file: List[str] = typer.Option(None, "--file", "-f", help="Explicit changed path (repeatable)."),
) -> None:
    """List files changed on a branch."""
    config_data, repo_root = _open(config)
    base_ref = base or _section(config_data, "git").get("base_ref") or "main"
    workspace = _build_workspace(config_data)
    try:
        workspace.probe_repository(repo_root)
    except GitError as error:
        LOGGER.warning("Git unavailable; skipping diff: %s", error)
    with _store_for(config_data, repo_root) as store:
        record = BranchRecord(
            name=branch,
            staged_files=store.get_staged_files(_project_id(config_data, repo_root), branch),
        )
    resolver = ChangeSetResolver(workspace.list_branch_changed_paths, base_ref=base_ref)
    options = {"changed_files": list(file)} if file else None
    paths = resolver.resolve(workspace.context_for(repo_root), record, options)
    if not paths:
        typer.echo("No changed files.")
        return
    for path in paths:
        typer.echo(path)


@app.command("auto-save")
def auto_save(
    config: str = ConfigOption,
    label: Optional[str] = typer.Option(None, "--label", "-l", help="Label used in the commit message."),
    message: Optional[str] = typer.Option(None, "--message", "-m", help="Commit message override."),
) -> None:
    """Commit pending work so the working tree is clean."""
    config_data, repo_root = _open(config)
    workspace = _build_workspace(config_data)
    try:
        committed = workspace.ensure_clean(repo_root, branch_label=label, commit_message=message)
    except GitError as error:
        _fail(error)
    typer.echo("Committed pending changes." if committed else "Working tree already clean.")


if __name__ == "__main__":
    app()
