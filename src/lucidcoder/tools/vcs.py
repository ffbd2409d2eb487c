"""Git workspace management for task isolation.

:class:`GitWorkspaceManager` is a stateless facade over an on-disk repository:
branches, stashes and commits live in git itself. The manager only keeps a
per-path lock (git cannot mutate one working tree concurrently) and the
readiness state of each repository it has initialised.
"""

from __future__ import annotations

import logging
import re
import stat
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from .git_runner import GitCommandError, GitProcessRunner, GitResult

LOGGER = logging.getLogger(__name__)

STASH_LABEL_PREFIX = "lucidcoder-auto/"
DEFAULT_AUTHOR_NAME = "LucidCoder"
DEFAULT_AUTHOR_EMAIL = "dev@lucidcoder.local"
NOT_A_REPOSITORY_CODE = 128
UNKNOWN_OPTION_CODE = 129

_NOTHING_TO_COMMIT = re.compile(r"nothing to commit", re.IGNORECASE)
_UNSUPPORTED_FLAG = re.compile(r"unknown (switch|option)", re.IGNORECASE)
_STASH_LINE = re.compile(r"^(stash@\{(\d+)\}):\s*(.*)$")


def stash_label_for(branch_name: str) -> str:
    """Return the stash message used to tag ``branch_name``'s auto-stash."""
    return f"{STASH_LABEL_PREFIX}{branch_name}"


def is_nothing_to_commit(error: BaseException) -> bool:
    return bool(_NOTHING_TO_COMMIT.search(str(error)))


class RepositoryState(str, Enum):
    """Readiness of a project repository; ``READY`` is terminal."""

    ABSENT = "absent"
    INITIALIZING = "initializing"
    READY = "ready"


@dataclass(slots=True, frozen=True)
class StashRecord:
    """One parsed ``git stash list`` entry."""

    ref: str
    index: int
    label: str
    message: str


@dataclass(slots=True)
class GitContext:
    """Minimal view of a project's git state handed to diff collaborators."""

    project_path: Optional[Path]
    git_ready: bool = False


def parse_stash_list(output: str) -> List[StashRecord]:
    """Parse ``git stash list`` output, skipping lines without a ``stash@{N}:`` prefix."""
    records: List[StashRecord] = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        match = _STASH_LINE.match(line)
        if not match:
            continue
        message = match.group(3).strip()
        tokens = message.split()
        label = tokens[-1] if tokens else ""
        records.append(
            StashRecord(
                ref=match.group(1),
                index=int(match.group(2)),
                label=label,
                message=message,
            )
        )
    return records


class _PathLocks:
    """Map of project path to re-entrant lock."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock


def _path_key(project_path: Path | str) -> str:
    return str(Path(project_path).expanduser().resolve(strict=False))


class GitWorkspaceManager:
    """Repository lifecycle, branch-scoped stashes and idempotent commits."""

    def __init__(self, runner: GitProcessRunner | None = None) -> None:
        self.runner = runner or GitProcessRunner()
        self._locks = _PathLocks()
        self._states: Dict[str, RepositoryState] = {}
        self._states_guard = threading.Lock()

    # ------------------------------------------------------------------ plumbing
    @contextmanager
    def locked(self, project_path: Path | str) -> Iterator[None]:
        """Hold the project's lock across a sequence of git operations."""
        if project_path is None or not str(project_path).strip():
            raise ValueError("Project path is required")
        lock = self._locks.get(_path_key(project_path))
        with lock:
            yield

    def _git(
        self,
        project_path: Path | str,
        args: Sequence[str],
        *,
        allow_failure: bool = False,
    ) -> GitResult:
        with self.locked(project_path):
            return self.runner.run(project_path, list(args), allow_failure=allow_failure)

    def _set_state(self, project_path: Path | str, state: RepositoryState) -> None:
        with self._states_guard:
            self._states[_path_key(project_path)] = state

    def readiness(self, project_path: Path | str) -> RepositoryState:
        with self._states_guard:
            return self._states.get(_path_key(project_path), RepositoryState.ABSENT)

    def context_for(self, project_path: Path | str | None) -> GitContext:
        if project_path is None or not str(project_path).strip():
            return GitContext(project_path=None, git_ready=False)
        ready = self.readiness(project_path) is RepositoryState.READY
        return GitContext(project_path=Path(project_path), git_ready=ready)

    # --------------------------------------------------------------- repository
    def ensure_repository(self, project_path: Path | str, *, default_branch: str = "main") -> None:
        """Make sure ``project_path`` is a git work tree, initialising it if needed."""
        if project_path is None or not str(project_path).strip():
            raise ValueError("Project path is required to ensure git repository")

        with self.locked(project_path):
            if self.readiness(project_path) is RepositoryState.READY:
                return
            try:
                self._git(project_path, ["rev-parse", "--is-inside-work-tree"])
            except GitCommandError as error:
                if error.code != NOT_A_REPOSITORY_CODE:
                    raise
            else:
                self._set_state(project_path, RepositoryState.READY)
                return

            self._set_state(project_path, RepositoryState.INITIALIZING)
            try:
                self._initialise(project_path, default_branch)
            except Exception:
                self._set_state(project_path, RepositoryState.ABSENT)
                raise
            self._set_state(project_path, RepositoryState.READY)
            LOGGER.info("Initialised git repository at %s (branch %s)", project_path, default_branch)

    def probe_repository(self, project_path: Path | str) -> bool:
        """Return True when ``project_path`` is already a work tree; never initialises."""
        with self.locked(project_path):
            if self.readiness(project_path) is RepositoryState.READY:
                return True
            result = self._git(project_path, ["rev-parse", "--is-inside-work-tree"], allow_failure=True)
            if result.code != 0:
                return False
            self._set_state(project_path, RepositoryState.READY)
            return True

    def _initialise(self, project_path: Path | str, default_branch: str) -> None:
        try:
            self._git(project_path, ["init", "-b", default_branch])
        except GitCommandError as error:
            if not self._flag_unsupported(error):
                raise
            LOGGER.debug("git init -b unsupported; falling back to init + checkout -B")
            self._git(project_path, ["init"])
            self._git(project_path, ["checkout", "-B", default_branch])

    @staticmethod
    def _flag_unsupported(error: GitCommandError) -> bool:
        if error.code == UNKNOWN_OPTION_CODE:
            return True
        return bool(_UNSUPPORTED_FLAG.search(str(error)))

    def configure_identity(
        self,
        project_path: Path | str,
        *,
        name: str | None = None,
        email: str | None = None,
    ) -> None:
        final_name = (name or "").strip() or DEFAULT_AUTHOR_NAME
        final_email = (email or "").strip() or DEFAULT_AUTHOR_EMAIL
        with self.locked(project_path):
            self._git(project_path, ["config", "user.name", final_name])
            self._git(project_path, ["config", "user.email", final_email])

    def ensure_initial_commit(self, project_path: Path | str, message: str = "Initial commit") -> None:
        with self.locked(project_path):
            self._git(project_path, ["add", "--all"])
            try:
                self._git(project_path, ["commit", "-m", message])
            except GitCommandError as error:
                if not is_nothing_to_commit(error):
                    raise
                # An empty project still needs a root commit for stash and diff.
                if self.head_commit(project_path) is None:
                    self._git(project_path, ["commit", "--allow-empty", "-m", message])

    # ------------------------------------------------------------------- status
    def current_branch(self, project_path: Path | str) -> str:
        result = self._git(project_path, ["rev-parse", "--abbrev-ref", "HEAD"])
        return result.stdout.strip()

    def has_uncommitted_changes(self, project_path: Path | str) -> bool:
        result = self._git(project_path, ["status", "--porcelain"])
        return bool(result.stdout.strip())

    def head_commit(self, project_path: Path | str) -> str | None:
        result = self._git(project_path, ["rev-parse", "--verify", "HEAD"], allow_failure=True)
        if result.code != 0:
            return None
        return result.stdout.strip() or None

    # ----------------------------------------------------------------- branches
    def branch_exists(self, project_path: Path | str, branch_name: str) -> bool:
        if not branch_name:
            return False
        result = self._git(
            project_path,
            ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch_name}"],
            allow_failure=True,
        )
        return result.code == 0

    def checkout_branch(self, project_path: Path | str, branch_name: str, *, create: bool = True) -> None:
        """Switch to ``branch_name``; an existing branch is never reset."""
        if not branch_name:
            raise ValueError("Branch name is required")
        with self.locked(project_path):
            if self.branch_exists(project_path, branch_name) or not create:
                self._git(project_path, ["checkout", branch_name])
            else:
                self._git(project_path, ["checkout", "-b", branch_name])

    def list_branch_changed_paths(
        self,
        context: GitContext,
        *,
        base_ref: str = "main",
        branch_ref: str | None = None,
    ) -> List[str]:
        """Return paths that differ between ``base_ref`` and ``branch_ref``."""
        if not context or not context.git_ready or context.project_path is None:
            return []
        base = (base_ref or "").strip()
        branch = (branch_ref or "").strip()
        if not base or not branch:
            return []
        result = self._git(context.project_path, ["diff", "--name-only", f"{base}..{branch}"])
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    # ------------------------------------------------------------------ commits
    def commit_all(self, project_path: Path | str, message: str) -> bool:
        """Stage everything and commit; ``False`` when there was nothing to commit."""
        with self.locked(project_path):
            self._git(project_path, ["add", "--all"])
            try:
                self._git(project_path, ["commit", "-m", message])
            except GitCommandError as error:
                if is_nothing_to_commit(error):
                    return False
                raise
            return True

    def ensure_clean(
        self,
        project_path: Path | str,
        branch_label: str | None = None,
        commit_message: str | None = None,
    ) -> bool:
        """Auto-save pending work so the tree is clean; ``False`` if it already was."""
        with self.locked(project_path):
            if not self.has_uncommitted_changes(project_path):
                return False
            message = commit_message or f"chore({branch_label or 'workspace'}): auto-save"
            return self.commit_all(project_path, message)

    # ------------------------------------------------------------------ stashes
    def list_stashes(self, project_path: Path | str) -> List[StashRecord]:
        result = self._git(project_path, ["stash", "list"])
        return parse_stash_list(result.stdout)

    def _branch_stashes(self, project_path: Path | str, branch_name: str) -> List[StashRecord]:
        label = stash_label_for(branch_name)
        return [record for record in self.list_stashes(project_path) if record.label == label]

    def stash(self, project_path: Path | str, branch_name: str | None) -> str | None:
        """Stash the dirty tree under ``branch_name``'s label; ``None`` when nothing to do."""
        if not branch_name:
            return None
        with self.locked(project_path):
            if not self.has_uncommitted_changes(project_path):
                return None
            label = stash_label_for(branch_name)
            self._git(project_path, ["stash", "push", "--include-untracked", "-m", label])
        LOGGER.info("Stashed work for branch %s as %s", branch_name, label)
        return label

    def pop_stash_for_branch(self, project_path: Path | str, branch_name: str | None) -> bool:
        if not branch_name:
            return False
        with self.locked(project_path):
            matches = self._branch_stashes(project_path, branch_name)
            if not matches:
                return False
            target = matches[0]
            self._git(project_path, ["stash", "pop", target.ref])
        LOGGER.info("Restored stash %s for branch %s", target.ref, branch_name)
        return True

    def drop_branch_stashes(self, project_path: Path | str, branch_name: str | None) -> int:
        """Drop every auto-stash of ``branch_name``; returns how many were dropped."""
        if not branch_name:
            return 0
        with self.locked(project_path):
            matches = self._branch_stashes(project_path, branch_name)
            # Highest index first: dropping stash@{N} renumbers every entry above N.
            for record in sorted(matches, key=lambda item: item.index, reverse=True):
                self._git(project_path, ["stash", "drop", record.ref])
        if matches:
            LOGGER.info("Dropped %d stash(es) for branch %s", len(matches), branch_name)
        return len(matches)

    # -------------------------------------------------------------------- files
    @staticmethod
    def file_exists(project_path: Path | str, relative_path: str | None) -> bool:
        if not relative_path:
            return False
        # Absolute inputs stay rooted in the project.
        target = Path(project_path) / relative_path.lstrip("/\\")
        try:
            info = target.stat()
        except FileNotFoundError:
            return False
        return stat.S_ISREG(info.st_mode)


__all__ = [
    "DEFAULT_AUTHOR_EMAIL",
    "DEFAULT_AUTHOR_NAME",
    "GitContext",
    "GitWorkspaceManager",
    "RepositoryState",
    "STASH_LABEL_PREFIX",
    "StashRecord",
    "is_nothing_to_commit",
    "parse_stash_list",
    "stash_label_for",
]
