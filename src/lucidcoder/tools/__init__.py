"""Git tooling used to isolate and inspect task workspaces."""

from .changeset import BranchRecord, ChangeSetResolver, parse_staged_files, resolve_changed_paths
from .git_runner import (
    GitCommandError,
    GitError,
    GitErrorKind,
    GitMissingError,
    GitProcessRunner,
    GitResult,
    GitTimeoutError,
)
from .vcs import GitContext, GitWorkspaceManager, RepositoryState, StashRecord, stash_label_for

__all__ = [
    "BranchRecord",
    "ChangeSetResolver",
    "GitCommandError",
    "GitContext",
    "GitError",
    "GitErrorKind",
    "GitMissingError",
    "GitProcessRunner",
    "GitResult",
    "GitTimeoutError",
    "GitWorkspaceManager",
    "RepositoryState",
    "StashRecord",
    "parse_staged_files",
    "resolve_changed_paths",
    "stash_label_for",
]
