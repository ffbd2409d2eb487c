from __future__ import annotations

import os
import threading
import time
from pathlib import Path

import pytest

from lucidcoder.tools.git_runner import GitCommandError
from lucidcoder.tools.vcs import (
    GitContext,
    GitWorkspaceManager,
    RepositoryState,
    parse_stash_list,
    stash_label_for,
)

STASH_LIST = "\n".join(
    [
        "stash@{0}: On main: lucidcoder-auto/main",
        "stash@{1}: On feature/login: lucidcoder-auto/feature/login",
        "stash@{2}: WIP on feature/login: 1a2b3c4 lucidcoder-auto/feature/login",
        "garbage line lucidcoder-auto/feature/login",
    ]
)


def test_ensure_repository_is_single_probe_when_repo_exists(fake_runner, tmp_path) -> None:
    fake_runner.on("rev-parse", "--is-inside-work-tree", stdout="true\n")
    manager = GitWorkspaceManager(fake_runner)

    manager.ensure_repository(tmp_path)

    assert fake_runner.calls == [["rev-parse", "--is-inside-work-tree"]]
    assert manager.readiness(tmp_path) is RepositoryState.READY


def test_ensure_repository_initialises_with_default_branch(fake_runner, tmp_path) -> None:
    fake_runner.on("rev-parse", code=128, stderr="fatal: not a git repository")
    manager = GitWorkspaceManager(fake_runner)

    manager.ensure_repository(tmp_path, default_branch="trunk")

    assert fake_runner.calls == [["rev-parse", "--is-inside-work-tree"], ["init", "-b", "trunk"]]
    assert manager.readiness(tmp_path) is RepositoryState.READY

    manager.ensure_repository(tmp_path, default_branch="trunk")
    assert len(fake_runner.calls) == 2


def test_ensure_repository_falls_back_when_init_flag_unsupported(fake_runner, tmp_path) -> None:
    fake_runner.on("rev-parse", code=128)
    fake_runner.on("init", "-b", code=129, stderr="error: unknown switch `b'")
    manager = GitWorkspaceManager(fake_runner)

    manager.ensure_repository(tmp_path)

    assert fake_runner.calls == [
        ["rev-parse", "--is-inside-work-tree"],
        ["init", "-b", "main"],
        ["init"],
        ["checkout", "-B", "main"],
    ]


def test_ensure_repository_propagates_other_failures(fake_runner, tmp_path) -> None:
    fake_runner.on("rev-parse", code=1, stderr="fatal: something else")
    manager = GitWorkspaceManager(fake_runner)

    with pytest.raises(GitCommandError, match="something else"):
        manager.ensure_repository(tmp_path)
    assert manager.readiness(tmp_path) is RepositoryState.ABSENT


def test_ensure_repository_requires_path(fake_runner) -> None:
    with pytest.raises(ValueError):
        GitWorkspaceManager(fake_runner).ensure_repository("")


def test_configure_identity_trims_and_defaults(fake_runner, tmp_path) -> None:
    manager = GitWorkspaceManager(fake_runner)
    manager.configure_identity(tmp_path, name="  Ada  ", email="   ")

    assert fake_runner.calls == [
        ["config", "user.name", "Ada"],
        ["config", "user.email", "dev@lucidcoder.local"],
    ]


def test_ensure_initial_commit_ignores_nothing_to_commit(fake_runner, tmp_path) -> None:
    fake_runner.on("commit", code=1, stdout="On branch main\nnothing to commit, working tree clean")
    fake_runner.on("rev-parse", "--verify", "HEAD", stdout="abc123\n")
    manager = GitWorkspaceManager(fake_runner)

    manager.ensure_initial_commit(tmp_path)

    assert fake_runner.calls == [
        ["add", "--all"],
        ["commit", "-m", "Initial commit"],
        ["rev-parse", "--verify", "HEAD"],
    ]


def test_ensure_initial_commit_creates_empty_root_commit(fake_runner, tmp_path) -> None:
    fake_runner.on("commit", "-m", code=1, stdout="nothing to commit (create/copy files and use \"git add\" to track)")
    fake_runner.on("rev-parse", "--verify", "HEAD", code=128, stderr="fatal: Needed a single revision")
    manager = GitWorkspaceManager(fake_runner)

    manager.ensure_initial_commit(tmp_path)

    assert fake_runner.commands("commit") == [
        ["commit", "-m", "Initial commit"],
        ["commit", "--allow-empty", "-m", "Initial commit"],
    ]


def test_ensure_initial_commit_raises_other_failures(fake_runner, tmp_path) -> None:
    fake_runner.on("commit", code=128, stderr="fatal: unable to auto-detect email address")
    with pytest.raises(GitCommandError, match="auto-detect"):
        GitWorkspaceManager(fake_runner).ensure_initial_commit(tmp_path)


def test_stash_skips_clean_tree_and_missing_branch(fake_runner, tmp_path) -> None:
    manager = GitWorkspaceManager(fake_runner)

    assert manager.stash(tmp_path, "") is None
    assert fake_runner.calls == []

    assert manager.stash(tmp_path, "feature/login") is None
    assert fake_runner.calls == [["status", "--porcelain"]]


def test_stash_pushes_with_branch_label(fake_runner, tmp_path) -> None:
    fake_runner.on("status", stdout=" M src/app.js\n?? notes.txt\n")
    manager = GitWorkspaceManager(fake_runner)

    label = manager.stash(tmp_path, "feature/login")

    assert label == "lucidcoder-auto/feature/login"
    assert fake_runner.calls[-1] == [
        "stash",
        "push",
        "--include-untracked",
        "-m",
        "lucidcoder-auto/feature/login",
    ]


def test_parse_stash_list_requires_ref_prefix() -> None:
    records = parse_stash_list(STASH_LIST)

    assert [record.ref for record in records] == ["stash@{0}", "stash@{1}", "stash@{2}"]
    assert records[1].index == 1
    assert records[1].label == stash_label_for("feature/login")


def test_pop_stash_targets_exact_ref(fake_runner, tmp_path) -> None:
    fake_runner.on("stash", "list", stdout=STASH_LIST)
    manager = GitWorkspaceManager(fake_runner)

    assert manager.pop_stash_for_branch(tmp_path, "feature/login") is True
    assert fake_runner.calls[-1] == ["stash", "pop", "stash@{1}"]


def test_pop_stash_without_match_issues_no_pop(fake_runner, tmp_path) -> None:
    fake_runner.on("stash", "list", stdout=STASH_LIST)
    manager = GitWorkspaceManager(fake_runner)

    assert manager.pop_stash_for_branch(tmp_path, "feature") is False
    assert manager.pop_stash_for_branch(tmp_path, "") is False
    assert fake_runner.commands("stash", "pop") == []


def test_drop_branch_stashes_drops_highest_index_first(fake_runner, tmp_path) -> None:
    fake_runner.on("stash", "list", stdout=STASH_LIST)
    manager = GitWorkspaceManager(fake_runner)

    dropped = manager.drop_branch_stashes(tmp_path, "feature/login")

    assert dropped == 2
    assert fake_runner.commands("stash", "drop") == [
        ["stash", "drop", "stash@{2}"],
        ["stash", "drop", "stash@{1}"],
    ]
    assert manager.drop_branch_stashes(tmp_path, None) == 0


def test_commit_all_reports_whether_a_commit_happened(fake_runner, tmp_path) -> None:
    manager = GitWorkspaceManager(fake_runner)
    assert manager.commit_all(tmp_path, "feat: add login") is True

    fake_runner.on("commit", code=1, stdout="nothing to commit, working tree clean")
    assert manager.commit_all(tmp_path, "feat: add login") is False

    fake_runner.responses.clear()
    fake_runner.on("commit", code=1, stderr="error: pathspec did not match")
    with pytest.raises(GitCommandError):
        manager.commit_all(tmp_path, "feat: add login")


def test_ensure_clean_uses_default_message(fake_runner, tmp_path) -> None:
    manager = GitWorkspaceManager(fake_runner)
    assert manager.ensure_clean(tmp_path) is False

    fake_runner.on("status", stdout=" M a.txt\n")
    assert manager.ensure_clean(tmp_path) is True
    assert fake_runner.calls[-1] == ["commit", "-m", "chore(workspace): auto-save"]

    manager.ensure_clean(tmp_path, branch_label="feature/x")
    assert fake_runner.calls[-1] == ["commit", "-m", "chore(feature/x): auto-save"]

    manager.ensure_clean(tmp_path, branch_label="feature/x", commit_message="wip")
    assert fake_runner.calls[-1] == ["commit", "-m", "wip"]


def test_current_branch_and_dirty_state(fake_runner, tmp_path) -> None:
    fake_runner.on("rev-parse", "--abbrev-ref", stdout="  feature/login \n")
    fake_runner.on("status", stdout="\n")
    manager = GitWorkspaceManager(fake_runner)

    assert manager.current_branch(tmp_path) == "feature/login"
    assert manager.has_uncommitted_changes(tmp_path) is False


def test_checkout_branch_never_resets_existing_branch(fake_runner, tmp_path) -> None:
    fake_runner.on("rev-parse", "--verify", "--quiet", "refs/heads/topic", code=0)
    fake_runner.on("rev-parse", "--verify", "--quiet", code=1)
    manager = GitWorkspaceManager(fake_runner)

    manager.checkout_branch(tmp_path, "topic")
    manager.checkout_branch(tmp_path, "fresh")

    assert fake_runner.commands("checkout") == [["checkout", "topic"], ["checkout", "-b", "fresh"]]


def test_list_branch_changed_paths(fake_runner, tmp_path) -> None:
    fake_runner.on("diff", stdout="src/a.py\n\n  src/b.py \n")
    manager = GitWorkspaceManager(fake_runner)
    ready = GitContext(project_path=tmp_path, git_ready=True)

    assert manager.list_branch_changed_paths(GitContext(tmp_path, False), branch_ref="topic") == []
    assert manager.list_branch_changed_paths(ready, branch_ref="  ") == []
    assert manager.list_branch_changed_paths(ready, base_ref="main", branch_ref="topic") == ["src/a.py", "src/b.py"]
    assert fake_runner.calls == [["diff", "--name-only", "main..topic"]]


def test_file_exists(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("print('hi')\n", encoding="utf-8")

    assert GitWorkspaceManager.file_exists(tmp_path, "src/app.py") is True
    assert GitWorkspaceManager.file_exists(tmp_path, "src") is False
    assert GitWorkspaceManager.file_exists(tmp_path, "missing.txt") is False
    assert GitWorkspaceManager.file_exists(tmp_path, "") is False


def test_file_exists_keeps_absolute_paths_inside_project(tmp_path: Path) -> None:
    project = tmp_path / "project"
    project.mkdir()
    outside = tmp_path / "secret.txt"
    outside.write_text("x", encoding="utf-8")
    (project / "inner.txt").write_text("y", encoding="utf-8")

    assert GitWorkspaceManager.file_exists(project, str(outside)) is False
    assert GitWorkspaceManager.file_exists(project, "/inner.txt") is True


def test_file_exists_propagates_unexpected_os_errors(tmp_path: Path) -> None:
    (tmp_path / "plain.txt").write_text("x", encoding="utf-8")
    with pytest.raises(NotADirectoryError):
        GitWorkspaceManager.file_exists(tmp_path, "plain.txt/child")


class _SlowRunner:
    """Runner that tracks how many calls overlap per project path."""

    def __init__(self) -> None:
        self.active: dict[str, int] = {}
        self.peak: dict[str, int] = {}
        self._guard = threading.Lock()

    def run(self, project_path, args, *, allow_failure=False, timeout=None):
        key = os.fspath(project_path)
        with self._guard:
            self.active[key] = self.active.get(key, 0) + 1
            self.peak[key] = max(self.peak.get(key, 0), self.active[key])
        time.sleep(0.01)
        with self._guard:
            self.active[key] -= 1
        from lucidcoder.tools.git_runner import GitResult

        return GitResult(stdout="", stderr="", code=0)


def test_calls_on_one_path_never_overlap(tmp_path: Path) -> None:
    runner = _SlowRunner()
    manager = GitWorkspaceManager(runner)
    first = tmp_path / "one"
    second = tmp_path / "two"

    threads = [
        threading.Thread(target=manager.has_uncommitted_changes, args=(path,))
        for path in (first, first, first, second, second)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert runner.peak[os.fspath(first)] == 1
    assert runner.peak[os.fspath(second)] == 1
