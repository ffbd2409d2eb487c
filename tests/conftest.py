from __future__ import annotations

import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from lucidcoder.tools.git_runner import GitCommandError, GitResult, failure_message  # noqa: E402


@dataclass(slots=True)
class ScriptedResponse:
    prefix: Tuple[str, ...]
    stdout: str = ""
    stderr: str = ""
    code: int = 0
    error: Optional[BaseException] = None
    once: bool = False


@dataclass(slots=True)
class FakeGitRunner:
    """Stand-in for ``GitProcessRunner`` that records argv and replays scripted results."""

    calls: List[List[str]] = field(default_factory=list)
    responses: List[ScriptedResponse] = field(default_factory=list)

    def on(self, *prefix: str, stdout: str = "", stderr: str = "", code: int = 0,
           error: Optional[BaseException] = None, once: bool = False) -> "FakeGitRunner":
        self.responses.append(
            ScriptedResponse(prefix=tuple(prefix), stdout=stdout, stderr=stderr, code=code, error=error, once=once)
        )
        return self

    def run(self, project_path: Any, args: Sequence[str], *, allow_failure: bool = False,
            timeout: Optional[float] = None) -> GitResult:
        if project_path is None or not str(project_path).strip():
            raise ValueError("Cannot run git command without project path")
        argv = list(args)
        self.calls.append(argv)
        for response in list(self.responses):
            if tuple(argv[: len(response.prefix)]) != response.prefix:
                continue
            if response.once:
                self.responses.remove(response)
            if response.error is not None:
                raise response.error
            if response.code != 0 and not allow_failure:
                message = failure_message(argv, response.code, response.stdout, response.stderr)
                raise GitCommandError(
                    message, code=response.code, args=argv, stdout=response.stdout, stderr=response.stderr
                )
            return GitResult(stdout=response.stdout, stderr=response.stderr, code=response.code)
        return GitResult(stdout="", stderr="", code=0)

    def commands(self, *prefix: str) -> List[List[str]]:
        return [call for call in self.calls if tuple(call[: len(prefix)]) == prefix]


@pytest.fixture()
def fake_runner() -> FakeGitRunner:
    return FakeGitRunner()


@pytest.fixture()
def git_project(tmp_path: Path) -> Path:
    """Empty project directory for tests that drive the real ``git`` binary."""
    if shutil.which("git") is None:
        pytest.skip("git executable not available")
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture()
def git_cmd(git_project: Path):
    """Run raw git in ``git_project`` and return stdout, for assertions only."""

    def run(*args: str) -> str:
        completed = subprocess.run(
            ["git", *args],
            cwd=git_project,
            check=True,
            capture_output=True,
            text=True,
        )
        return completed.stdout

    return run
