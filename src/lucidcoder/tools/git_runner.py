"""Spawn the ``git`` binary and classify its outcome.

Every git invocation in the code base goes through :class:`GitProcessRunner`.
A single call is exactly one subprocess run; callers compose retries.
"""

from __future__ import annotations

import errno
import logging
import os
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Sequence

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0


class GitErrorKind(str, Enum):
    """Distinguished failure kinds callers can switch on."""

    MISSING = "GIT_MISSING"
    COMMAND_FAILED = "COMMAND_FAILED"
    TIMEOUT = "TIMEOUT"


class GitError(RuntimeError):
    """Base class for git failures; ``kind`` identifies the variant."""

    kind: GitErrorKind = GitErrorKind.COMMAND_FAILED

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class GitMissingError(GitError):
    """Raised when the git executable cannot be spawned."""

    kind = GitErrorKind.MISSING


class GitCommandError(GitError):
    """Raised when git exits with a non-zero status."""

    kind = GitErrorKind.COMMAND_FAILED

    def __init__(
        self,
        message: str,
        *,
        code: int,
        args: Sequence[str] = (),
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.code = code
        self.git_args = tuple(args)
        self.stdout = stdout
        self.stderr = stderr


class GitTimeoutError(GitError):
    """Raised when git does not exit before the deadline."""

    kind = GitErrorKind.TIMEOUT

    def __init__(self, message: str, *, timeout: float, args: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.timeout = timeout
        self.git_args = tuple(args)


@dataclass(slots=True, frozen=True)
class GitResult:
    """Captured output of a finished git process."""

    stdout: str
    stderr: str
    code: int


def failure_message(args: Sequence[str], code: int, stdout: str, stderr: str) -> str:
    """Pick the user-facing message for a failed git command."""
    stderr_text = (stderr or "").strip()
    if stderr_text:
        return stderr_text
    stdout_text = (stdout or "").strip()
    if stdout_text:
        return stdout_text
    subcommand = args[0] if args else ""
    return f"git {subcommand} failed with code {code}"


def _decode(payload: bytes | None) -> str:
    if not payload:
        return ""
    return payload.decode("utf-8", errors="replace")


class GitProcessRunner:
    """Run git commands inside a project directory."""

    def __init__(
        self,
        *,
        executable: str = "git",
        timeout: float | None = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.executable = executable
        self.timeout = timeout

    def run(
        self,
        project_path: Path | str | None,
        args: Sequence[str],
        *,
        allow_failure: bool = False,
        timeout: float | None = None,
    ) -> GitResult:
        """Run ``git <args>`` with ``cwd=project_path``.

        ``allow_failure`` returns the result for any exit code instead of
        raising :class:`GitCommandError`. A missing executable always raises
        :class:`GitMissingError`.
        """

        if project_path is None or not str(project_path).strip():
            raise ValueError("Cannot run git command without project path")

        command = [self.executable, *args]
        deadline = timeout if timeout is not None else self.timeout
        env = os.environ.copy()
        env.setdefault("GIT_TERMINAL_PROMPT", "0")
        LOGGER.debug("git %s (cwd=%s)", " ".join(args), project_path)

        try:
            process = subprocess.run(  # noqa: S603 - argv list, no shell
                command,
                cwd=str(project_path),
                env=env,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=False,
                check=False,
                timeout=deadline,
            )
        except subprocess.TimeoutExpired as error:
            # subprocess.run kills the child before re-raising.
            raise GitTimeoutError(
                f"git {args[0] if args else ''} timed out after {deadline:.1f}s",
                timeout=float(deadline or 0.0),
                args=args,
            ) from error
        except OSError as error:
            if error.errno == errno.ENOENT:
                raise GitMissingError(
                    "Git is not installed or not available on PATH."
                ) from error
            raise

        stdout = _decode(process.stdout)
        stderr = _decode(process.stderr)
        code = process.returncode
        if code == 0 or allow_failure:
            return GitResult(stdout=stdout, stderr=stderr, code=code)

        message = failure_message(args, code, stdout, stderr)
        raise GitCommandError(message, code=code, args=args, stdout=stdout, stderr=stderr)


__all__ = [
    "DEFAULT_TIMEOUT_SECONDS",
    "GitCommandError",
    "GitError",
    "GitErrorKind",
    "GitMissingError",
    "GitProcessRunner",
    "GitResult",
    "GitTimeoutError",
    "failure_message",
]
