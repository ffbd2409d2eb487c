"""Resolve the files a task changed.

Resolution is layered: an explicit override wins, then the authoritative git
diff between the base ref and the task branch, then the staged-files record
kept for the branch, and finally an empty list.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Mapping, Optional

from .vcs import GitContext

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_REF = "main"

DiffFn = Callable[..., Any]
StagedParser = Callable[[Any], Any]


@dataclass(slots=True)
class BranchRecord:
    """Branch name plus the raw staged-files column recorded for it."""

    name: Optional[str] = None
    staged_files: Any = None


def parse_staged_files(raw: Any) -> List[dict]:
    """Decode a staged-files column into a list of entry mappings.

    Accepts a JSON string or an already decoded list. Invalid JSON and
    unexpected shapes produce an empty list.
    """
    if raw is None:
        return []
    payload = raw
    if isinstance(raw, (bytes, bytearray)):
        payload = raw.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        text = payload.strip()
        if not text:
            return []
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return []
    if not isinstance(payload, list):
        return []
    return [entry for entry in payload if isinstance(entry, Mapping)]


def _clean(values: Iterable[Any]) -> List[str]:
    seen: set[str] = set()
    cleaned: List[str] = []
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if not text or text in seen:
            continue
        seen.add(text)
        cleaned.append(text)
    return cleaned


def _explicit_paths(options: Mapping[str, Any] | None) -> Optional[List[Any]]:
    if not options:
        return None
    for key in ("changed_files", "changed_paths"):
        value = options.get(key)
        if isinstance(value, list):
            return value
    return None


def resolve_changed_paths(
    options: Mapping[str, Any] | None,
    context: GitContext | None,
    branch: BranchRecord | None,
    diff_fn: DiffFn | None,
    staged_parser: StagedParser | None = parse_staged_files,
    *,
    base_ref: str = DEFAULT_BASE_REF,
) -> List[str]:
    """Return the ordered, de-duplicated set of paths changed on ``branch``."""

    explicit = _explicit_paths(options)
    if explicit is not None:
        return _clean(explicit)

    branch_name = branch.name if branch else None

    if context is not None and context.git_ready and diff_fn is not None:
        try:
            diff_paths = diff_fn(context, base_ref=base_ref, branch_ref=branch_name)
        except Exception as error:  # noqa: BLE001 - next tier takes over
            LOGGER.warning("Git diff for branch %s failed; using staged files: %s", branch_name, error)
        else:
            if isinstance(diff_paths, list):
                cleaned = _clean(diff_paths)
                if cleaned:
                    return cleaned

    if branch is not None and staged_parser is not None:
        try:
            entries = staged_parser(branch.staged_files)
        except Exception as error:  # noqa: BLE001 - fall back to empty
            LOGGER.warning("Could not parse staged files for branch %s: %s", branch_name, error)
        else:
            if isinstance(entries, list):
                paths = [entry.get("path") for entry in entries if isinstance(entry, Mapping)]
                return _clean(paths)

    return []


class ChangeSetResolver:
    """Bind the diff and staged-file collaborators for repeated resolution."""

    def __init__(
        self,
        diff_fn: DiffFn | None,
        *,
        staged_parser: StagedParser | None = parse_staged_files,
        base_ref: str = DEFAULT_BASE_REF,
    ) -> None:
        self.diff_fn = diff_fn
        self.staged_parser = staged_parser
        self.base_ref = base_ref or DEFAULT_BASE_REF

    def resolve(
        self,
        context: GitContext | None,
        branch: BranchRecord | None,
        options: Mapping[str, Any] | None = None,
    ) -> List[str]:
        return resolve_changed_paths(
            options,
            context,
            branch,
            self.diff_fn,
            self.staged_parser,
            base_ref=self.base_ref,
        )


__all__ = [
    "BranchRecord",
    "ChangeSetResolver",
    "DEFAULT_BASE_REF",
    "parse_staged_files",
    "resolve_changed_paths",
]
