"""Shared helpers for shaping planner output and goal metadata."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

MAX_TITLE_LENGTH = 96
MAX_ACRONYM_LENGTH = 5

TITLE_STOPWORDS = frozenset(
    {"a", "an", "and", "at", "but", "for", "from", "in", "of", "on", "or", "the", "to", "with"}
)

TEST_EXECUTION_PHRASES: tuple[str, ...] = (
    "run tests",
    "run the tests",
    "run unit tests",
    "run integration tests",
    "run the test suite",
    "execute tests",
    "execute the tests",
    "re-run tests",
    "rerun tests",
    "verify tests pass",
    "ensure tests pass",
    "confirm tests pass",
)

TEST_COMMAND_PREFIXES: tuple[str, ...] = (
    "pytest",
    "python -m pytest",
    "npm test",
    "pnpm test",
    "yarn test",
    "npx vitest",
)

_PACKAGE_SCRIPT_TEST = re.compile(r"\b(npm|yarn|pnpm)\s+run\s+test\b", re.IGNORECASE)
_VERIFY_VERB = re.compile(r"^(run|re-?run|execute|verify|check)\b", re.IGNORECASE)
_TEST_NOUN = re.compile(r"\b(unit\s+tests|integration\s+tests|tests|vitest|pytest|coverage)\b", re.IGNORECASE)
_TITLE_PREFIX = re.compile(
    r"^(?:please|can you|could you|would you|let['’]?s|lets|we need to|i need to|"
    r"need to|make sure to|ensure)[\s,:-]*",
    re.IGNORECASE,
)
_CRITERIA_HEADER = re.compile(r"^\s*(acceptance\s*criteria|ac)\s*:\s*(.*)$", re.IGNORECASE)
_SECTION_HEADER = re.compile(r"^[A-Za-z][A-Za-z0-9 _-]{0,40}:\s*$")
_BULLET = re.compile(r"^(?:[-*•]|\d+[.)])\s+(.+?)\s*$")


@dataclass(slots=True, frozen=True)
class ChildPlan:
    """Normalised child prompt with a display title."""

    prompt: str
    title: str


def is_test_execution_step(value: Any) -> bool:
    """Return True when a plan step only asks to run the test suite."""
    if not isinstance(value, str):
        return False
    text = value.strip()
    if not text:
        return False
    if _PACKAGE_SCRIPT_TEST.search(text):
        return True
    lowered = text.lower()
    for prefix in TEST_COMMAND_PREFIXES:
        if lowered.startswith(prefix):
            return True
    for phrase in TEST_EXECUTION_PHRASES:
        if phrase in lowered:
            return True
    return bool(_VERIFY_VERB.match(text) and _TEST_NOUN.search(text))


def derive_goal_title(value: Optional[str], *, fallback: str = "Goal") -> str:
    """Build a short title-cased heading from the first line of ``value``."""
    trimmed = (value or "").strip() if isinstance(value, str) else ""
    if not trimmed:
        return fallback

    first_line = next((line.strip() for line in trimmed.splitlines() if line.strip()), trimmed)
    sanitized = first_line.strip("'\"`")
    without_prefix = _TITLE_PREFIX.sub("", sanitized).strip()
    if not without_prefix:
        return fallback

    collapsed = re.sub(r"\s+", " ", without_prefix)
    if len(collapsed) > MAX_TITLE_LENGTH:
        collapsed = re.sub(r"\s+\S*$", "", collapsed[:MAX_TITLE_LENGTH])

    words = []
    for index, word in enumerate(collapsed.split(" ")):
        lower = word.lower()
        keep_upper = (
            word == word.upper()
            and any(ch.isupper() for ch in word)
            and len(word) <= MAX_ACRONYM_LENGTH
            and lower not in TITLE_STOPWORDS
        )
        if keep_upper:
            words.append(word)
        elif index > 0 and lower in TITLE_STOPWORDS:
            words.append(lower)
        else:
            words.append(lower[:1].upper() + lower[1:])
    return " ".join(words)


def normalize_child_prompts(entries: Iterable[Any] | None) -> List[ChildPlan]:
    """Trim planner entries, dropping empties, repeats and test-run steps.

    Entries may be plain strings or mappings with ``prompt`` and an optional
    ``title``.
    """
    plans: List[ChildPlan] = []
    seen: set[str] = set()
    for index, entry in enumerate(entries or []):
        provided_title = ""
        if isinstance(entry, Mapping):
            raw_prompt = entry.get("prompt")
            raw_title = entry.get("title")
            provided_title = raw_title.strip() if isinstance(raw_title, str) else ""
        else:
            raw_prompt = entry
        prompt = raw_prompt.strip() if isinstance(raw_prompt, str) else ""
        if not prompt or prompt in seen or is_test_execution_step(prompt):
            continue
        seen.add(prompt)
        title = provided_title or derive_goal_title(prompt, fallback=f"Child Goal {index + 1}")
        plans.append(ChildPlan(prompt=prompt, title=title))
    return plans


def extract_acceptance_criteria(prompt: Optional[str]) -> List[str]:
    """Collect the bullet list under an ``Acceptance criteria:`` header."""
    lines = (prompt or "").splitlines()
    criteria: List[str] = []
    start = -1
    for index, line in enumerate(lines):
        match = _CRITERIA_HEADER.match(line)
        if match:
            inline = match.group(2).strip()
            if inline:
                criteria.append(inline)
            start = index + 1
            break
    if start == -1:
        return []

    for raw in lines[start:]:
        stripped = raw.strip()
        if not stripped:
            if criteria:
                break
            continue
        if _SECTION_HEADER.match(stripped):
            break
        bullet = _BULLET.match(stripped)
        if bullet:
            criteria.append(bullet.group(1).strip())
    return _unique(criteria)


def normalize_clarifying_questions(items: Any) -> List[str]:
    if not isinstance(items, list):
        return []
    return _unique(item.strip() for item in items if isinstance(item, str))


def build_goal_metadata(prompt: Optional[str], clarifying_questions: Any = None) -> Dict[str, Any]:
    """Metadata recorded on a goal at creation time; empty keys are omitted."""
    metadata: Dict[str, Any] = {}
    criteria = extract_acceptance_criteria(prompt)
    if criteria:
        metadata["acceptance_criteria"] = criteria
    questions = normalize_clarifying_questions(clarifying_questions)
    if questions:
        metadata["clarifying_questions"] = questions
    return metadata


def _unique(values: Iterable[str]) -> List[str]:
    result: List[str] = []
    for value in values:
        if value and value not in result:
            result.append(value)
    return result


__all__ = [
    "ChildPlan",
    "build_goal_metadata",
    "derive_goal_title",
    "extract_acceptance_criteria",
    "is_test_execution_step",
    "normalize_child_prompts",
    "normalize_clarifying_questions",
]
