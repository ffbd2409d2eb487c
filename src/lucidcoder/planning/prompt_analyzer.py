"""Decide whether a request is concrete enough to plan or needs clarification."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ..memory.schema import TaskType

MIN_WORD_LENGTH = 3
MAX_LABEL_DEPTH = 3

STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "can", "could", "for",
        "from", "get", "got", "has", "have", "how", "i", "if", "in", "into", "is", "it",
        "its", "just", "let", "lets", "me", "my", "need", "needs", "not", "now", "of",
        "on", "or", "our", "please", "should", "so", "some", "that", "the", "their",
        "them", "then", "there", "these", "this", "those", "to", "up", "us", "want",
        "was", "we", "were", "what", "when", "where", "which", "while", "who", "why",
        "will", "with", "would", "you", "your",
    }
)

GENERIC_VERBS = frozenset(
    {
        "add", "adjust", "build", "change", "check", "clean", "create", "do", "edit",
        "enhance", "fix", "handle", "help", "implement", "improve", "look", "make",
        "modify", "optimize", "redo", "refactor", "repair", "resolve", "rework",
        "see", "solve", "sort", "tidy", "tweak", "update", "work",
    }
)

VAGUE_WORDS = frozenset(
    {
        "all", "anything", "app", "application", "better", "broken", "bug", "bugs",
        "code", "crash", "crashes", "error", "errors", "everything", "faster",
        "feature", "features", "good", "issue", "issues", "nicer", "problem",
        "problems", "project", "something", "stuff", "thing", "things", "whole",
        "work", "working", "wrong",
    }
)

_WORD = re.compile(r"[A-Za-z0-9_./#-]+")
_IDENTIFIER_MARKERS = re.compile(r"[./_#0-9]")
_INNER_CAPITAL = re.compile(r"[a-z][A-Z]")
_NESTED_LABEL = re.compile(
    r"^(?:current request|user answer|original request)\s*:\s*(.+)$",
    re.IGNORECASE | re.DOTALL,
)


@dataclass(slots=True)
class PromptAssessment:
    """Outcome of :func:`assess_prompt` with the words that drove it."""

    task_type: TaskType
    request: str
    concrete_terms: List[str] = field(default_factory=list)

    @property
    def needs_clarification(self) -> bool:
        return self.task_type is TaskType.CLARIFICATION


def _unwrap_label(value: str, depth: int = 0) -> str:
    trimmed = value.strip()
    if not trimmed or depth >= MAX_LABEL_DEPTH:
        return trimmed
    match = _NESTED_LABEL.match(trimmed)
    if not match:
        return trimmed
    return _unwrap_label(match.group(1), depth + 1)


def _value_after_prefix(lines: List[str], prefix: str) -> str:
    lowered = prefix.lower()
    for line in reversed(lines):
        if line.lower().startswith(lowered):
            return line[len(prefix):].strip()
    return ""


def extract_latest_request(prompt: Optional[str]) -> str:
    """Return the newest request inside a clarification transcript.

    Transcripts carry ``Current request:``, ``User answer:`` and
    ``Original request:`` lines; plain prompts come back trimmed.
    """
    raw = str(prompt or "")
    if not raw:
        return raw
    lines = [line.strip() for line in raw.splitlines()]

    current = _value_after_prefix(lines, "Current request:")
    if current:
        return _unwrap_label(current)

    answer = _value_after_prefix(lines, "User answer:")
    normalized_answer = _unwrap_label(answer) if answer else ""

    original = _value_after_prefix(lines, "Original request:")
    normalized_original = _unwrap_label(original) if original else ""
    if normalized_original:
        return normalized_original
    if normalized_answer:
        return normalized_answer
    return _unwrap_label(raw)


def _looks_like_identifier(word: str) -> bool:
    if _IDENTIFIER_MARKERS.search(word):
        # A bare number or punctuation run is not an identifier.
        return any(ch.isalpha() for ch in word)
    return bool(_INNER_CAPITAL.search(word))


def _is_concrete(word: str) -> bool:
    stripped = word.strip("-.")
    if not stripped:
        return False
    if _looks_like_identifier(stripped):
        return True
    lowered = stripped.lower()
    if len(lowered) < MIN_WORD_LENGTH:
        return False
    return lowered not in STOP_WORDS and lowered not in GENERIC_VERBS and lowered not in VAGUE_WORDS


def concrete_terms(text: str) -> Tuple[str, ...]:
    return tuple(word.strip("-.") for word in _WORD.findall(text) if _is_concrete(word))


def assess_prompt(prompt: Optional[str]) -> PromptAssessment:
    """Classify ``prompt`` and report the concrete words found in it."""
    request = extract_latest_request(prompt).strip()
    if not request:
        return PromptAssessment(task_type=TaskType.CLARIFICATION, request="")
    terms = list(concrete_terms(request))
    task_type = TaskType.ANALYSIS if terms else TaskType.CLARIFICATION
    return PromptAssessment(task_type=task_type, request=request, concrete_terms=terms)


def classify_prompt(prompt: Optional[str]) -> TaskType:
    """Return ``CLARIFICATION`` for empty or vague prompts, else ``ANALYSIS``."""
    return assess_prompt(prompt).task_type


__all__ = [
    "PromptAssessment",
    "assess_prompt",
    "classify_prompt",
    "concrete_terms",
    "extract_latest_request",
]
