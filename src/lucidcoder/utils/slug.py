"""Slug helpers for branch names derived from goal titles."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

BRANCH_PREFIX = "lucidcoder"
MAX_SLUG_LENGTH = 48

_UNSAFE: Pattern[str] = re.compile(r"[^a-z0-9]+")
_HYPHEN_RUN: Pattern[str] = re.compile(r"-{2,}")


def slugify(value: str | None, *, fallback: str = "goal", max_length: int = MAX_SLUG_LENGTH) -> str:
    """Lower-case ``value`` into a ref-safe ``a-z0-9-`` slug."""
    slug = _clean((value or "").strip().lower())
    if not slug:
        slug = _clean(fallback.lower()) or "goal"
    if len(slug) > max_length:
        slug = _abbreviate(slug, max_length)
    return slug


def _clean(value: str) -> str:
    slug = _UNSAFE.sub("-", value)
    return _HYPHEN_RUN.sub("-", slug).strip("-")


def _abbreviate(slug: str, max_length: int) -> str:
    """Trim to ``max_length`` keeping a short hash so long titles stay distinct."""
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix = slug[: max(max_length - len(digest) - 1, 1)].rstrip("-")
    return f"{prefix}-{digest}"


def goal_branch_name(title: str | None, goal_id: str) -> str:
    """Return ``lucidcoder/<slug>-<short id>`` for a goal."""
    short_id = _clean(goal_id.lower())[:8] or "goal"
    return f"{BRANCH_PREFIX}/{slugify(title)}-{short_id}"


__all__ = ["BRANCH_PREFIX", "goal_branch_name", "slugify"]
