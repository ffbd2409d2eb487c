"""
Planning utilities: prompt classification, fallback decomposition and plan heuristics.
"""

from importlib import import_module
from typing import Any

_EXPORTS = {
    "assess_prompt": "prompt_analyzer",
    "classify_prompt": "prompt_analyzer",
    "extract_latest_request": "prompt_analyzer",
    "build_child_prompts": "fallback",
    "is_planning_error": "fallback",
    "plan_from_prompt": "fallback",
    "derive_goal_title": "heuristics",
    "normalize_child_prompts": "heuristics",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Resolve an exported helper from its submodule on first access."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module = import_module(f"{__name__}.{module_name}")
    return getattr(module, name)
