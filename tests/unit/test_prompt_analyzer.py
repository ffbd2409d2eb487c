from __future__ import annotations

import pytest

from lucidcoder.memory.schema import TaskType
from lucidcoder.planning.prompt_analyzer import assess_prompt, classify_prompt, extract_latest_request


@pytest.mark.parametrize(
    "prompt",
    [
        "Add a navigation bar",
        "Change the background color to red",
        "Add a login page with email and password",
        "fix TypeError in utils/date.js",
        "update the userProfile component",
    ],
)
def test_concrete_requests_are_analysis(prompt: str) -> None:
    assert classify_prompt(prompt) is TaskType.ANALYSIS


@pytest.mark.parametrize("prompt", ["", "   ", None, "make it better", "fix the bug", "Fix the crash", "help"])
def test_vague_requests_need_clarification(prompt) -> None:
    assert classify_prompt(prompt) is TaskType.CLARIFICATION


def test_assessment_reports_concrete_terms() -> None:
    assessment = assess_prompt("Please add a dark mode toggle to settings.py")

    assert assessment.needs_clarification is False
    assert "settings.py" in assessment.concrete_terms
    assert "toggle" in assessment.concrete_terms
    assert "add" not in [term.lower() for term in assessment.concrete_terms]


def test_latest_request_prefers_current_request_line() -> None:
    transcript = "\n".join(
        [
            "Original request: make it better",
            "Q: What should change?",
            "Current request: Add a search box to the header",
        ]
    )
    assert extract_latest_request(transcript) == "Add a search box to the header"
    assert classify_prompt(transcript) is TaskType.ANALYSIS


def test_latest_request_unwraps_nested_labels() -> None:
    prompt = "Original request: Current request: Use the image as the site background"
    assert extract_latest_request(prompt) == "Use the image as the site background"

    deep = "Original request: User answer: Current request: Original request: Current request: Keep this text"
    assert extract_latest_request(deep) == "Current request: Keep this text"


def test_latest_request_of_whitespace_is_empty() -> None:
    assert extract_latest_request("   ") == ""
    assert extract_latest_request(None) == ""
