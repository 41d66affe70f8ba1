from __future__ import annotations

import pytest

from research_copilot.services.classifier import LENGTH_THRESHOLD, RESEARCH_KEYWORDS, needs_research


def test_short_greeting_is_chat():
    assert needs_research("hello") is False


@pytest.mark.parametrize("keyword", RESEARCH_KEYWORDS)
def test_every_keyword_routes_to_research(keyword):
    assert needs_research(f"could you {keyword} this for me") is True


def test_keyword_match_is_case_insensitive():
    assert needs_research("Please INVESTIGATE the outage") is True
    assert needs_research("In-Depth review please") is True


def test_length_threshold_is_strict():
    assert needs_research("x" * LENGTH_THRESHOLD) is False
    assert needs_research("x" * (LENGTH_THRESHOLD + 1)) is True


def test_keywords_match_as_substrings():
    # "studying" contains "study"
    assert needs_research("I am studying tonight") is True


def test_decision_is_deterministic():
    text = "what's the weather like"
    assert [needs_research(text) for _ in range(5)] == [False] * 5
