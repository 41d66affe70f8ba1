"""Chat-vs-research routing heuristic.

Keyword match or length threshold; no recall guarantee.
"""
from __future__ import annotations

RESEARCH_KEYWORDS: tuple[str, ...] = (
    "research",
    "analyze",
    "investigate",
    "study",
    "explore",
    "examine",
    "find information",
    "gather data",
    "look into",
    "comprehensive",
    "detailed analysis",
    "in-depth",
    "thorough",
    "compare",
    "contrast",
)

# Longer messages are treated as research requests regardless of wording.
LENGTH_THRESHOLD = 100


def needs_research(message: str) -> bool:
    lowered = message.lower()
    return any(keyword in lowered for keyword in RESEARCH_KEYWORDS) or len(message) > LENGTH_THRESHOLD
