"""
Relevance ranking for stored principles.

score = category match (0.5)
      + keyword overlap (0.1 per shared token, capped at 0.3)
      + success rate x 0.2 (0.5 assumed when unknown)

The result is clamped to [0, 1]. Python's sort is stable, so principles
with equal scores keep the store's success-rate ordering.
"""

from __future__ import annotations

from dataclasses import dataclass

from clew.knowledge.success_rate import DEFAULT_SUCCESS_RATE
from clew.persistence.models import Category, Principle

CATEGORY_MATCH_WEIGHT = 0.5
KEYWORD_WEIGHT = 0.1
KEYWORD_CAP = 0.3
SUCCESS_RATE_WEIGHT = 0.2


@dataclass
class RankedPrinciple:
    principle: Principle
    score: float


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def keyword_overlap(statement: str, error_message: str) -> int:
    """Count principle words (repeats included) that appear in the error message."""
    error_words = set(error_message.lower().split())
    return sum(1 for word in statement.lower().split() if word in error_words)


def relevance_score(
    principle: Principle,
    error_message: str,
    classification: Category | str,
) -> float:
    """Score one principle against the current error."""
    category_term = (
        CATEGORY_MATCH_WEIGHT if principle.category == Category.parse(classification) else 0.0
    )

    keyword_term = min(keyword_overlap(principle.statement, error_message) * KEYWORD_WEIGHT, KEYWORD_CAP)

    rate = principle.context.success_rate
    if rate is None:
        rate = DEFAULT_SUCCESS_RATE
    success_term = _clamp(rate) * SUCCESS_RATE_WEIGHT

    return _clamp(category_term + keyword_term + success_term)


def rank(
    principles: list[Principle],
    error_message: str,
    classification: Category | str,
) -> list[RankedPrinciple]:
    """Score and sort principles, most relevant first."""
    scored = [
        RankedPrinciple(principle=p, score=relevance_score(p, error_message, classification))
        for p in principles
    ]
    scored.sort(key=lambda r: r.score, reverse=True)
    return scored
