"""
Déjà-vu detection - recognise an error the user has already fixed.

Similarity is Jaccard overlap of normalised token sets. Tokens are
lowercased alphanumeric runs longer than two characters, so punctuation,
line numbers like "42" and filler words like "of" never count.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from clew.persistence.models import Fix

if TYPE_CHECKING:
    from clew.pipeline.protocols import KnowledgeStore

logger = logging.getLogger(__name__)

NON_TOKEN_CHARS = re.compile(r"[^a-z0-9\s]")
MIN_TOKEN_LENGTH = 3

# A past fix must be strictly more similar than this to count
DEJA_VU_THRESHOLD = 0.70
# Candidates this close to the best similarity compete on recency instead
RECENCY_WINDOW = 0.10


def tokenize(text: str) -> set[str]:
    """Lowercase, blank out non-alphanumerics, split, drop tokens of length <= 2."""
    cleaned = NON_TOKEN_CHARS.sub(" ", (text or "").lower())
    return {token for token in cleaned.split() if len(token) >= MIN_TOKEN_LENGTH}


def similarity(a: str, b: str) -> float:
    """
    Jaccard similarity of two strings' token sets.

    Returns 0.0 when either side has no tokens.
    """
    tokens_a = tokenize(a)
    tokens_b = tokenize(b)
    if not tokens_a or not tokens_b:
        return 0.0
    intersection = len(tokens_a & tokens_b)
    union = len(tokens_a) + len(tokens_b) - intersection
    return intersection / union


@dataclass
class DejaVuMatch:
    """A past fix that looks like the current error."""

    fix: Fix
    similarity: float


def select_best_match(
    candidates: list[DejaVuMatch],
    threshold: float = DEJA_VU_THRESHOLD,
    recency_window: float = RECENCY_WINDOW,
) -> DejaVuMatch | None:
    """
    Pick the match to offer the user.

    Only candidates strictly above threshold qualify. Among those within
    recency_window of the best similarity, the newest fix wins.
    """
    qualifying = [c for c in candidates if c.similarity > threshold]
    if not qualifying:
        return None

    qualifying.sort(key=lambda c: c.similarity, reverse=True)
    top_similarity = qualifying[0].similarity
    contenders = [c for c in qualifying if top_similarity - c.similarity < recency_window]
    # max() keeps the first (most similar) on equal timestamps
    return max(contenders, key=lambda c: c.fix.timestamp)


class DejaVuDetector:
    """Compares a new error against every stored fix in the project."""

    def __init__(
        self,
        store: KnowledgeStore,
        threshold: float = DEJA_VU_THRESHOLD,
        recency_window: float = RECENCY_WINDOW,
        history_limit: int = 50,
    ):
        self.store = store
        self.threshold = threshold
        self.recency_window = recency_window
        self.history_limit = history_limit

    def detect_similar_error(
        self,
        current_error_text: str,
        session_id: str,
        project_id: str,
    ) -> DejaVuMatch | None:
        """
        Find a near-duplicate past fix for the current error.

        Raises:
            StoreReadError: If the project's fixes cannot be loaded
        """
        fixes = self.store.get_all_fixes_for_project(session_id, project_id, self.history_limit)
        candidates = [
            DejaVuMatch(fix=fix, similarity=similarity(current_error_text, fix.error.message))
            for fix in fixes
        ]
        match = select_best_match(candidates, self.threshold, self.recency_window)
        if match:
            logger.info(
                f"Déjà vu: fix {match.fix.id[:8]} matches at {match.similarity:.2f} "
                f"({len(candidates)} compared)"
            )
        return match
