"""
Success-rate reinforcement for principles.

Each piece of feedback is a 0/1 trial. The stored rate is the running mean
over applied_count trials, updated incrementally without keeping history.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from clew.exceptions import StoreError

if TYPE_CHECKING:
    from clew.pipeline.protocols import KnowledgeStore

logger = logging.getLogger(__name__)

# Assumed for a principle whose rate was never recorded
DEFAULT_SUCCESS_RATE = 0.5


def update_success_rate(
    current_rate: float | None,
    current_count: int,
    was_helpful: bool,
) -> tuple[float, int]:
    """
    Fold one outcome into a running mean.

    Returns:
        (new_rate, new_count)
    """
    if current_rate is None:
        current_rate = DEFAULT_SUCCESS_RATE
    rate = max(0.0, min(1.0, current_rate))
    count = max(0, current_count)
    outcome = 1.0 if was_helpful else 0.0
    new_count = count + 1
    new_rate = (rate * count + outcome) / new_count
    return new_rate, new_count


class SuccessRateUpdater:
    """Applies feedback to a stored principle. Best-effort: never raises."""

    def __init__(self, store: KnowledgeStore):
        self.store = store

    def apply(
        self,
        session_id: str,
        project_id: str,
        principle_id: str,
        was_helpful: bool,
    ) -> tuple[float, int] | None:
        """
        Update one principle's success rate.

        Returns:
            The stored (rate, count), or None if nothing was updated
        """
        try:
            principle = self.store.get_principle(session_id, project_id, principle_id)
            if principle is None:
                logger.info(f"Skipping success-rate update: principle {principle_id[:8]} not found")
                return None

            new_rate, new_count = update_success_rate(
                principle.context.success_rate,
                principle.context.applied_count,
                was_helpful,
            )
            updated = self.store.update_principle_success_rate(
                session_id, project_id, principle_id, new_rate, new_count
            )
        except StoreError as e:
            logger.warning(f"Success-rate update failed for {principle_id[:8]}: {e}")
            return None

        if not updated:
            logger.info(f"Principle {principle_id[:8]} disappeared before update")
            return None

        logger.info(f"Updated principle {principle_id[:8]}: {new_rate:.2f} ({new_count} uses)")
        return new_rate, new_count
