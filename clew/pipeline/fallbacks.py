"""
Fallback values for failed pipeline stages.

A collaborator failure or store read failure never aborts a run: the
stage's documented default is substituted and the originating error is
logged. Every default lives in one table.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from clew.logging import PipelineLogEntry, get_session_id, now_iso, pipeline_logger
from clew.persistence.models import Category
from clew.pipeline.protocols import ErrorAnalysis

logger = logging.getLogger(__name__)

FALLBACK_ROOT_CAUSE = "AI analysis unavailable"
FALLBACK_CONFIDENCE = 0.3


class Stage(str, Enum):
    """Pipeline stages that can fail without aborting the run."""

    DEJA_VU = "deja_vu"
    CLASSIFY = "classify"
    RETRIEVE = "retrieve"
    EXTRACT = "extract"
    RANK = "rank"


def fallback_analysis() -> ErrorAnalysis:
    """Analysis used when the Error Analyzer fails or times out."""
    return ErrorAnalysis(
        classification=Category.UNKNOWN,
        root_cause=FALLBACK_ROOT_CAUSE,
        confidence=FALLBACK_CONFIDENCE,
        used_fallback=True,
    )


# Factories, so every substitution gets a fresh object
DEFAULT_FALLBACKS: dict[Stage, Callable[[], Any]] = {
    Stage.DEJA_VU: lambda: None,
    Stage.CLASSIFY: fallback_analysis,
    Stage.RETRIEVE: list,
    Stage.EXTRACT: lambda: None,
    Stage.RANK: list,
}


class FallbackPolicy:
    """Maps each stage to the value substituted when it fails."""

    def __init__(self, fallbacks: dict[Stage, Callable[[], Any]] | None = None):
        self._fallbacks = {**DEFAULT_FALLBACKS, **(fallbacks or {})}

    def value_for(self, stage: Stage) -> Any:
        """The default for a stage, without logging."""
        return self._fallbacks[stage]()

    def substitute(
        self,
        stage: Stage,
        error: BaseException,
        session_id: str = "",
        project_id: str = "",
    ) -> Any:
        """Log the failure and return the stage's default."""
        logger.warning(f"Stage {stage.value} failed, using fallback: {type(error).__name__}: {error}")
        entry = PipelineLogEntry(
            timestamp=now_iso(),
            session_id=session_id or get_session_id(),
            event_type="fallback",
            project_id=project_id,
            stage=stage.value,
            error=str(error)[:500],
            error_type=type(error).__name__,
        )
        pipeline_logger.warning(entry.to_json())
        return self.value_for(stage)
