"""Debug pipeline: collaborator protocols, state machine, fallbacks, orchestrator."""

from clew.pipeline.fallbacks import FallbackPolicy, Stage, fallback_analysis
from clew.pipeline.orchestrator import (
    DebugPipeline,
    FeedbackResult,
    PipelineCallbacks,
    PipelineResult,
    Proposal,
    ResultKind,
    Solution,
)
from clew.pipeline.protocols import (
    ErrorAnalysis,
    ErrorAnalyzer,
    ExtractedPrinciple,
    KnowledgeStore,
    PrincipleExtractor,
    ProjectContext,
)
from clew.pipeline.state import PipelineContext, PipelineEvent, PipelineState, next_state

__all__ = [
    "FallbackPolicy",
    "Stage",
    "fallback_analysis",
    "DebugPipeline",
    "FeedbackResult",
    "PipelineCallbacks",
    "PipelineResult",
    "Proposal",
    "ResultKind",
    "Solution",
    "ErrorAnalysis",
    "ErrorAnalyzer",
    "ExtractedPrinciple",
    "KnowledgeStore",
    "PrincipleExtractor",
    "ProjectContext",
    "PipelineContext",
    "PipelineEvent",
    "PipelineState",
    "next_state",
]
