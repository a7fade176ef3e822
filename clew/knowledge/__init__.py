"""Knowledge algorithms: similarity, ranking, reinforcement, retrieval, analytics."""

from clew.knowledge.classifier import classify
from clew.knowledge.ranking import RankedPrinciple, rank, relevance_score
from clew.knowledge.retrieval import search_across_projects, search_past_fixes
from clew.knowledge.similarity import DejaVuDetector, DejaVuMatch, similarity, tokenize
from clew.knowledge.success_rate import SuccessRateUpdater, update_success_rate

__all__ = [
    "classify",
    "RankedPrinciple",
    "rank",
    "relevance_score",
    "search_across_projects",
    "search_past_fixes",
    "DejaVuDetector",
    "DejaVuMatch",
    "similarity",
    "tokenize",
    "SuccessRateUpdater",
    "update_success_rate",
]
