"""
Read-only analytics over a session's fixes and principles.

Nothing here writes to the store. A failed read yields an empty result
so the stats screens degrade instead of crashing.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from clew.exceptions import StoreReadError
from clew.persistence.models import CategoryFilter, Fix, Principle, Project

if TYPE_CHECKING:
    from clew.pipeline.protocols import KnowledgeStore

logger = logging.getLogger(__name__)

MIN_FIXES_FOR_GROWTH = 3
IMPROVING_THRESHOLD = 5
MIN_ERRORS_FOR_ALERT = 3


@dataclass
class AggregateStats:
    total_fixes: int
    total_principles: int  # unique statements
    success_rate: int  # 0-100
    total_projects: int


@dataclass
class TypeCount:
    type: str
    count: int
    percentage: int


@dataclass
class ProjectStats:
    project_id: str
    project_name: str
    fix_count: int
    top_error_type: str
    top_error_percentage: int


@dataclass
class KnowledgeEntry:
    principle: str
    success_rate: int  # 0-100
    applied_count: int
    category: str
    from_project: str


@dataclass
class GrowthMetric:
    is_improving: bool
    message: str


@dataclass
class UserPatterns:
    total_errors: int
    type_breakdown: list[TypeCount] = field(default_factory=list)
    most_common: TypeCount | None = None
    growth: GrowthMetric | None = None


def is_successful(fix: Fix) -> bool:
    """Explicitly helpful, or has a solution and was never marked unhelpful."""
    if fix.helpful is True:
        return True
    return fix.helpful is not False and bool(fix.solution.solution)


def _percent(part: int, total: int) -> int:
    return round(part / total * 100) if total else 0


def _type_breakdown(fixes: list[Fix]) -> list[TypeCount]:
    counts = Counter(fix.error.type.value for fix in fixes)
    total = len(fixes)
    # most_common() orders by count, first-seen order on ties
    return [
        TypeCount(type=error_type, count=count, percentage=_percent(count, total))
        for error_type, count in counts.most_common()
    ]


def _collect(
    store: KnowledgeStore,
    session_id: str,
) -> tuple[list[Project], dict[str, list[Fix]], dict[str, list[Principle]]]:
    projects = store.get_all_projects_for_session(session_id)
    fixes: dict[str, list[Fix]] = {}
    principles: dict[str, list[Principle]] = {}
    for project in projects:
        fixes[project.id] = store.get_all_fixes_for_project(session_id, project.id)
        principles[project.id] = store.get_principles_by_category(
            session_id, project.id, CategoryFilter.any(), limit=None
        )
    return projects, fixes, principles


def aggregate_stats(store: KnowledgeStore, session_id: str) -> AggregateStats | None:
    """Headline numbers across all projects, or None if nothing is recorded yet."""
    try:
        projects, fixes_by_project, principles_by_project = _collect(store, session_id)
    except StoreReadError as e:
        logger.warning(f"Could not aggregate stats: {e}")
        return None

    all_fixes = [fix for fixes in fixes_by_project.values() for fix in fixes]
    if not projects or not all_fixes:
        return None

    statements = {p.statement for ps in principles_by_project.values() for p in ps}
    successful = sum(1 for fix in all_fixes if is_successful(fix))

    return AggregateStats(
        total_fixes=len(all_fixes),
        total_principles=len(statements),
        success_rate=_percent(successful, len(all_fixes)),
        total_projects=len(projects),
    )


def error_breakdown(store: KnowledgeStore, session_id: str) -> list[TypeCount]:
    """Fix counts per error type across the session, most frequent first."""
    try:
        _, fixes_by_project, _ = _collect(store, session_id)
    except StoreReadError as e:
        logger.warning(f"Could not compute error breakdown: {e}")
        return []
    return _type_breakdown([fix for fixes in fixes_by_project.values() for fix in fixes])


def cross_project_stats(store: KnowledgeStore, session_id: str) -> list[ProjectStats]:
    """Per-project fix count and dominant error type, busiest project first."""
    try:
        projects, fixes_by_project, _ = _collect(store, session_id)
    except StoreReadError as e:
        logger.warning(f"Could not compute project stats: {e}")
        return []

    stats = []
    for project in projects:
        fixes = fixes_by_project.get(project.id, [])
        if not fixes:
            continue
        top = _type_breakdown(fixes)[0]
        stats.append(
            ProjectStats(
                project_id=project.id,
                project_name=project.name,
                fix_count=len(fixes),
                top_error_type=top.type,
                top_error_percentage=top.percentage,
            )
        )
    stats.sort(key=lambda s: s.fix_count, reverse=True)
    return stats


def knowledge_base(store: KnowledgeStore, session_id: str) -> list[KnowledgeEntry]:
    """Every principle in the session, tagged with its project, best first."""
    try:
        projects, _, principles_by_project = _collect(store, session_id)
    except StoreReadError as e:
        logger.warning(f"Could not load knowledge base: {e}")
        return []

    entries = [
        KnowledgeEntry(
            principle=p.statement or "No description",
            success_rate=round((p.context.success_rate or 0) * 100),
            applied_count=p.context.applied_count or 0,
            category=p.category.value,
            from_project=project.name,
        )
        for project in projects
        for p in principles_by_project.get(project.id, [])
    ]
    entries.sort(key=lambda e: e.success_rate, reverse=True)
    return entries


def _growth(fixes: list[Fix], error_type: str) -> GrowthMetric | None:
    count = sum(1 for fix in fixes if fix.error.type.value == error_type)
    if count < MIN_FIXES_FOR_GROWTH:
        return None
    if count > IMPROVING_THRESHOLD:
        return GrowthMetric(
            is_improving=True,
            message=f"Great progress! You're mastering {error_type} patterns through practice!",
        )
    return GrowthMetric(
        is_improving=False,
        message=f"You're building your {error_type} debugging skills - keep going!",
    )


def analyze_user_patterns(
    store: KnowledgeStore,
    session_id: str,
    project_id: str,
) -> UserPatterns | None:
    """Error-type habits within one project. None until a fix exists."""
    try:
        fixes = store.get_all_fixes_for_project(session_id, project_id)
    except StoreReadError as e:
        logger.warning(f"Could not analyze patterns: {e}")
        return None
    if not fixes:
        return None

    breakdown = _type_breakdown(fixes)
    most_common = breakdown[0]
    return UserPatterns(
        total_errors=len(fixes),
        type_breakdown=breakdown,
        most_common=most_common,
        growth=_growth(fixes, most_common.type),
    )


def pattern_alert(patterns: UserPatterns | None, current_type: str) -> str | None:
    """Encouraging note when the current error type is a familiar one."""
    if patterns is None or patterns.total_errors < MIN_ERRORS_FOR_ALERT:
        return None

    current = next((t for t in patterns.type_breakdown if t.type == current_type), None)
    if current and current.count >= MIN_ERRORS_FOR_ALERT:
        return (
            f"You're practicing {current_type} patterns - this is session #{current.count + 1}! "
            "Each encounter strengthens your skills."
        )

    if patterns.most_common and patterns.most_common.type == current_type:
        return (
            f"You're building expertise in {current_type} patterns "
            f"({patterns.most_common.percentage}% of your practice)"
        )
    return None
