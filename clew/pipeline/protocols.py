"""
Collaborator contracts for the debugging pipeline.

The orchestrator only talks to these protocols. KnowledgeRepository and
GeminiClient satisfy them in production; tests pair a temporary SQLite
repository with AsyncMock collaborators.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from clew.persistence.models import Category, CategoryFilter, Fix, Principle, Project


@dataclass
class ErrorAnalysis:
    """Result of the classification stage."""

    classification: Category
    root_cause: str
    confidence: float
    patterns: list[str] = field(default_factory=list)
    tokens_used: int = 0
    response_time_ms: int = 0
    used_fallback: bool = False


@dataclass
class ExtractedPrinciple:
    """A principle proposed by the extractor, not yet persisted."""

    principle: str
    category: Category
    reasoning: str = ""
    confidence: float = 0.7
    tokens_used: int = 0


class ErrorAnalyzer(Protocol):
    """LLM boundary that classifies an error. Must raise rather than return garbage."""

    async def analyze_error(self, error_text: str, stack_text: str = "") -> ErrorAnalysis: ...


class PrincipleExtractor(Protocol):
    """LLM boundary that distills a reusable principle from a fix."""

    async def extract_principle(
        self,
        error_text: str,
        solution_text: str,
        analysis: ErrorAnalysis,
    ) -> ExtractedPrinciple: ...


class ProjectContext(Protocol):
    """Supplies the currently selected project for a session."""

    def get_current_project_id(self, session_id: str) -> str | None: ...


class KnowledgeStore(ProjectContext, Protocol):
    """Fix/principle persistence used by every pipeline stage."""

    def get_fixes_by_classification(
        self,
        session_id: str,
        project_id: str,
        classification: Category | str,
        limit: int = 5,
    ) -> list[Fix]: ...

    def get_all_fixes_for_project(
        self,
        session_id: str,
        project_id: str,
        limit: int = 50,
    ) -> list[Fix]: ...

    def get_all_projects_for_session(self, session_id: str) -> list[Project]: ...

    def create_fix(self, session_id: str, project_id: str, fix: Fix) -> str: ...

    def create_principle(
        self,
        session_id: str,
        project_id: str,
        principle: Principle,
        linked_fix_id: str | None = None,
    ) -> str: ...

    def get_principle(
        self,
        session_id: str,
        project_id: str,
        principle_id: str,
    ) -> Principle | None: ...

    def get_principles_by_category(
        self,
        session_id: str,
        project_id: str,
        category_filter: CategoryFilter,
        limit: int | None = 5,
    ) -> list[Principle]: ...

    def update_principle_success_rate(
        self,
        session_id: str,
        project_id: str,
        principle_id: str,
        new_rate: float,
        new_count: int,
    ) -> bool: ...

    def bump_fix_usage(self, session_id: str, project_id: str, fix_id: str) -> None: ...

    def link_principle_to_fix(
        self,
        session_id: str,
        project_id: str,
        fix_id: str,
        principle_id: str,
    ) -> None: ...
