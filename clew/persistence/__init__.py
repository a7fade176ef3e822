"""
Clew Persistence Layer

SQLite-based knowledge store for sessions, projects, fixes and principles.
"""

from clew.persistence.models import (
    Category,
    CategoryFilter,
    ErrorDescriptor,
    Fix,
    FixOrigin,
    Principle,
    PrincipleContext,
    Project,
    Session,
    SolutionDescriptor,
    UsageMetadata,
)
from clew.persistence.repository import KnowledgeRepository

__all__ = [
    # Enums / filters
    "Category",
    "CategoryFilter",
    # Entities
    "Session",
    "Project",
    "Fix",
    "ErrorDescriptor",
    "SolutionDescriptor",
    "UsageMetadata",
    "FixOrigin",
    "Principle",
    "PrincipleContext",
    # Repository
    "KnowledgeRepository",
]
