"""
Clew Persistence Models

Dataclasses that map to SQLite tables for the knowledge store.
Designed for:
- Type safety with enums and Optional types
- Easy serialization to/from database rows
- JSON field handling for nested data
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


# ============================================================================
# ENUMS
# ============================================================================


class Category(str, Enum):
    """Error classification / principle category taxonomy."""

    ASYNC = "async"
    DEPENDENCY = "dependency"
    STATE = "state"
    LOGIC = "logic"
    SYNTAX = "syntax"
    OTHER = "other"
    UNKNOWN = "unknown"  # classification only, never a principle category

    @classmethod
    def parse(cls, value: str | None) -> Category:
        """Parse a classification string, mapping anything unrecognised to UNKNOWN."""
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN

    @classmethod
    def for_principle(cls, value: str | None) -> Category:
        """Parse a principle category; UNKNOWN and garbage become OTHER."""
        category = cls.parse(value)
        return cls.OTHER if category == cls.UNKNOWN else category


@dataclass(frozen=True)
class CategoryFilter:
    """
    Tagged filter for principle queries.

    Use CategoryFilter.any() for unfiltered queries and
    CategoryFilter.only(category) to match one category exactly.
    """

    category: Category | None = None

    @classmethod
    def any(cls) -> CategoryFilter:
        return cls(None)

    @classmethod
    def only(cls, category: Category | str) -> CategoryFilter:
        return cls(Category.parse(category))

    @property
    def is_any(self) -> bool:
        return self.category is None


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def generate_id() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def now_iso() -> str:
    """Get current datetime as ISO string."""
    return datetime.now().isoformat()


def parse_json_or_list(value: str | list | None) -> list:
    """Parse JSON string to list, or return empty list."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    try:
        result = json.loads(value)
        return result if isinstance(result, list) else []
    except (json.JSONDecodeError, TypeError):
        return []


def to_json(value: list | dict | None) -> str | None:
    """Convert list or dict to JSON string."""
    if value is None:
        return None
    return json.dumps(value)


def parse_datetime(value: str | datetime | None) -> datetime | None:
    """Parse ISO datetime string to datetime object."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ============================================================================
# SESSION / PROJECT
# ============================================================================


@dataclass
class Session:
    """
    Opaque scope for all data belonging to one user.

    Maps to: sessions table
    """

    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=datetime.now)
    last_active_at: datetime = field(default_factory=datetime.now)
    current_project_id: str | None = None

    @classmethod
    def from_row(cls, row: tuple) -> Session:
        """Create from database row."""
        return cls(
            id=row[0],
            created_at=parse_datetime(row[1]) or datetime.now(),
            last_active_at=parse_datetime(row[2]) or datetime.now(),
            current_project_id=row[3],
        )

    def to_row(self) -> tuple:
        """Convert to database row for INSERT."""
        return (
            self.id,
            _iso(self.created_at),
            _iso(self.last_active_at),
            self.current_project_id,
        )


@dataclass
class Project:
    """
    A debugging workspace inside a session.

    Maps to: projects table
    """

    id: str = field(default_factory=generate_id)
    session_id: str = ""
    name: str = ""
    tech_stack: list[str] = field(default_factory=list)
    description: str = ""
    created_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_row(cls, row: tuple) -> Project:
        """Create from database row."""
        return cls(
            id=row[0],
            session_id=row[1],
            name=row[2],
            tech_stack=parse_json_or_list(row[3]),
            description=row[4] or "",
            created_at=parse_datetime(row[5]) or datetime.now(),
        )

    def to_row(self) -> tuple:
        """Convert to database row for INSERT."""
        return (
            self.id,
            self.session_id,
            self.name,
            to_json(self.tech_stack),
            self.description,
            _iso(self.created_at),
        )


# ============================================================================
# FIX
# ============================================================================


@dataclass
class ErrorDescriptor:
    """The error a fix was recorded for."""

    message: str
    stack: str = ""
    type: Category = Category.UNKNOWN


@dataclass
class SolutionDescriptor:
    """What resolved the error."""

    solution: str
    explanation: str = ""
    code_snippet: str = ""


@dataclass
class UsageMetadata:
    """LLM cost of producing the analysis behind a fix."""

    tokens_used: int = 0
    response_time_ms: int = 0


@dataclass
class FixOrigin:
    """Provenance of a fix surfaced from another project."""

    project_id: str
    project_name: str

    @property
    def label(self) -> str:
        return f"Project: {self.project_name}"


@dataclass
class Fix:
    """
    A successful fix, created once on positive feedback.

    Maps to: fixes table. Error/solution content is never updated after
    creation; only usage metrics and principle links change.
    """

    error: ErrorDescriptor
    solution: SolutionDescriptor
    id: str = field(default_factory=generate_id)
    project_id: str = ""
    usage: UsageMetadata = field(default_factory=UsageMetadata)
    helpful: bool | None = None
    timestamp: datetime = field(default_factory=datetime.now)
    times_applied: int = 0
    last_applied_at: datetime | None = None
    linked_principles: list[str] = field(default_factory=list)
    origin: FixOrigin | None = None

    @classmethod
    def from_row(cls, row: tuple) -> Fix:
        """Create from database row (column order of the fixes table)."""
        helpful = row[10]
        return cls(
            id=row[0],
            project_id=row[2],
            timestamp=parse_datetime(row[3]) or datetime.now(),
            error=ErrorDescriptor(message=row[4], stack=row[5] or "", type=Category.parse(row[6])),
            solution=SolutionDescriptor(
                solution=row[7], explanation=row[8] or "", code_snippet=row[9] or ""
            ),
            helpful=None if helpful is None else bool(helpful),
            usage=UsageMetadata(tokens_used=row[11] or 0, response_time_ms=row[12] or 0),
            times_applied=row[13] or 0,
            last_applied_at=parse_datetime(row[14]),
            linked_principles=parse_json_or_list(row[15]),
        )

    def to_row(self, session_id: str) -> tuple:
        """Convert to database row for INSERT."""
        return (
            self.id,
            session_id,
            self.project_id,
            _iso(self.timestamp),
            self.error.message,
            self.error.stack,
            self.error.type.value,
            self.solution.solution,
            self.solution.explanation,
            self.solution.code_snippet,
            None if self.helpful is None else int(self.helpful),
            self.usage.tokens_used,
            self.usage.response_time_ms,
            self.times_applied,
            _iso(self.last_applied_at),
            to_json(self.linked_principles),
        )


# ============================================================================
# PRINCIPLE
# ============================================================================


@dataclass
class PrincipleContext:
    """Reinforcement data attached to a principle."""

    error_patterns: list[str] = field(default_factory=list)
    success_rate: float | None = 1.0  # None when never recorded
    applied_count: int = 1


@dataclass
class Principle:
    """
    A generalized "When <condition>, then <action>" rule.

    Maps to: principles table. Starts at success_rate=1.0 and
    applied_count=1 because the originating fix was a success.
    """

    statement: str
    category: Category = Category.OTHER
    id: str = field(default_factory=generate_id)
    project_id: str = ""
    context: PrincipleContext = field(default_factory=PrincipleContext)
    created_at: datetime = field(default_factory=datetime.now)
    linked_fixes: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: tuple) -> Principle:
        """Create from database row."""
        return cls(
            id=row[0],
            project_id=row[2],
            statement=row[3],
            category=Category.for_principle(row[4]),
            context=PrincipleContext(
                error_patterns=parse_json_or_list(row[5]),
                success_rate=row[6],
                applied_count=row[7] if row[7] is not None else 1,
            ),
            created_at=parse_datetime(row[8]) or datetime.now(),
            linked_fixes=parse_json_or_list(row[9]),
        )

    def to_row(self, session_id: str) -> tuple:
        """Convert to database row for INSERT."""
        return (
            self.id,
            session_id,
            self.project_id,
            self.statement,
            self.category.value,
            to_json(self.context.error_patterns),
            self.context.success_rate,
            self.context.applied_count,
            _iso(self.created_at),
            to_json(self.linked_fixes),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for display."""
        return {
            "id": self.id,
            "principle": self.statement,
            "category": self.category.value,
            "success_rate": self.context.success_rate,
            "applied_count": self.context.applied_count,
            "linked_fixes": self.linked_fixes,
        }
