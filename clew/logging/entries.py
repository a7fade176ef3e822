"""
Log Entry Data Structures for Clew.

Structured entries for LLM collaborator calls and pipeline events.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any


def now_iso() -> str:
    """Get current timestamp in ISO 8601 format."""
    return datetime.now().isoformat()


@dataclass
class LLMLogEntry:
    """Log entry for Error Analyzer / Principle Extractor calls."""

    # Identity
    timestamp: str  # ISO 8601
    request_id: str  # UUID for correlating request/response
    session_id: str

    # Method info
    method: str  # "analyze_error", "extract_principle", "ping"

    # Request
    user_prompt: str = ""
    temperature: float = 0.0
    max_tokens: int = 0
    attempt: int = 1

    # Response
    response_content: str = ""
    model: str = ""
    finish_reason: str = ""

    # Metrics
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    latency_ms: int = 0

    # Context
    project_name: str = ""

    # Error (if any)
    error: str | None = None
    error_type: str | None = None

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self), default=str)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LLMLogEntry":
        """Create from dictionary."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class PipelineLogEntry:
    """Log entry for pipeline lifecycle events."""

    timestamp: str  # ISO 8601
    session_id: str
    event_type: str  # "transition", "fallback", "feedback", "deja_vu"

    # Transition fields
    from_state: str | None = None
    to_state: str | None = None
    event: str | None = None
    effects: list[str] = field(default_factory=list)

    # Context
    project_id: str = ""
    stage: str = ""
    classification: str = ""

    # Feedback fields
    helpful: bool | None = None
    fix_id: str | None = None
    principle_id: str | None = None

    # Error info (populated on "fallback" events)
    error: str | None = None
    error_type: str | None = None

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self), default=str)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineLogEntry":
        """Create from dictionary."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})
