"""
Clew - Exception Hierarchy

All Clew-specific exceptions inherit from ClewError and carry an ErrorKind
so callers can branch on the category without isinstance chains.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Stable identifiers for user-visible failure categories."""

    GENERIC = "generic"
    CONFIG = "config"
    EMPTY_INPUT = "empty_input"
    NO_PROJECT_SELECTED = "no_project_selected"
    INVALID_PROJECT_NAME = "invalid_project_name"
    ALREADY_PROCESSING = "already_processing"
    NO_PROPOSAL = "no_proposal"
    COLLABORATOR_FAILURE = "collaborator_failure"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    STORE_READ = "store_read"
    STORE_WRITE = "store_write"
    INVALID_TRANSITION = "invalid_transition"


class ClewError(Exception):
    """Base exception for all Clew-related errors."""

    kind: ErrorKind = ErrorKind.GENERIC

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigError(ClewError):
    """Raised when configuration is invalid or missing."""

    kind = ErrorKind.CONFIG


# Validation Errors - surfaced immediately, before any stage runs
class ValidationError(ClewError):
    """Base exception for rejected input."""

    pass


class EmptyErrorTextError(ValidationError):
    """Raised when the submitted error text is blank after trimming."""

    kind = ErrorKind.EMPTY_INPUT


class NoProjectSelectedError(ValidationError):
    """Raised when no project is selected or the id is not the current one."""

    kind = ErrorKind.NO_PROJECT_SELECTED


class ProjectNameError(ValidationError):
    """Raised when a project name is empty or longer than 100 characters."""

    kind = ErrorKind.INVALID_PROJECT_NAME


class AlreadyProcessingError(ValidationError):
    """Raised when submit() is called while another run is in flight."""

    kind = ErrorKind.ALREADY_PROCESSING


class NoProposalError(ValidationError):
    """Raised when feedback or a déjà-vu choice arrives with nothing pending."""

    kind = ErrorKind.NO_PROPOSAL


# Collaborator Errors - caught per stage and replaced by fallbacks
class CollaboratorError(ClewError):
    """Base exception for LLM collaborator failures."""

    kind = ErrorKind.COLLABORATOR_FAILURE


class CollaboratorTimeoutError(CollaboratorError):
    """Raised when a collaborator call exceeds its time budget."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, timeout_seconds: float):
        super().__init__(message, {"timeout_seconds": timeout_seconds})
        self.timeout_seconds = timeout_seconds


class AnalyzerError(CollaboratorError):
    """Base exception for Error Analyzer (Gemini via OpenRouter) failures."""

    pass


class AnalyzerConnectionError(AnalyzerError):
    """Raised when the analyzer cannot be reached."""

    pass


class AnalyzerResponseError(AnalyzerError):
    """Raised when the analyzer returns malformed output."""

    pass


class AnalyzerRateLimitError(AnalyzerError):
    """Raised when the analyzer rejects a call for rate limiting."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, retry_after: int | None = None):
        super().__init__(message, {"retry_after": retry_after})
        self.retry_after = retry_after


class ExtractorError(CollaboratorError):
    """Raised when principle extraction fails."""

    pass


# Store Errors
class StoreError(ClewError):
    """Base exception for Knowledge Store failures."""

    pass


class StoreReadError(StoreError):
    """Raised when a query against the store fails."""

    kind = ErrorKind.STORE_READ


class StoreWriteError(StoreError):
    """Raised when a write to the store fails."""

    kind = ErrorKind.STORE_WRITE


# State Errors
class StateTransitionError(ClewError):
    """Raised when an invalid pipeline transition is attempted.

    Includes the current state and the attempted event for debugging.
    """

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(self, message: str, from_state: str, to_state: str):
        super().__init__(message, {"from_state": from_state, "to_state": to_state})
        self.from_state = from_state
        self.to_state = to_state
