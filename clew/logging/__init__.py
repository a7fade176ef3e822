"""
Clew Logging System.

Provides structured JSONL logging for:
- LLM collaborator calls (prompts, responses, tokens, timing)
- Pipeline events (state transitions, fallbacks, feedback)

Usage:
    from clew.logging import llm_logger, LLMLogEntry, now_iso

    entry = LLMLogEntry(
        timestamp=now_iso(),
        request_id=str(uuid.uuid4()),
        session_id=get_session_id(),
        method="analyze_error",
    )
    llm_logger.info(entry.to_json())

Logs are written to ~/.clew/logs/:
    - llm.jsonl: analyzer and extractor calls
    - pipeline.jsonl: pipeline lifecycle events
"""

import threading
from typing import Any

from .config import LogConfig, get_config, redact, set_config
from .entries import LLMLogEntry, PipelineLogEntry, now_iso
from .handlers import create_jsonl_logger

# Thread-local storage for session context
_context = threading.local()


def set_session_id(session_id: str) -> None:
    """Set the current session ID for log correlation."""
    _context.session_id = session_id


def get_session_id() -> str:
    """Get the current session ID, or 'unknown' if not set."""
    return getattr(_context, "session_id", "unknown")


def set_project_name(project_name: str) -> None:
    """Set the current project name for log context."""
    _context.project_name = project_name


def get_project_name() -> str:
    """Get the current project name, or empty string if not set."""
    return getattr(_context, "project_name", "")


# Lazy-initialized loggers to avoid creating files before needed
_loggers: dict[str, Any] = {}
_init_lock = threading.Lock()


def _ensure_loggers() -> None:
    """Initialize loggers on first use."""
    if _loggers:
        return

    with _init_lock:
        if _loggers:
            return

        config = get_config()

        _loggers["llm"] = create_jsonl_logger(
            "clew.llm",
            config.llm_log_path,
            level=config.llm_level,
            max_bytes=config.max_file_size_bytes,
            backup_count=config.backup_count,
            redact_enabled=config.redact_enabled,
        )
        _loggers["pipeline"] = create_jsonl_logger(
            "clew.pipeline_events",
            config.pipeline_log_path,
            level=config.pipeline_level,
            max_bytes=config.max_file_size_bytes,
            backup_count=config.backup_count,
            redact_enabled=config.redact_enabled,
        )


def reset_loggers() -> None:
    """Drop initialized loggers so the next write picks up a new config."""
    with _init_lock:
        for logger in _loggers.values():
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)
        _loggers.clear()


class _LazyLogger:
    """Lazy wrapper that initializes the actual logger on first use."""

    def __init__(self, name: str):
        self._name = name

    def _get_logger(self) -> Any:
        _ensure_loggers()
        return _loggers[self._name]

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().error(msg, *args, **kwargs)


# Public logger instances
llm_logger = _LazyLogger("llm")
pipeline_logger = _LazyLogger("pipeline")


__all__ = [
    # Loggers
    "llm_logger",
    "pipeline_logger",
    "reset_loggers",
    # Log entries
    "LLMLogEntry",
    "PipelineLogEntry",
    # Utilities
    "now_iso",
    "redact",
    "get_session_id",
    "set_session_id",
    "get_project_name",
    "set_project_name",
    # Config
    "LogConfig",
    "get_config",
    "set_config",
]
