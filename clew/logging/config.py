"""
Logging Configuration for Clew.

Defines paths, rotation settings, log levels, and privacy patterns.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

# Secrets and personal data scrubbed from every structured record
REDACT_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"sk-[a-zA-Z0-9\-]{32,}"),  # Generic API keys
    re.compile(r"AIza[0-9A-Za-z\-_]{35}"),  # Google API keys
    re.compile(r"Bearer [a-zA-Z0-9\-._~+/]+=*"),
    re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),
]
REDACTED = "***REDACTED***"


@dataclass
class LogConfig:
    """Configuration for the Clew logging system."""

    # Paths
    log_dir: Path = field(default_factory=lambda: Path.home() / ".clew" / "logs")

    # File settings
    max_file_size_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5

    # Log levels: DEBUG, INFO, WARNING, ERROR
    llm_level: str = "INFO"
    pipeline_level: str = "INFO"

    # Error text pasted by users routinely contains tokens and addresses
    redact_enabled: bool = True

    @classmethod
    def from_env(cls) -> "LogConfig":
        """Load config from environment variables with defaults."""
        config = cls()

        if level := os.environ.get("CLEW_LOG_LEVEL"):
            config.llm_level = level
            config.pipeline_level = level

        if log_dir := os.environ.get("CLEW_LOG_DIR"):
            config.log_dir = Path(log_dir)

        if max_size := os.environ.get("CLEW_LOG_MAX_SIZE_MB"):
            try:
                config.max_file_size_bytes = int(max_size) * 1024 * 1024
            except ValueError:
                pass

        if redact := os.environ.get("CLEW_LOG_REDACT"):
            config.redact_enabled = redact.lower() not in ("0", "false", "no")

        return config

    def ensure_log_dir(self) -> None:
        """Create log directory if it doesn't exist."""
        self.log_dir.mkdir(parents=True, exist_ok=True)

    @property
    def llm_log_path(self) -> Path:
        """Path to LLM interaction log."""
        return self.log_dir / "llm.jsonl"

    @property
    def pipeline_log_path(self) -> Path:
        """Path to pipeline event log."""
        return self.log_dir / "pipeline.jsonl"


def redact(text: str) -> str:
    """Replace secrets and e-mail addresses with a fixed marker."""
    for pattern in REDACT_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


# Global config instance - initialized on first use
_config: LogConfig | None = None


def get_config() -> LogConfig:
    """Get the global log config, initializing from env if needed."""
    global _config
    if _config is None:
        _config = LogConfig.from_env()
        _config.ensure_log_dir()
    return _config


def set_config(config: LogConfig) -> None:
    """Set a custom log config (useful for testing)."""
    global _config
    _config = config
    _config.ensure_log_dir()
