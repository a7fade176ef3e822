"""
Clew - Configuration Management

Handles loading config.json, environment variables, and the persisted
session id. Files live in ~/.config/clew/
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from clew.exceptions import ConfigError


# Configuration paths
CONFIG_DIR = Path.home() / ".config" / "clew"
CONFIG_FILE = CONFIG_DIR / "config.json"
SESSION_FILE = CONFIG_DIR / "session.json"
DEFAULT_DB_PATH = CONFIG_DIR / "clew.db"

DEFAULT_MODEL = "google/gemini-2.0-flash-001"


@dataclass
class ClewConfig:
    """Main configuration container for Clew."""

    openrouter_api_key: str = ""
    model: str = DEFAULT_MODEL
    collaborator_timeout: float = 8.0  # seconds per analyzer/extractor call
    rate_limit_backoff: float = 2.0
    retrieval_limit: int = 5
    cross_project_limit: int = 3
    history_limit: int = 50
    db_path: Path = field(default_factory=lambda: DEFAULT_DB_PATH)

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path).expanduser()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization (never includes the key)."""
        return {
            "model": self.model,
            "collaborator_timeout": self.collaborator_timeout,
            "rate_limit_backoff": self.rate_limit_backoff,
            "retrieval_limit": self.retrieval_limit,
            "cross_project_limit": self.cross_project_limit,
            "history_limit": self.history_limit,
            "db_path": str(self.db_path),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClewConfig":
        """Create ClewConfig from dictionary."""
        try:
            return cls(
                model=data.get("model", DEFAULT_MODEL),
                collaborator_timeout=float(data.get("collaborator_timeout", 8.0)),
                rate_limit_backoff=float(data.get("rate_limit_backoff", 2.0)),
                retrieval_limit=int(data.get("retrieval_limit", 5)),
                cross_project_limit=int(data.get("cross_project_limit", 3)),
                history_limit=int(data.get("history_limit", 50)),
                db_path=Path(data.get("db_path", DEFAULT_DB_PATH)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError("Invalid value in config", {"error": str(e)})


def load_config(config_file: Path | None = None) -> ClewConfig:
    """
    Load configuration from file and environment.

    Environment variables win over the file.

    Returns:
        ClewConfig with all settings loaded

    Raises:
        ConfigError: If configuration is invalid
    """
    path = config_file or CONFIG_FILE
    config = ClewConfig()

    if path.exists():
        try:
            with open(path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}", {"error": str(e)})
        if not isinstance(data, dict):
            raise ConfigError(f"Expected a JSON object in {path}")
        config = ClewConfig.from_dict(data)

    config.openrouter_api_key = os.environ.get("OPENROUTER_API_KEY", "")

    if model := os.environ.get("CLEW_MODEL"):
        config.model = model
    if db_path := os.environ.get("CLEW_DB_PATH"):
        config.db_path = Path(db_path).expanduser()
    if timeout := os.environ.get("CLEW_TIMEOUT"):
        try:
            config.collaborator_timeout = float(timeout)
        except ValueError:
            raise ConfigError("CLEW_TIMEOUT must be a number", {"value": timeout})

    return config


def save_config(config: ClewConfig, config_file: Path | None = None) -> None:
    """Save configuration to file."""
    path = config_file or CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(config.to_dict(), f, indent=2)


def get_openrouter_key() -> str:
    """
    Get OpenRouter API key from environment.

    Raises:
        ConfigError: If key is not set
    """
    key = os.environ.get("OPENROUTER_API_KEY", "")
    if not key:
        raise ConfigError(
            "OPENROUTER_API_KEY environment variable not set",
            {"hint": "Export OPENROUTER_API_KEY=your-key-here"},
        )
    return key


def load_session_id(session_file: Path | None = None) -> str | None:
    """Read the locally remembered session id, if any."""
    path = session_file or SESSION_FILE
    if not path.exists():
        return None
    try:
        with open(path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}", {"error": str(e)})
    session_id = data.get("session_id") if isinstance(data, dict) else None
    return session_id or None


def save_session_id(session_id: str, session_file: Path | None = None) -> None:
    """Remember the session id for later CLI invocations."""
    path = session_file or SESSION_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump({"session_id": session_id}, f)
