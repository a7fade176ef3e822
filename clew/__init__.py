"""
Clew - a debugging assistant that learns from your own fixes.

Errors are classified by Gemini, matched against past fixes and ranked
against reusable "When X, then Y" principles distilled from what worked.
"""

__version__ = "0.1.0"

from clew.exceptions import (
    ClewError,
    CollaboratorError,
    ConfigError,
    StoreError,
    ValidationError,
)

__all__ = [
    "__version__",
    "ClewError",
    "CollaboratorError",
    "ConfigError",
    "StoreError",
    "ValidationError",
]
