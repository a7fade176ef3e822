"""Gemini client - Error Analyzer and Principle Extractor for Clew."""

from clew.gemini.client import GeminiClient, GeminiResponse, parse_json_response

__all__ = [
    "GeminiClient",
    "GeminiResponse",
    "parse_json_response",
]
