"""
Gemini Client - Error Analyzer and Principle Extractor for Clew

Gemini (via OpenRouter) is the only network collaborator of the pipeline:
1. analyze_error() classifies an incoming error and names its root cause
2. extract_principle() distills a "When X, then Y" rule from a working fix

The client must fail loudly: malformed output raises AnalyzerResponseError
instead of returning half-filled data, because the pipeline substitutes
its own fallback values when a call raises.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from openai import AsyncOpenAI, OpenAIError, RateLimitError

from clew.exceptions import (
    AnalyzerConnectionError,
    AnalyzerError,
    AnalyzerRateLimitError,
    AnalyzerResponseError,
    ExtractorError,
)
from clew.gemini.prompts import (
    ANALYZER_SYSTEM_PROMPT,
    ERROR_ANALYSIS_PROMPT,
    NO_STACK_TRACE,
    PRINCIPLE_EXTRACTION_PROMPT,
)
from clew.logging import (
    LLMLogEntry,
    get_project_name,
    get_session_id,
    llm_logger,
    now_iso,
)
from clew.persistence.models import Category
from clew.pipeline.protocols import ErrorAnalysis, ExtractedPrinciple

logger = logging.getLogger(__name__)

# API configuration
DEFAULT_TIMEOUT = 30.0  # seconds, per request
RATE_LIMIT_RETRIES = 1
RATE_LIMIT_BACKOFF = 2.0

# Circuit breaker
CIRCUIT_BREAKER_THRESHOLD = 3
CIRCUIT_BREAKER_RESET_TIME = 60.0

# OpenRouter API for Gemini
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "google/gemini-2.0-flash-001"

RATE_LIMIT_MARKERS = ("429", "rate", "quota", "busy")

DEFAULT_ANALYSIS_CONFIDENCE = 0.5
DEFAULT_PRINCIPLE_CONFIDENCE = 0.7

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def is_rate_limit_message(message: str) -> bool:
    """Check whether an API error message signals rate limiting."""
    lowered = message.lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


def parse_json_response(text: str) -> dict[str, Any]:
    """
    Parse a JSON object out of a model response.

    Strips markdown fences first, then falls back to the outermost {...}
    block found anywhere in the text.

    Raises:
        AnalyzerResponseError: If no JSON object can be recovered
    """
    cleaned = _FENCE_RE.sub("", text or "").strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        match = _OBJECT_RE.search(cleaned)
        if not match:
            raise AnalyzerResponseError(
                "No JSON object in model response", {"response": (text or "")[:200]}
            )
        try:
            data = json.loads(match.group())
        except json.JSONDecodeError as e:
            raise AnalyzerResponseError(
                f"Invalid JSON in model response: {e}", {"response": (text or "")[:200]}
            )

    if not isinstance(data, dict):
        raise AnalyzerResponseError(f"Expected JSON object, got {type(data).__name__}")
    return data


def _confidence(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return max(0.0, min(1.0, float(value)))


@dataclass
class GeminiResponse:
    """Response from Gemini API call."""

    content: str
    model: str
    usage: dict[str, int] = field(default_factory=dict)
    finish_reason: str = ""
    latency_ms: int = 0
    created_at: datetime = field(default_factory=datetime.now)


class GeminiClient:
    """
    Client for Google's Gemini via OpenRouter.

    Implements both the ErrorAnalyzer and PrincipleExtractor protocols.
    """

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        temperature: float = 0.2,
        max_tokens: int = 1024,
        timeout: float = DEFAULT_TIMEOUT,
        rate_limit_backoff: float = RATE_LIMIT_BACKOFF,
    ):
        """
        Initialize Gemini client.

        Args:
            api_key: OpenRouter API key
            model: Model identifier (default: google/gemini-2.0-flash-001)
            temperature: Sampling temperature (0.0-1.0)
            max_tokens: Maximum tokens in response
            timeout: Per-request timeout in seconds
            rate_limit_backoff: Delay before the single rate-limit retry
        """
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.rate_limit_backoff = rate_limit_backoff

        # Store config for lazy client creation (fix for "Event loop is closed" errors)
        self._api_key = api_key
        self._headers = {"X-Title": "Clew Debugging Assistant"}

        # Lazy-initialized client (created in async context)
        self._client: AsyncOpenAI | None = None
        self._client_loop: asyncio.AbstractEventLoop | None = None

        # Usage tracking
        self.total_tokens_used = 0
        self.request_count = 0

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: float | None = None

    async def _get_client(self) -> AsyncOpenAI:
        """Get or create AsyncOpenAI client, recreating if event loop changed."""
        current_loop = asyncio.get_running_loop()

        # Old loop is dead after asyncio.run() returns; drop its client
        if self._client is not None and self._client_loop is not current_loop:
            self._client = None
            self._client_loop = None

        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self._api_key,
                base_url=OPENROUTER_BASE_URL,
                default_headers=self._headers,
            )
            self._client_loop = current_loop

        return self._client

    async def close(self) -> None:
        """Close the client and release resources."""
        if self._client is not None:
            try:
                await self._client.close()
            except (OpenAIError, RuntimeError) as e:
                logger.debug(f"Ignoring error while closing Gemini client: {e}")
            self._client = None
            self._client_loop = None

    def _is_circuit_open(self) -> bool:
        """Check if circuit breaker is open."""
        if self._circuit_open_until is None:
            return False

        if time.time() >= self._circuit_open_until:
            self._circuit_open_until = None
            self._consecutive_failures = 0
            logger.info("Gemini circuit breaker reset")
            return False

        return True

    def _record_success(self) -> None:
        """Record successful call."""
        self._consecutive_failures = 0

    def _record_failure(self) -> None:
        """Record failed call, potentially opening circuit."""
        self._consecutive_failures += 1
        if self._consecutive_failures >= CIRCUIT_BREAKER_THRESHOLD:
            self._circuit_open_until = time.time() + CIRCUIT_BREAKER_RESET_TIME
            logger.warning(
                f"Gemini circuit breaker OPEN - {CIRCUIT_BREAKER_THRESHOLD} failures, "
                f"skipping for {CIRCUIT_BREAKER_RESET_TIME}s"
            )

    async def chat(
        self,
        prompt: str,
        method: str = "chat",
        attempt: int = 1,
    ) -> GeminiResponse:
        """
        Send one prompt to Gemini.

        Args:
            prompt: User prompt (the system prompt is fixed)
            method: Method name for logging
            attempt: Attempt number for logging

        Raises:
            AnalyzerConnectionError: On timeout, transport error or open circuit
            AnalyzerRateLimitError: If rate limited
            AnalyzerResponseError: If the response has no content
        """
        if self._is_circuit_open():
            raise AnalyzerConnectionError("Gemini circuit breaker is open")

        start_time = time.monotonic()
        log_entry = LLMLogEntry(
            timestamp=now_iso(),
            request_id=str(uuid.uuid4()),
            session_id=get_session_id(),
            method=method,
            user_prompt=prompt[:5000],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            attempt=attempt,
            project_name=get_project_name(),
        )

        def fail(error: AnalyzerError, cause: BaseException) -> AnalyzerError:
            self._record_failure()
            log_entry.error = str(cause)[:500]
            log_entry.error_type = type(cause).__name__
            log_entry.latency_ms = int((time.monotonic() - start_time) * 1000)
            llm_logger.error(log_entry.to_json())
            return error

        try:
            client = await self._get_client()
            response = await asyncio.wait_for(
                client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": ANALYZER_SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise fail(AnalyzerConnectionError(f"Gemini timed out after {self.timeout}s"), e)
        except RateLimitError as e:
            raise fail(AnalyzerRateLimitError(f"Rate limited: {e}"), e)
        except OpenAIError as e:
            message = str(e)
            if is_rate_limit_message(message):
                raise fail(AnalyzerRateLimitError(f"Rate limited: {message}"), e)
            raise fail(AnalyzerConnectionError(f"API error: {message}"), e)

        if not response.choices or not response.choices[0].message:
            error = AnalyzerResponseError("Empty response from Gemini")
            raise fail(error, error)

        choice = response.choices[0]
        content = choice.message.content or ""
        usage = response.usage
        prompt_tokens = usage.prompt_tokens if usage else 0
        completion_tokens = usage.completion_tokens if usage else 0
        total_tokens = usage.total_tokens if usage else 0

        self.total_tokens_used += total_tokens
        self.request_count += 1
        self._record_success()

        latency_ms = int((time.monotonic() - start_time) * 1000)
        log_entry.response_content = content[:10000]
        log_entry.model = response.model or self.model
        log_entry.finish_reason = choice.finish_reason or ""
        log_entry.prompt_tokens = prompt_tokens
        log_entry.completion_tokens = completion_tokens
        log_entry.total_tokens = total_tokens
        log_entry.latency_ms = latency_ms
        llm_logger.info(log_entry.to_json())

        return GeminiResponse(
            content=content,
            model=response.model or self.model,
            usage={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": total_tokens,
            },
            finish_reason=choice.finish_reason or "",
            latency_ms=latency_ms,
        )

    async def analyze_error(self, error_text: str, stack_text: str = "") -> ErrorAnalysis:
        """
        Classify an error and explain its root cause.

        Retries once after rate_limit_backoff seconds when rate limited.

        Raises:
            AnalyzerError: On any failure; callers substitute their own fallback
        """
        prompt = ERROR_ANALYSIS_PROMPT.format(
            error_message=error_text,
            stack_trace=stack_text or NO_STACK_TRACE,
        )

        attempt = 1
        while True:
            try:
                response = await self.chat(prompt, method="analyze_error", attempt=attempt)
                break
            except AnalyzerRateLimitError:
                if attempt > RATE_LIMIT_RETRIES:
                    raise
                logger.warning(
                    f"Rate limit hit, retrying in {self.rate_limit_backoff}s (attempt {attempt})"
                )
                await asyncio.sleep(self.rate_limit_backoff)
                attempt += 1

        data = parse_json_response(response.content)
        patterns = data.get("patterns") or []
        if not isinstance(patterns, list):
            patterns = [str(patterns)]

        analysis = ErrorAnalysis(
            classification=Category.parse(data.get("classification")),
            root_cause=str(data.get("rootCause") or "Unable to determine"),
            confidence=_confidence(data.get("confidence"), DEFAULT_ANALYSIS_CONFIDENCE),
            patterns=[str(p) for p in patterns],
            tokens_used=response.usage.get("total_tokens", 0),
            response_time_ms=response.latency_ms,
        )
        logger.info(
            f"Error analyzed in {analysis.response_time_ms}ms: "
            f"{analysis.classification.value} ({analysis.confidence:.2f})"
        )
        return analysis

    async def extract_principle(
        self,
        error_text: str,
        solution_text: str,
        analysis: ErrorAnalysis,
    ) -> ExtractedPrinciple:
        """
        Distill a reusable "When X, then Y" principle from a successful fix.

        Raises:
            ExtractorError: On any failure, wrapping the underlying AnalyzerError
        """
        prompt = PRINCIPLE_EXTRACTION_PROMPT.format(
            classification=analysis.classification.value,
            error_message=error_text,
            root_cause=analysis.root_cause,
            solution=solution_text,
        )

        try:
            response = await self.chat(prompt, method="extract_principle")
            data = parse_json_response(response.content)
        except AnalyzerError as e:
            raise ExtractorError(f"Principle extraction failed: {e.message}", e.details) from e

        statement = str(data.get("principle") or "").strip()
        if not statement:
            raise ExtractorError("Model returned no principle text")

        # Format is advisory; keep the principle either way
        if "when" not in statement.lower():
            logger.warning(f"Principle does not follow 'When X, then Y' format: {statement[:100]}")

        return ExtractedPrinciple(
            principle=statement,
            category=Category.for_principle(data.get("category")),
            reasoning=str(data.get("reasoning") or ""),
            confidence=_confidence(data.get("confidence"), DEFAULT_PRINCIPLE_CONFIDENCE),
            tokens_used=response.usage.get("total_tokens", 0),
        )

    def get_usage_stats(self) -> dict[str, Any]:
        """Get usage statistics."""
        return {
            "total_tokens": self.total_tokens_used,
            "request_count": self.request_count,
            "model": self.model,
        }
