"""
Custom exception hierarchy for the Segment Diagram Engine.

Structured error handling with clear categories:
- Configuration errors (caught at startup)
- Provider errors (raised by completion providers, absorbed by the executor)
- Retryable vs fatal provider failures
- JSON extraction errors (turned into ParseFailure results by the parser)
- Cache I/O errors (logged and counted, never fatal to a request)

Usage:
    from diagram_engine.exceptions import RateLimitedError, TransientNetworkError

    try:
        resp = await client.post(url, json=body)
    except httpx.TimeoutException as e:
        raise TransientNetworkError("Request timeout") from e
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Terminal failure categories reported on an AnalysisResponse."""

    RATE_LIMITED = "rate_limited"
    TRANSIENT_NETWORK = "transient_network"
    AUTH_FAILURE = "auth_failure"
    INVALID_REQUEST = "invalid_request"
    PARSE_FAILURE = "parse_failure"
    SCHEMA_VIOLATION = "schema_violation"
    CACHE_IO_FAILURE = "cache_io_failure"
    DISABLED = "disabled"


class DiagramEngineError(Exception):
    """
    Base exception for all Segment Diagram Engine errors.

    All custom exceptions inherit from this, so you can catch
    `DiagramEngineError` to handle any engine-specific error.
    """

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}


# ── Configuration Errors ──────────────────────────────────────────


class ConfigurationError(DiagramEngineError):
    """
    Raised when the engine configuration is invalid.

    Examples:
    - YAML file that does not match the EngineConfig schema
    - Non-numeric value in a DIAGRAM_ENGINE_* environment override
    """

    def __init__(
        self,
        message: str,
        *,
        config_path: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.config_path = config_path


# ── Provider Errors ───────────────────────────────────────────────


class ProviderError(DiagramEngineError):
    """
    Raised by a completion provider when a model call fails.

    The executor decides between retry, fallback and surfacing based on
    `kind` and `retryable`.
    """

    kind: ErrorKind = ErrorKind.TRANSIENT_NETWORK
    retryable: bool = True

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        tier: Optional[str] = None,
        retry_after_seconds: Optional[float] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.status_code = status_code
        self.tier = tier
        self.retry_after_seconds = retry_after_seconds


class RateLimitedError(ProviderError):
    """Quota exceeded (HTTP 429). Retried with backoff."""

    kind = ErrorKind.RATE_LIMITED
    retryable = True


class TransientNetworkError(ProviderError):
    """Timeout, transport failure, 5xx or empty completion. Retried with backoff."""

    kind = ErrorKind.TRANSIENT_NETWORK
    retryable = True


class AuthFailureError(ProviderError):
    """
    Credential rejected (HTTP 401/403).

    Fatal: never retried, and never handed to the fallback tier because
    both tiers share the same credential.
    """

    kind = ErrorKind.AUTH_FAILURE
    retryable = False


class InvalidRequestError(ProviderError):
    """Any other 4xx. Aborts the current tier; the fallback tier may still run."""

    kind = ErrorKind.INVALID_REQUEST
    retryable = False


# ── Parsing Errors ────────────────────────────────────────────────


class JSONExtractionError(DiagramEngineError):
    """
    Raised when no JSON object can be recovered from model output.

    The parser converts this into a ParseFailure result; it never leaves
    the parser.
    """

    def __init__(
        self,
        message: str,
        *,
        raw_preview: str = "",
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.raw_preview = raw_preview


# ── Cache Errors ──────────────────────────────────────────────────


class CacheIOError(DiagramEngineError):
    """
    Raised when reading or writing the persisted cache file fails.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.operation = operation
        self.path = path
