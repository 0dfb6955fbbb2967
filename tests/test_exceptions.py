"""
Unit tests for the custom exception hierarchy.

Validates exception creation, inheritance, error kinds and the
retryable/fatal split the executor relies on.
"""

import pytest

from diagram_engine.exceptions import (
    AuthFailureError,
    CacheIOError,
    ConfigurationError,
    DiagramEngineError,
    ErrorKind,
    InvalidRequestError,
    JSONExtractionError,
    ProviderError,
    RateLimitedError,
    TransientNetworkError,
)


class TestDiagramEngineError:
    """Tests for the base exception class."""

    def test_basic_creation(self):
        err = DiagramEngineError("something broke")
        assert str(err) == "something broke"
        assert err.details == {}

    def test_with_details(self):
        err = DiagramEngineError("oops", details={"code": 42})
        assert err.details["code"] == 42

    def test_is_exception(self):
        assert issubclass(DiagramEngineError, Exception)


class TestConfigurationError:

    def test_stores_config_path(self):
        err = ConfigurationError("bad yaml", config_path="config/engine.yaml")
        assert err.config_path == "config/engine.yaml"

    def test_catchable_as_base(self):
        with pytest.raises(DiagramEngineError):
            raise ConfigurationError("invalid")


class TestProviderErrors:
    """Retryable vs fatal provider failures."""

    def test_stores_status_tier_and_retry_after(self):
        err = RateLimitedError(
            "slow down", status_code=429, tier="fast", retry_after_seconds=2.5
        )
        assert err.status_code == 429
        assert err.tier == "fast"
        assert err.retry_after_seconds == 2.5

    @pytest.mark.parametrize("cls,kind,retryable", [
        (RateLimitedError, ErrorKind.RATE_LIMITED, True),
        (TransientNetworkError, ErrorKind.TRANSIENT_NETWORK, True),
        (AuthFailureError, ErrorKind.AUTH_FAILURE, False),
        (InvalidRequestError, ErrorKind.INVALID_REQUEST, False),
    ])
    def test_kind_and_retryable(self, cls, kind, retryable):
        err = cls("x")
        assert err.kind is kind
        assert err.retryable is retryable
        assert isinstance(err, ProviderError)

    def test_defaults_are_none(self):
        err = TransientNetworkError("reset")
        assert err.status_code is None
        assert err.tier is None
        assert err.retry_after_seconds is None


class TestJSONExtractionError:

    def test_stores_preview(self):
        err = JSONExtractionError("no json", raw_preview="Sure! Here is")
        assert err.raw_preview == "Sure! Here is"
        assert isinstance(err, DiagramEngineError)


class TestCacheIOError:

    def test_stores_operation_and_path(self):
        err = CacheIOError("disk full", operation="write", path="/tmp/cache.json")
        assert err.operation == "write"
        assert err.path == "/tmp/cache.json"


class TestErrorKind:

    def test_values_are_snake_case_strings(self):
        assert ErrorKind.PARSE_FAILURE.value == "parse_failure"
        assert ErrorKind("disabled") is ErrorKind.DISABLED
        assert len(ErrorKind) == 8
