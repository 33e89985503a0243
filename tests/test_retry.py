"""Tests for retry with exponential backoff."""

import httpx
import pytest

from git_flotilla.errors import FlotillaError, NetworkErrorKind
from git_flotilla.retry import (
    RetryConfig,
    RetryExhausted,
    call_with_retry,
    is_retryable_error,
)


def failing(*errors, result="done"):
    """A callable raising each of ``errors`` in turn, then returning ``result``."""
    pending = list(errors)
    calls = []

    def func():
        calls.append(1)
        if pending:
            raise pending.pop(0)
        return result

    func.calls = calls
    return func


def unreachable():
    return FlotillaError.network_failure(NetworkErrorKind.UNREACHABLE, "could not resolve host")


class TestRetryConfig:
    def test_exponential_delays_without_jitter(self):
        config = RetryConfig(base_delay=0.5, multiplier=2.0, jitter=False)

        assert [config.calculate_delay(n) for n in range(3)] == [0.5, 1.0, 2.0]

    def test_jitter_stays_within_ratio(self):
        config = RetryConfig(base_delay=1.0, jitter_ratio=0.2)

        for _ in range(50):
            assert 0.8 <= config.calculate_delay(0) <= 1.2

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_retries": -1}, {"base_delay": -1}, {"multiplier": 0.5}, {"jitter_ratio": 2}],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            RetryConfig(**kwargs)


class TestIsRetryable:
    def test_classification(self):
        request = httpx.Request("GET", "https://api.example.com")

        assert is_retryable_error(unreachable())
        assert is_retryable_error(httpx.ConnectTimeout("slow", request=request))
        assert is_retryable_error(
            httpx.HTTPStatusError(
                "bad gateway", request=request, response=httpx.Response(502, request=request)
            )
        )
        assert not is_retryable_error(
            httpx.HTTPStatusError(
                "forbidden", request=request, response=httpx.Response(403, request=request)
            )
        )
        assert not is_retryable_error(
            FlotillaError.network_failure(NetworkErrorKind.AUTH_FAILED, "denied")
        )
        assert not is_retryable_error(FlotillaError.process("exit 1"))
        assert not is_retryable_error(ValueError("bad input"))


class TestCallWithRetry:
    def test_success_after_transient_failures(self):
        delays = []
        func = failing(unreachable(), unreachable())

        result, retries = call_with_retry(
            func, RetryConfig(max_retries=3, jitter=False, sleep=delays.append)
        )

        assert (result, retries) == ("done", 2)
        assert delays == [0.5, 1.0]

    def test_exhausted(self):
        func = failing(*(unreachable() for _ in range(5)))

        with pytest.raises(RetryExhausted) as exc_info:
            call_with_retry(func, RetryConfig(max_retries=2, sleep=lambda _: None))

        assert exc_info.value.retries == 2
        assert len(func.calls) == 3
        assert isinstance(exc_info.value.error, FlotillaError)

    def test_permanent_error_is_not_retried(self):
        func = failing(FlotillaError.blocked("dirty"))

        with pytest.raises(RetryExhausted) as exc_info:
            call_with_retry(func, RetryConfig(sleep=lambda _: None))

        assert exc_info.value.retries == 0
        assert len(func.calls) == 1
