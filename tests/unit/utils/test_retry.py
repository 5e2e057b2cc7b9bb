"""Tests for HTTP retry handling."""

import httpx
import pytest

from ig_validator.utils.retry import call_with_retry


def request():
    return httpx.Request("GET", "https://packages.test/example")


class TestCallWithRetry:
    """Retry behaviour."""

    def test_success_needs_one_call(self):
        calls = []

        def func(value):
            calls.append(value)
            return value * 2

        assert call_with_retry(func, 21, max_retries=3, initial_delay=0) == 42
        assert calls == [21]

    def test_transport_errors_are_retried(self):
        calls = []

        def func():
            calls.append(1)
            if len(calls) < 3:
                raise httpx.ConnectError("refused", request=request())
            return "ok"

        assert call_with_retry(func, max_retries=2, initial_delay=0) == "ok"
        assert len(calls) == 3

    def test_last_error_is_raised(self):
        calls = []

        def func():
            calls.append(1)
            raise httpx.ReadTimeout("slow", request=request())

        with pytest.raises(httpx.ReadTimeout):
            call_with_retry(func, max_retries=1, initial_delay=0)
        assert len(calls) == 2

    def test_no_retries(self):
        calls = []

        def func():
            calls.append(1)
            raise httpx.ConnectError("refused", request=request())

        with pytest.raises(httpx.ConnectError):
            call_with_retry(func, max_retries=0)
        assert len(calls) == 1

    def test_other_errors_are_not_retried(self):
        calls = []

        def func():
            calls.append(1)
            raise ValueError("bad")

        with pytest.raises(ValueError):
            call_with_retry(func, max_retries=3, initial_delay=0)
        assert len(calls) == 1

    def test_keyword_arguments_are_passed_on(self):
        def func(url, timeout=None):
            return url, timeout

        assert call_with_retry(func, "u", max_retries=0, timeout=3) == ("u", 3)
