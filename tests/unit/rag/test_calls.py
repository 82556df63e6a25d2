"""Tests for run_call deadlines, cancellation and with_retry."""

from __future__ import annotations

import threading
import time

import pytest

from contextkit.errors import CallCancelledError, CallTimeoutError
from contextkit.rag.calls import CancelToken, run_call, with_retry


def test_run_call_returns_result():
    assert run_call(lambda a, b=0: a + b, 2, b=3, timeout=1.0) == 5


def test_run_call_propagates_exception():
    def fail():
        raise KeyError("missing")

    with pytest.raises(KeyError):
        run_call(fail, timeout=1.0)


def test_run_call_propagates_timeout_error_raised_by_fn():
    def slow_socket():
        time.sleep(0.1)
        raise TimeoutError("socket read timed out")

    started = time.monotonic()
    with pytest.raises(TimeoutError, match="socket read timed out") as exc_info:
        run_call(slow_socket, timeout=5.0)
    assert not isinstance(exc_info.value, CallTimeoutError)
    assert time.monotonic() - started < 2.0


def test_run_call_timeout():
    release = threading.Event()
    with pytest.raises(CallTimeoutError):
        run_call(release.wait, 2, timeout=0.1)
    release.set()


def test_run_call_cancel_while_waiting():
    release = threading.Event()
    token = CancelToken()
    threading.Timer(0.05, token.cancel).start()
    with pytest.raises(CallCancelledError):
        run_call(release.wait, 5, timeout=5.0, cancel=token)
    release.set()


def test_run_call_already_cancelled():
    token = CancelToken()
    token.cancel()
    assert token.cancelled
    with pytest.raises(CallCancelledError):
        run_call(lambda: 1, timeout=1.0, cancel=token)


def test_with_retry_retries_once_then_succeeds():
    attempts: list[int] = []
    sleeps: list[float] = []

    def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("transient")
        return "ok"

    assert with_retry(flaky, retries=1, backoff=0.5, sleep=sleeps.append) == "ok"
    assert len(attempts) == 2
    assert sleeps == [0.5]


def test_with_retry_exhausted_raises_last_error():
    sleeps: list[float] = []

    def always_fails():
        raise RuntimeError("down")

    with pytest.raises(RuntimeError, match="down"):
        with_retry(always_fails, retries=2, backoff=1.0, sleep=sleeps.append)
    assert sleeps == [1.0, 2.0]


def test_with_retry_does_not_retry_cancellation():
    attempts: list[int] = []

    def cancelled():
        attempts.append(1)
        raise CallCancelledError("stop")

    with pytest.raises(CallCancelledError):
        with_retry(cancelled, retries=3, sleep=lambda _: None)
    assert attempts == [1]
