"""Cancellable, time-bounded execution of external calls.

Every network boundary (embedding, generative model, sandbox) runs through
run_call(): the work executes on a shared worker pool while the caller waits
with a deadline and polls its CancelToken. An abandoned worker finishes in the
background; its result is discarded.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import TypeVar

from contextkit.errors import CallCancelledError, CallTimeoutError

T = TypeVar("T")

_POLL_SECONDS = 0.05
_EXECUTOR = ThreadPoolExecutor(max_workers=16, thread_name_prefix="contextkit-call")


class CancelToken:
    """Caller-owned cancellation flag shared by every call of one request."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CallCancelledError("call cancelled by caller")


def run_call(
    fn: Callable[..., T],
    *args: object,
    timeout: float,
    cancel: CancelToken | None = None,
    **kwargs: object,
) -> T:
    """Run ``fn(*args, **kwargs)`` with a deadline and optional cancellation.

    Raises:
        CallTimeoutError: The call did not finish within *timeout* seconds.
        CallCancelledError: *cancel* fired before the call finished.
        Exception: Whatever *fn* raised.
    """
    if cancel is not None:
        cancel.raise_if_cancelled()
    future = _EXECUTOR.submit(fn, *args, **kwargs)
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            future.cancel()
            raise CallTimeoutError(f"call exceeded {timeout:.1f}s timeout")
        try:
            return future.result(timeout=min(remaining, _POLL_SECONDS))
        except FutureTimeout:
            if future.done():
                # finished meanwhile, or fn itself raised TimeoutError
                return future.result()
            if cancel is not None and cancel.cancelled:
                future.cancel()
                raise CallCancelledError("call cancelled by caller") from None


def with_retry(
    fn: Callable[[], T],
    *,
    retries: int = 1,
    backoff: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *fn*, retrying up to *retries* times with exponential backoff.

    Cancellation is never retried.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except CallCancelledError:
            raise
        except Exception:
            if attempt >= retries:
                raise
            sleep(backoff * (2**attempt))
            attempt += 1
