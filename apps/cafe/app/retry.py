from __future__ import annotations

import logging
import os
import time
from functools import wraps

from .errors import AllocationConflict, RequestTimeout, StoreUnavailable


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


RETRY_ATTEMPTS = int(_env_or("CAFE_RETRY_ATTEMPTS", "4"))
RETRY_BASE_DELAY = float(_env_or("CAFE_RETRY_BASE_DELAY", "0.05"))
RETRY_MAX_DELAY = float(_env_or("CAFE_RETRY_MAX_DELAY", "1.0"))

TRANSIENT = (AllocationConflict, StoreUnavailable)

log = logging.getLogger("cafe.retry")

# Indirection so tests can record delays instead of sleeping.
_sleep = time.sleep


def backoff_delay(attempt: int, base: float | None = None, cap: float | None = None) -> float:
    """Delay before retry number `attempt` (1-based): base * 2**(attempt-1), capped."""
    base = RETRY_BASE_DELAY if base is None else base
    cap = RETRY_MAX_DELAY if cap is None else cap
    return min(cap, base * (2 ** max(0, attempt - 1)))


def retry_transient(fn=None, *, attempts: int | None = None):
    """
    Re-run a store operation when it fails with a transient error.

    Only for operations that run as a single unit of work: the failed attempt
    has already been rolled back, so running it again cannot double-apply.
    A `deadline` keyword argument (time.monotonic() based) bounds the whole
    loop: once the next attempt could not start before it, the call fails
    with RequestTimeout instead of sleeping.
    """

    def deco(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            max_attempts = max(1, attempts if attempts is not None else RETRY_ATTEMPTS)
            deadline = kwargs.get("deadline")
            attempt = 0
            while True:
                attempt += 1
                try:
                    return func(*args, **kwargs)
                except TRANSIENT as e:
                    if attempt >= max_attempts or isinstance(e, RequestTimeout):
                        raise
                    delay = backoff_delay(attempt)
                    if deadline is not None and time.monotonic() + delay >= deadline:
                        raise RequestTimeout(
                            "request deadline exceeded while retrying, nothing was applied"
                        ) from e
                    log.warning(
                        "%s failed transiently (%s), retrying in %.3fs",
                        func.__name__,
                        e.code,
                        delay,
                        extra={"attempt": attempt},
                    )
                    _sleep(delay)

        return wrapper

    if fn is not None:
        return deco(fn)
    return deco
