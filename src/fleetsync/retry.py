from __future__ import annotations

from collections.abc import Callable
import logging
import time
from typing import Final, TypeVar

from fleetsync.observability import log_event


LOGGER = logging.getLogger("fleetsync.retry")
T = TypeVar("T")

TRANSIENT_ERROR_PATTERNS: Final[tuple[str, ...]] = (
    "timed out",
    "timeout",
    "could not resolve host",
    "connection reset",
    "connection refused",
    "connection timed out",
    "network is unreachable",
    "temporary failure in name resolution",
    "the remote end hung up unexpectedly",
    "early eof",
    "rpc failed",
    "tls connection",
    "502 bad gateway",
    "503 service unavailable",
    "504 gateway",
    "http 502",
    "http 503",
    "http 504",
)
PERMANENT_ERROR_PATTERNS: Final[tuple[str, ...]] = (
    "authentication failed",
    "permission denied",
    "could not read username",
    "invalid username or password",
    "repository not found",
    "http 401",
    "http 403",
    "http 404",
    "bad credentials",
)
_MAX_DELAY_SECONDS: Final[float] = 10.0


def is_permanent_error(exc: BaseException) -> bool:
    text = str(exc).lower()
    return any(pattern in text for pattern in PERMANENT_ERROR_PATTERNS)


def is_transient_error(exc: BaseException) -> bool:
    if is_permanent_error(exc):
        return False
    text = str(exc).lower()
    return any(pattern in text for pattern in TRANSIENT_ERROR_PATTERNS)


def with_retry(
    operation: Callable[[], T],
    *,
    retries: int,
    description: str,
    should_retry: Callable[[BaseException], bool] = is_transient_error,
) -> T:
    if retries < 0:
        raise ValueError("retries must be >= 0")
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as exc:
            if attempt >= retries or not should_retry(exc):
                raise
            attempt += 1
            delay = min(float(2 ** (attempt - 1)), _MAX_DELAY_SECONDS)
            log_event(
                LOGGER,
                "retry_scheduled",
                operation=description,
                attempt=attempt,
                retries=retries,
                delay_seconds=delay,
                error_type=type(exc).__name__,
            )
            time.sleep(delay)
