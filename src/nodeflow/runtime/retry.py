"""Classification of transient failures and exponential backoff."""
from __future__ import annotations

import socket
import ssl
import time
from typing import Any, Callable

import httpx
import requests

from nodeflow.errors import TransientError
from nodeflow.observability import get_logger

logger = get_logger(__name__)

TRANSIENT_SNIPPETS = [
    "SSLEOFError",
    "UNEXPECTED_EOF_WHILE_READING",
    "ConnectionResetError",
    "RemoteDisconnected",
    "ReadTimeout",
    "TimeoutError",
    "ConnectionError",
]

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def is_transient_exc(e: BaseException) -> bool:
    """True for failures worth retrying: timeouts, resets, rate limits."""
    if isinstance(e, TransientError):
        return True
    if isinstance(
        e,
        (
            ssl.SSLError,
            TimeoutError,
            ConnectionError,
            socket.timeout,
            socket.gaierror,
            httpx.TransportError,
            requests.ConnectionError,
            requests.Timeout,
        ),
    ):
        return True
    msg = repr(e)
    return any(s in msg for s in TRANSIENT_SNIPPETS)


def is_transient_status(status_code: int) -> bool:
    return status_code in TRANSIENT_STATUS_CODES


def retry_call(
    fn: Callable[[], Any],
    attempts: int = 3,
    base_delay: float = 0.6,
    retry_on: Callable[[BaseException], bool] = is_transient_exc,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Call ``fn`` until it succeeds or a non-retriable error is raised.

    Args:
        fn: Zero-argument callable
        attempts: Maximum number of calls
        base_delay: Delay before the second call; doubles each time
        retry_on: Predicate deciding whether an error is retried
        sleep: Sleep function (injected in tests)

    Returns:
        Whatever ``fn`` returns

    Raises:
        The last error when attempts are exhausted or it is not retriable
    """
    last_err: BaseException | None = None
    for i in range(1, max(1, attempts) + 1):
        try:
            return fn()
        except Exception as e:
            last_err = e
            if not retry_on(e) or i >= attempts:
                break
            delay = base_delay * (2 ** (i - 1))
            logger.warning(
                "[retry] Transient error (%s). Retrying in %.1fs (%d/%d)...",
                e.__class__.__name__,
                delay,
                i,
                attempts,
            )
            sleep(delay)
    raise last_err  # type: ignore[misc]
