"""
MODULE OVERVIEW:
Retry, backoff and timeout primitives used by the request queue and the plain
websocket transport.

WHAT IS HAPPENING HERE:
`classify_error` decides what the queue may do with a failure by looking at
the status code a thrown error carries. `run_with_timeout` races an action
against a deadline with `asyncio.wait_for`, which cancels the loser and leaves
no timer behind on either path. `with_reconnect` is the bounded reconnect loop
with exponential backoff and jitter that keeps a live channel coming back.
"""
import asyncio
import enum
import random
from typing import Any, Awaitable, Callable

import httpx
from loguru import logger

from reride.shared.errors import RequestTimeoutError, TransientError

RATE_LIMIT_STATUSES = frozenset({429, 503})


class ErrorKind(str, enum.Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    PERMANENT = "permanent"


def extract_status(error: BaseException) -> int | None:
    """Find the HTTP-like status code an error carries, if any."""
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value

    code = getattr(error, "code", None)
    if isinstance(code, int) and 100 <= code < 600:
        return code

    response = getattr(error, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
    return None


def classify_error(error: BaseException) -> ErrorKind:
    status = extract_status(error)
    if status in RATE_LIMIT_STATUSES:
        return ErrorKind.RATE_LIMITED
    if status is not None:
        if status == 408 or status >= 500:
            return ErrorKind.TRANSIENT
        return ErrorKind.PERMANENT

    if isinstance(error, (TransientError, ConnectionError, OSError, TimeoutError,
                          asyncio.TimeoutError, httpx.TransportError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


def backoff_delay(attempt: int, base_s: float, max_s: float) -> float:
    """Delay before retry number `attempt + 1`: base * 2**attempt, capped."""
    return min(base_s * (2 ** attempt), max_s)


async def run_with_timeout(action: Callable[[], Awaitable[Any]], timeout_s: float | None) -> Any:
    """
    Run a zero-argument async action under a deadline.
    A synchronous raise from `action` propagates exactly like a rejected awaitable.
    """
    if timeout_s is None:
        return await action()
    try:
        return await asyncio.wait_for(action(), timeout=timeout_s)
    except asyncio.TimeoutError as e:
        raise RequestTimeoutError(timeout_s) from e


async def with_reconnect(
    connect_fn: Callable[[], Awaitable[None]],
    max_attempts: int,
    base_delay_s: float = 1.0,
    max_delay_s: float = 32.0,
    label: str = "unknown",
    should_stop: Callable[[], bool] = lambda: False,
    on_failure: Callable[[int, BaseException], Awaitable[None]] | None = None,
) -> None:
    """
    Keep calling `connect_fn` until it returns cleanly, the attempt ceiling is
    reached, or `should_stop()` turns true.

    `connect_fn` is expected to hold the connection open and return once it
    closes; a clean return resets the attempt counter and reconnects.
    """
    attempt = 0

    while not should_stop():
        try:
            await connect_fn()
            attempt = 0
        except (ConnectionError, OSError, TransientError, asyncio.TimeoutError) as e:
            attempt += 1
            if on_failure is not None:
                await on_failure(attempt, e)
            if attempt >= max_attempts:
                logger.warning(f"transport={label} event=give_up attempts={attempt} reason='{e}'")
                return
            delay = backoff_delay(attempt - 1, base_delay_s, max_delay_s)
            delay += random.uniform(0, delay * 0.1)
            logger.warning(
                f"transport={label} attempt={attempt} delay={delay:.2f}s reason='{e}'"
            )
            await asyncio.sleep(delay)
            continue

        if should_stop():
            return
        delay = base_delay_s + random.uniform(0, base_delay_s * 0.1)
        await asyncio.sleep(delay)
