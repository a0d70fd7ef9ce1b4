"""Bounded retry with exponential backoff for outbound network calls."""

import asyncio
import logging
import socket
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

logger = logging.getLogger("lucid.retry")

T = TypeVar("T")

# HTTP statuses worth another attempt
TRANSIENT_STATUS_CODES = frozenset({429, 502, 503})

# Lower-cased fragments of error messages that indicate a network blip
TRANSIENT_MESSAGE_MARKERS = (
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "etimedout",
    "enotfound",
    "connection reset",
    "connection refused",
    "socket hang up",
    "name or service not known",
    "temporary failure in name resolution",
)


class OperationTimeoutError(TimeoutError):
    """A single attempt exceeded its timeout."""

    def __init__(self, operation: str, timeout: float):
        super().__init__(f"{operation} timed out after {timeout:g}s")
        self.operation = operation
        self.timeout = timeout


class RetryExhaustedError(Exception):
    """Transient failures persisted through every allowed attempt."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error}"
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


@dataclass
class RetryPolicy:
    max_retries: int = 3  # total attempts, including the first
    backoff_base: float = 2.0
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return self.backoff_base * (self.backoff_multiplier ** (attempt - 1))


def is_transient(exc: BaseException) -> bool:
    """Classify an error as transient (retry) or permanent (give up)."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in TRANSIENT_STATUS_CODES
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    if isinstance(exc, (TimeoutError, ConnectionError, socket.gaierror)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    timeout: float,
    policy: RetryPolicy | None = None,
    name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` with a per-attempt timeout and bounded retry.

    ``operation`` is a zero-argument factory so that every attempt gets a
    fresh awaitable. Permanent errors propagate unchanged on the first
    occurrence. Transient errors are retried until ``policy.max_retries``
    attempts have been made, then surface as RetryExhaustedError chained to
    the last underlying error.
    """
    policy = policy or RetryPolicy()
    last_error: BaseException | None = None

    for attempt in range(1, policy.max_retries + 1):
        try:
            deadline = asyncio.timeout(timeout)
            try:
                async with deadline:
                    return await operation()
            except TimeoutError as e:
                # Only the per-attempt deadline is relabelled
                if deadline.expired():
                    raise OperationTimeoutError(name, timeout) from e
                raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not is_transient(e):
                logger.debug("%s failed with permanent error: %s", name, e)
                raise
            last_error = e
            if attempt == policy.max_retries:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s attempt %d/%d failed (%s), retrying in %.1fs",
                name, attempt, policy.max_retries, e, delay,
            )
            await sleep(delay)

    logger.error("%s failed after %d attempts: %s", name, policy.max_retries, last_error)
    raise RetryExhaustedError(name, policy.max_retries, last_error) from last_error
