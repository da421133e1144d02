"""
Retry Utilities Module
Exponential backoff shared by the Jira client and the store/usecase boundary.
"""

import errno
import re
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

import requests
from sqlalchemy.exc import DisconnectionError, OperationalError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from jira_sync.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

_RETRYABLE_SIGNATURES = (
    'timeout',
    'timed out',
    'connection refused',
    'connection reset',
    'temporary failure',
    'no such host',
    'network is unreachable',
    'rate limit',
)

# "status 503", "HTTP 429", "status code 502"; bare digit runs never match
_RETRYABLE_STATUS_MARKER = re.compile(r'\b(?:status|http)\s*(?:code\s*)?(?:429|50[0234])\b', re.IGNORECASE)

_RETRYABLE_ERRNOS = {errno.ECONNREFUSED, errno.ECONNRESET, errno.ETIMEDOUT}


class OperationCancelled(Exception):
    """Raised when the cancellation event fires during a wait."""


@dataclass(frozen=True)
class RetryConfig:
    """Exponential backoff parameters."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0


# Policy for remote HTTP calls: initial attempt + 3 retries
HTTP_RETRY = RetryConfig(max_attempts=4, initial_delay=1.0, max_delay=30.0, multiplier=2.0)

# Policy for store/usecase operations
DEFAULT_RETRY = RetryConfig()


def is_retryable_error(exc: BaseException) -> bool:
    """
    Decide whether an error is worth retrying.

    Typed errors carrying a ``retryable`` attribute are trusted first;
    known transport exceptions next; message signatures last.
    """
    if exc is None or isinstance(exc, OperationCancelled):
        return False

    retryable = getattr(exc, 'retryable', None)
    if retryable is not None:
        return bool(retryable)

    if isinstance(exc, (requests.ConnectionError, requests.Timeout, socket.timeout,
                        TimeoutError, ConnectionError, DisconnectionError)):
        return True

    if isinstance(exc, OSError) and exc.errno in _RETRYABLE_ERRNOS:
        return True

    if isinstance(exc, OperationalError) and exc.connection_invalidated:
        return True

    message = str(exc).lower()
    if any(signature in message for signature in _RETRYABLE_SIGNATURES):
        return True
    if _RETRYABLE_STATUS_MARKER.search(message):
        return True

    cause = exc.__cause__
    if cause is not None and cause is not exc:
        return is_retryable_error(cause)

    return False


def backoff_wait(config: RetryConfig) -> Callable[[RetryCallState], float]:
    """
    Tenacity wait strategy for a RetryConfig.

    A ``retry_after`` attribute on the failed attempt's error (seconds sent
    by the server) wins over the exponential delay. Both are capped at
    ``config.max_delay``.
    """
    exponential = wait_exponential(
        multiplier=config.initial_delay,
        exp_base=config.multiplier,
        max=config.max_delay
    )

    def wait_for_retry(retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(error, 'retry_after', None)
        if retry_after is not None and retry_after >= 0:
            return min(config.max_delay, retry_after)
        return exponential(retry_state)

    return wait_for_retry


def wait(delay: float, cancel_event: Optional[threading.Event] = None) -> None:
    """
    Sleep for delay seconds, waking early when cancelled.

    Raises:
        OperationCancelled: If cancel_event is set before or during the wait
    """
    if cancel_event is None:
        time.sleep(delay)
        return
    if cancel_event.wait(delay):
        raise OperationCancelled("Operation cancelled during backoff")


def build_retrying(
    operation: str,
    config: RetryConfig,
    cancel_event: Optional[threading.Event] = None,
    sleep_fn: Callable[[float], None] = None
) -> Retrying:
    """
    Build a tenacity Retrying for one operation.

    Args:
        operation: Name used in log messages
        config: Backoff parameters
        cancel_event: Cancellation signal observed during backoff waits
        sleep_fn: Replacement for the backoff wait (tests)
    """
    attempts = max(1, config.max_attempts)

    def log_retry(retry_state: RetryCallState) -> None:
        logger.warning(
            f"{operation} failed (attempt {retry_state.attempt_number}/{attempts}), "
            f"retrying in {retry_state.next_action.sleep:.1f}s: {retry_state.outcome.exception()}"
        )

    def sleep(seconds: float) -> None:
        if sleep_fn is not None:
            sleep_fn(float(seconds))
        else:
            wait(seconds, cancel_event)

    return Retrying(
        stop=stop_after_attempt(attempts),
        retry=retry_if_exception(is_retryable_error),
        wait=backoff_wait(config),
        before_sleep=log_retry,
        sleep=sleep,
        reraise=True
    )


def with_retry(
    operation: str,
    fn: Callable[[], T],
    config: RetryConfig = DEFAULT_RETRY,
    cancel_event: Optional[threading.Event] = None,
    sleep_fn: Callable[[float], None] = None
) -> T:
    """
    Execute fn with exponential backoff retry.

    Args:
        operation: Name used in log messages
        fn: Zero-argument callable to execute
        config: Backoff parameters
        cancel_event: Cancellation signal observed between attempts
        sleep_fn: Replacement for the backoff wait (tests)

    Returns:
        Whatever fn returns

    Raises:
        The last error from fn once attempts are exhausted or it is not retryable;
        OperationCancelled when cancelled between attempts.
    """
    def attempt() -> T:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled(f"{operation} cancelled")
        return fn()

    retrying = build_retrying(operation, config, cancel_event, sleep_fn)
    try:
        return retrying(attempt)
    except OperationCancelled:
        raise
    except Exception as e:
        attempts = retrying.statistics.get('attempt_number', 1)
        if attempts > 1:
            logger.error(f"{operation} failed after {attempts} attempts: {e}")
        else:
            logger.debug(f"{operation} failed with non-retryable error: {e}")
        raise
