"""Resilience helpers for the recommendation engine: timeouts, fallbacks, circuit breaking."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from circuitbreaker import circuit

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_EXECUTOR: Optional[ThreadPoolExecutor] = None
_EXECUTOR_LOCK = threading.Lock()


def _executor() -> ThreadPoolExecutor:
    global _EXECUTOR
    with _EXECUTOR_LOCK:
        if _EXECUTOR is None:
            _EXECUTOR = ThreadPoolExecutor(max_workers=8, thread_name_prefix="recengine-timeout")
        return _EXECUTOR


def call_with_timeout(func: Callable[..., T], timeout: float, *args, **kwargs) -> T:
    """
    Run a blocking call with an upper bound on how long the caller waits.

    The call runs on a shared worker pool. On expiry ``TimeoutError`` is raised
    to the caller; the worker is left to finish in the background because
    Python threads cannot be interrupted.

    Args:
        func: Callable to run
        timeout: Seconds to wait for the result
    """
    future = _executor().submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        future.cancel()
        LOGGER.warning(
            "Function %s timed out after %s seconds",
            getattr(func, "__name__", repr(func)),
            timeout,
        )
        raise TimeoutError(f"{getattr(func, '__name__', 'call')} exceeded {timeout}s") from None


def with_fallback(fallback_value: Any = None, log_errors: bool = True):
    """
    Decorator to provide fallback value on exception.

    Args:
        fallback_value: Value to return on exception
        log_errors: Whether to log errors
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as exc:  # noqa: BLE001
                if log_errors:
                    LOGGER.warning(
                        "Function %s failed with error: %s. Returning fallback value.",
                        func.__name__,
                        exc,
                    )
                return fallback_value

        return wrapper

    return decorator


def with_circuit_breaker(
    failure_threshold: int = 5,
    recovery_timeout: int = 60,
    expected_exception: type = Exception,
):
    """
    Decorator to add circuit breaker pattern.

    While the circuit is open calls fail fast with
    ``circuitbreaker.CircuitBreakerError``.

    Args:
        failure_threshold: Number of failures before opening circuit
        recovery_timeout: Seconds to wait before trying again
        expected_exception: Exception type to count as failure
    """

    def decorator(func: Callable) -> Callable:
        @circuit(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            expected_exception=expected_exception,
        )
        @wraps(func)
        def wrapper(*args, **kwargs):
            return func(*args, **kwargs)

        return wrapper

    return decorator


__all__ = [
    "call_with_timeout",
    "with_circuit_breaker",
    "with_fallback",
]
