"""Retry with exponential backoff, used for action collaborators and storage writes."""

import random
import time
from functools import wraps
from typing import Any, Callable, List, Optional, Sequence, Type

from .exceptions import StorageError, TransientError, WorkflowEngineError
from .logging import RetryLogger


class RetryConfig:
    """How often and how patiently an operation is retried.

    Engine errors decide for themselves through their ``recoverable`` flag;
    any other exception is retried when it is an instance of one of
    ``retryable_exceptions``.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[Sequence[Type[Exception]]] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions: List[Type[Exception]] = list(retryable_exceptions or [TransientError, StorageError])
        self.sleep = sleep

    def is_retryable(self, exception: Exception) -> bool:
        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable
        return isinstance(exception, tuple(self.retryable_exceptions))

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        return attempt < self.max_attempts and self.is_retryable(exception)

    def get_delay(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-based)."""
        delay = min(self.max_delay, self.base_delay * self.exponential_base ** (attempt - 1))
        if self.jitter:
            delay = random.uniform(delay / 2, delay)
        return delay


def call_with_retry(func: Callable, config: RetryConfig, *args, operation: Optional[str] = None, **kwargs) -> Any:
    """Call ``func`` until it succeeds or ``config`` gives up; the last error is re-raised."""
    retry_logger = RetryLogger(operation or getattr(func, "__name__", "operation"))

    attempt = 1
    while True:
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if not config.should_retry(e, attempt):
                retry_logger.gave_up(e, attempt)
                raise
            delay = config.get_delay(attempt)
            retry_logger.attempt_failed(e, attempt, config.max_attempts, delay)
            config.sleep(delay)
            attempt += 1
            continue

        if attempt > 1:
            retry_logger.recovered(attempt)
        return result


def with_retry(config: Optional[RetryConfig] = None):
    """Decorator form of ``call_with_retry``."""
    config = config or RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return call_with_retry(func, config, *args, operation=func.__qualname__, **kwargs)
        return wrapper

    return decorator
