"""
Retry logic with exponential backoff for outbound deliveries.

This module provides a policy-driven retry executor, the backoff calculation
it uses, and the classifier deciding which failures are worth retrying.
"""

import logging
import random
import threading
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from .constants import (
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_MAX_ATTEMPTS,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
    DEFAULT_RETRY_MULTIPLIER,
)
from .exceptions import (
    ConfigurationError,
    DeliveryError,
    RetryExhaustedError,
    TransientDeliveryError,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryPolicy:
    """
    Configuration for retry behavior.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Wait before the first retry, in seconds
        max_delay: Upper bound for any single wait
        multiplier: Growth factor between consecutive waits
        jitter: Whether to randomize waits to 50-100% of the computed value
    """
    max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    base_delay: float = DEFAULT_RETRY_BASE_DELAY_SECONDS
    max_delay: float = DEFAULT_RETRY_MAX_DELAY_SECONDS
    multiplier: float = DEFAULT_RETRY_MULTIPLIER
    jitter: bool = False

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must not be negative")
        if self.multiplier < 1:
            raise ValueError(f"multiplier must be >= 1, got {self.multiplier}")


def calculate_backoff(
    attempt: int,
    base_delay: float,
    multiplier: float,
    max_delay: float,
    jitter: bool = False
) -> float:
    """
    Calculate exponential backoff wait time.

    Args:
        attempt: Number of failed attempts so far, minus one (0-indexed)
        base_delay: Wait before the first retry
        multiplier: Growth factor
        max_delay: Maximum wait time
        jitter: Whether to add random jitter

    Returns:
        Wait time in seconds
    """
    wait = min(max_delay, base_delay * (multiplier ** attempt))

    if jitter:
        wait = wait * (0.5 + random.random() * 0.5)

    return wait


def is_retryable(error: BaseException) -> bool:
    """
    Decide whether a failed attempt should be retried.

    Configuration and validation problems and explicit provider rejections
    fail immediately. Timeouts, connection failures and anything unknown
    are retried.
    """
    if isinstance(error, TransientDeliveryError):
        return True
    if isinstance(error, (ConfigurationError, ValidationError, DeliveryError)):
        return False
    return True


class Retryer:
    """
    Runs an attempt under a RetryPolicy.

    Waiting is done on a threading.Event so a shutdown can cut a pending
    wait short; an attempt already in flight is never interrupted.

    Example:
        >>> retryer = Retryer(RetryPolicy(max_attempts=3, base_delay=2.0))
        >>> retryer.execute(lambda: adapter.send(message, channel))
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        classifier: Callable[[BaseException], bool] = is_retryable,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.policy = policy or RetryPolicy()
        self.policy.validate()
        self.classifier = classifier
        self._sleep = sleep
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Abort pending waits; attempts after the current one are skipped."""
        self._cancelled.set()

    def _wait(self, seconds: float) -> bool:
        """Wait between attempts. Returns False if cancelled."""
        if self._sleep is not None:
            self._sleep(seconds)
            return not self._cancelled.is_set()
        return not self._cancelled.wait(seconds)

    def execute(
        self,
        attempt: Callable[[], T],
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
        description: str = "operation",
    ) -> T:
        """
        Run `attempt` until it succeeds or the policy gives up.

        Args:
            attempt: Zero-argument callable performing one try
            on_retry: Called with (attempt number, error) before each wait
            description: Label used in log messages

        Returns:
            Whatever `attempt` returns

        Raises:
            The attempt's own error when it is not retryable, or
            RetryExhaustedError once every attempt has failed.
        """
        max_attempts = self.policy.max_attempts
        last_error: Optional[BaseException] = None

        for number in range(1, max_attempts + 1):
            try:
                return attempt()
            except Exception as e:
                last_error = e
                if not self.classifier(e):
                    logger.error(f"Non-retryable failure for {description}: {e}")
                    raise

                if number >= max_attempts:
                    break

                wait_time = calculate_backoff(
                    number - 1,
                    self.policy.base_delay,
                    self.policy.multiplier,
                    self.policy.max_delay,
                    self.policy.jitter,
                )
                logger.warning(
                    f"Retry {number}/{max_attempts} for {description} "
                    f"after {wait_time:.2f}s: {e}"
                )
                if on_retry is not None:
                    on_retry(number, e)
                if not self._wait(wait_time):
                    logger.warning(f"Retries for {description} cancelled")
                    raise RetryExhaustedError(number, e) from e

        logger.error(f"Max retries ({max_attempts}) exceeded for {description}: {last_error}")
        raise RetryExhaustedError(max_attempts, last_error) from last_error
