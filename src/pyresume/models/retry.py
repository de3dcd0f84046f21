"""
Retry policy configuration for step and run retries.

Design Pattern: Strategy Pattern
RetryPolicy encapsulates the backoff shape, so the submitter, the engine
and the in-memory scheduler all compute delays the same way without
knowing the numbers.

Workflows are configured with a plain `retries` count (retries after the
first attempt). RetryPolicy.from_retries() turns that into a policy with
the standard exponential delays.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, cast


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for retry behavior.

    Examples:
        # Three retries after the first try (four executions in total)
        policy = RetryPolicy.from_retries(3)

        # Named policy: predefined sensible defaults
        policy = RetryPolicy.STANDARD

        # Custom policy: full control
        policy = RetryPolicy(
            max_attempts=5,
            initial_delay_ms=1000,
            max_delay_ms=30000,
            backoff_multiplier=2.0
        )
    """

    max_attempts: int
    """Maximum number of attempts (including the first try).

    For example, max_attempts = 3 means:
    - Attempt 1: immediate (first try)
    - Attempt 2: after initial_delay
    - Attempt 3: after initial_delay * backoff_multiplier
    """

    initial_delay_ms: int
    """Initial delay before the first retry in milliseconds."""

    max_delay_ms: int
    """Maximum delay between retries in milliseconds (caps exponential backoff)."""

    backoff_multiplier: float
    """Multiplier for exponential backoff.

    Each retry delay is calculated as:
    min(initial_delay * backoff_multiplier^(attempt-1), max_delay)
    """

    # =========================================================================
    # Predefined Policies
    # =========================================================================

    if TYPE_CHECKING:
        NONE: RetryPolicy
        STANDARD: RetryPolicy
        AGGRESSIVE: RetryPolicy
    else:
        NONE = cast("RetryPolicy", None)
        STANDARD = cast("RetryPolicy", None)
        AGGRESSIVE = cast("RetryPolicy", None)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("Retry delays must be non-negative")

    @classmethod
    def with_max_attempts(cls, max_attempts: int) -> RetryPolicy:
        """
        Create a policy with custom max_attempts (uses standard delays).

        Args:
            max_attempts: Maximum number of attempts

        Returns:
            RetryPolicy with standard delays
        """
        return cls(
            max_attempts=max_attempts,
            initial_delay_ms=1000,
            max_delay_ms=30000,
            backoff_multiplier=2.0,
        )

    @classmethod
    def from_retries(cls, retries: int, base: RetryPolicy | None = None) -> RetryPolicy:
        """
        Create a policy allowing `retries` retries after the first attempt.

        Args:
            retries: Number of retries (0 means a single attempt)
            base: Policy whose delays to reuse (defaults to STANDARD)

        Returns:
            RetryPolicy with max_attempts = retries + 1
        """
        if retries < 0:
            raise ValueError(f"retries must be non-negative, got {retries}")
        template = base if base is not None else cls.STANDARD
        return replace(template, max_attempts=retries + 1)

    @property
    def retries(self) -> int:
        """Number of retries after the first attempt."""
        return self.max_attempts - 1

    def delay_for_attempt(self, attempt: int) -> int | None:
        """
        Calculate the delay before the next retry attempt.

        Uses exponential backoff: initial_delay * backoff_multiplier^(attempt-1)
        capped at max_delay.

        Args:
            attempt: The number of attempts made so far (1-indexed)

        Returns:
            Delay in milliseconds before the next retry, or None if no more retries.

        Example:
            policy = RetryPolicy.STANDARD
            delay1 = policy.delay_for_attempt(1)  # Returns 1000 (1s)
            delay2 = policy.delay_for_attempt(2)  # Returns 2000 (2s)
            delay3 = policy.delay_for_attempt(3)  # Returns None (max attempts)
        """
        if attempt >= self.max_attempts:
            return None

        exponent = attempt - 1
        multiplier = self.backoff_multiplier**exponent
        delay_ms = self.initial_delay_ms * multiplier

        return int(min(delay_ms, self.max_delay_ms))

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, "
            f"initial_delay_ms={self.initial_delay_ms}, "
            f"max_delay_ms={self.max_delay_ms}, "
            f"backoff_multiplier={self.backoff_multiplier})"
        )


RetryPolicy.NONE = RetryPolicy(
    max_attempts=1, initial_delay_ms=0, max_delay_ms=0, backoff_multiplier=1.0
)

RetryPolicy.STANDARD = RetryPolicy(
    max_attempts=4,
    initial_delay_ms=1000,  # 1 second
    max_delay_ms=30000,  # 30 seconds
    backoff_multiplier=2.0,
)

RetryPolicy.AGGRESSIVE = RetryPolicy(
    max_attempts=10,
    initial_delay_ms=100,  # 100 milliseconds
    max_delay_ms=10000,  # 10 seconds
    backoff_multiplier=1.5,
)


# =============================================================================
# RetryableError - Fine-grained error retry control
# =============================================================================


class RetryableError(Exception):
    """
    Base class for errors that can say whether they should be retried.

    Raise a subclass from a step body to skip the remaining retries of a
    permanent failure.

    Example:
        class PaymentError(RetryableError):
            def __init__(self, message: str, is_retryable: bool = True):
                super().__init__(message)
                self._retryable = is_retryable

            def is_retryable(self) -> bool:
                return self._retryable

        # Permanent error - the step fails right away
        raise PaymentError("Insufficient funds", is_retryable=False)
    """

    def is_retryable(self) -> bool:
        """
        Returns true if this error is transient and the step should be retried.

        Returns:
            True if retryable, False if permanent
        """
        return True
