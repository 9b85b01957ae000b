"""
Retry / backoff policy for failed deliveries.

Exponential backoff: after the n-th failed attempt the record waits
min(base * 2**(n-1), max_delay) before it is eligible again. A failure the
adapter classified as permanent waits permanent_multiplier times longer;
it is still retried up to the cap because adapters can misclassify.

decide() is a pure function of its arguments. It holds no state and reads
no clock, so the same inputs always produce the same decision.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fieldsync.config import Settings, get_settings


@dataclass(frozen=True)
class RetryDecision:
    eligible: bool
    exhausted: bool
    next_retry_at: Optional[datetime]  # None once exhausted


@dataclass(frozen=True)
class RetryPolicy:
    base_delay: timedelta = timedelta(seconds=60)
    max_delay: timedelta = timedelta(hours=6)
    max_attempts: int = 5
    permanent_multiplier: float = 4.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            base_delay=timedelta(seconds=settings.backoff_base_seconds),
            max_delay=timedelta(seconds=settings.backoff_max_seconds),
            max_attempts=settings.max_attempts,
            permanent_multiplier=settings.permanent_backoff_multiplier,
        )

    def delay_for(self, attempts: int, transient: bool = True) -> timedelta:
        """Backoff interval that follows the given number of failed attempts."""
        if attempts <= 0:
            return timedelta(0)
        delay = min(self.base_delay * (2 ** (attempts - 1)), self.max_delay)
        if not transient:
            delay = delay * self.permanent_multiplier
        return delay

    def is_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    def decide(
        self,
        attempts: int,
        last_failure_at: Optional[datetime],
        now: datetime,
        transient: bool = True,
    ) -> RetryDecision:
        """
        Decide whether a failed record may be retried at `now`.

        Args:
            attempts: Delivery attempts made so far.
            last_failure_at: When the latest attempt failed. None means the
                failure time is unknown, which is treated as long ago.
            now: Evaluation time.
            transient: The adapter's classification of the last failure.
        """
        if self.is_exhausted(attempts):
            return RetryDecision(eligible=False, exhausted=True, next_retry_at=None)
        if last_failure_at is None:
            return RetryDecision(eligible=True, exhausted=False, next_retry_at=now)
        next_retry_at = last_failure_at + self.delay_for(attempts, transient)
        return RetryDecision(
            eligible=now >= next_retry_at,
            exhausted=False,
            next_retry_at=next_retry_at,
        )
