"""
Failed-payment retry policy: how long to wait after the Nth failure, when
to escalate to support and when to give up.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from app.core.config import Settings, settings as default_settings


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 5
    schedule_days: Tuple[int, ...] = (0, 1, 3, 7, 14)
    escalation_threshold: int = 3

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "RetryPolicy":
        config = config or default_settings
        return cls(
            max_retries=config.RETRY_MAX_RETRIES,
            schedule_days=tuple(config.get_retry_schedule()),
            escalation_threshold=config.RETRY_ESCALATION_THRESHOLD,
        )

    def delay_for(self, failed_count: int) -> timedelta:
        # Counts past the end of the schedule reuse its last entry
        index = min(max(failed_count, 0), len(self.schedule_days) - 1)
        return timedelta(days=self.schedule_days[index])

    def next_retry_date(self, last_failure_at: Optional[datetime], failed_count: int) -> Optional[datetime]:
        if last_failure_at is None:
            return None
        return last_failure_at + self.delay_for(failed_count)

    def is_due(self, now: datetime, last_failure_at: Optional[datetime], failed_count: int) -> bool:
        next_retry = self.next_retry_date(last_failure_at, failed_count)
        return next_retry is None or now >= next_retry

    def should_escalate(self, failed_count: int) -> bool:
        return failed_count >= self.escalation_threshold

    def should_cancel(self, failed_count: int) -> bool:
        return failed_count >= self.max_retries
