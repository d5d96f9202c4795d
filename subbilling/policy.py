"""
Billing decision logic. Pure functions only: no I/O, no clock.

- DunningPolicy.on_failure: failure count, grace window and retry date after a failed attempt
- DunningPolicy.is_retry_eligible: whether a past-due subscription is due for an automatic retry
- advance_period: the next billing period after a successful charge

The grace window is anchored to the first failure of a dunning cycle; later
failures in the same cycle only move the failure count and retry date.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from subbilling.config import Config, cfg
from subbilling.models import SubscriptionStatus
from subbilling.timeutil import add_billing_cycle

DEFAULT_FAILURE_REASON = "Payment failed"


@dataclass(frozen=True)
class FailureTransition:
    status: SubscriptionStatus
    payment_failure_count: int
    grace_period_end: datetime
    next_retry_date: datetime
    last_payment_error: str

    @property
    def suspended(self) -> bool:
        return self.status == SubscriptionStatus.UNPAID

    def as_changes(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "payment_failure_count": self.payment_failure_count,
            "grace_period_end": self.grace_period_end,
            "next_retry_date": self.next_retry_date,
            "last_payment_error": self.last_payment_error,
        }


@dataclass(frozen=True)
class PeriodAdvance:
    current_period_start: datetime
    current_period_end: datetime

    def as_changes(self) -> Dict[str, Any]:
        # a successful charge closes the dunning cycle
        return {
            "status": SubscriptionStatus.ACTIVE.value,
            "current_period_start": self.current_period_start,
            "current_period_end": self.current_period_end,
            "cancel_at_period_end": False,
            "payment_failure_count": 0,
            "last_payment_error": None,
            "grace_period_end": None,
            "next_retry_date": None,
            "proration_amount": None,
        }


def advance_period(current_period_end: datetime, billing_cycle: str) -> PeriodAdvance:
    """New period starts where the old one ended; never computed from 'now'."""
    return PeriodAdvance(current_period_start=current_period_end,
                         current_period_end=add_billing_cycle(current_period_end, billing_cycle))


@dataclass(frozen=True)
class DunningPolicy:
    max_failures: int = 3
    grace_period: timedelta = timedelta(days=7)
    retry_interval: timedelta = timedelta(days=3)

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "DunningPolicy":
        config = config or cfg
        return cls(max_failures=int(config.MAX_PAYMENT_FAILURES),
                   grace_period=timedelta(days=int(config.GRACE_PERIOD_DAYS)),
                   retry_interval=timedelta(days=int(config.RETRY_INTERVAL_DAYS)))

    def on_failure(self, failure_count: int, grace_period_end: Optional[datetime],
                   reason: Optional[str], now: datetime) -> FailureTransition:
        new_count = (failure_count or 0) + 1
        status = SubscriptionStatus.UNPAID if new_count >= self.max_failures else SubscriptionStatus.PAST_DUE
        return FailureTransition(
            status=status,
            payment_failure_count=new_count,
            grace_period_end=grace_period_end if grace_period_end is not None else now + self.grace_period,
            next_retry_date=now + self.retry_interval,
            last_payment_error=reason or DEFAULT_FAILURE_REASON,
        )

    def is_retry_eligible(self, status: str, failure_count: int, next_retry_date: Optional[datetime],
                          grace_period_end: Optional[datetime], now: datetime) -> bool:
        if status != SubscriptionStatus.PAST_DUE:
            return False
        if next_retry_date is None or grace_period_end is None:
            return False
        return next_retry_date <= now and grace_period_end >= now and failure_count < self.max_failures
