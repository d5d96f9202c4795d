"""Time helpers. All instants are naive UTC, matching the DateTime columns."""
from datetime import datetime, timezone

from dateutil.relativedelta import relativedelta


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def add_billing_cycle(start: datetime, billing_cycle: str) -> datetime:
    """One billing-cycle unit after start. Month ends clamp (Jan 31 -> Feb 28/29)."""
    if billing_cycle == "yearly":
        return start + relativedelta(years=1)
    if billing_cycle == "monthly":
        return start + relativedelta(months=1)
    raise ValueError(f"unsupported billing cycle: {billing_cycle!r}")
