"""Membership lifecycle arithmetic.

Everything here is pure: callers fetch the membership row and the grace
period and pass them in, so the same rules apply to every endpoint.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta

DEFAULT_GRACE_PERIOD_DAYS = 7

STATUS_ACTIVE = "ACTIVE"
STATUS_IN_GRACE = "IN_GRACE"
STATUS_EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class MembershipStatus:
    status: str
    days_until_expiry: Optional[int]

    @property
    def allows_entry(self) -> bool:
        return self.status in (STATUS_ACTIVE, STATUS_IN_GRACE)


def compute_membership_status(
    end_date: Optional[date],
    today: date,
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS,
) -> MembershipStatus:
    """Derive ACTIVE / IN_GRACE / EXPIRED for a membership ending on ``end_date``.

    ``end_date`` is None when the member has no ACTIVE membership row, which
    is EXPIRED with no day count. Both boundaries are inclusive: the last day
    of the membership is ACTIVE and the last grace day is IN_GRACE.
    """
    if end_date is None:
        return MembershipStatus(status=STATUS_EXPIRED, days_until_expiry=None)
    grace_end = end_date + timedelta(days=grace_period_days)
    days_until_expiry = (end_date - today).days
    if today <= end_date:
        status = STATUS_ACTIVE
    elif today <= grace_end:
        status = STATUS_IN_GRACE
    else:
        status = STATUS_EXPIRED
    return MembershipStatus(status=status, days_until_expiry=days_until_expiry)


def membership_end_date(start_date: date, duration_months: int, free_months_on_signup: int = 0) -> date:
    # relativedelta clamps to the last day of shorter months (Jan 31 + 1 -> Feb 29).
    return start_date + relativedelta(months=duration_months + free_months_on_signup)


def renewal_start_date(current_end_date: Optional[date], current_status: str, today: date) -> date:
    """Grace-period renewals are back-dated to the day after the old end date."""
    if current_end_date is not None and current_status == STATUS_IN_GRACE:
        return current_end_date + timedelta(days=1)
    return today
