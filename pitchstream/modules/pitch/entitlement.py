"""Pitch duration entitlements.

Maps an owner's role and latest subscription to the longest pitch they may
upload. Pure functions; the service turns violations into errors.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

DEFAULT_MAX_SECONDS = 30
CANDIDATE_FREE_SECONDS = 30
CANDIDATE_SUBSCRIBED_SECONDS = 60
EMPLOYER_FREE_SECONDS = 60
EMPLOYER_SUBSCRIBED_SECONDS = 180

EMPLOYER_ROLES = frozenset({"recruiter", "company"})


class PlanDuration(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


@dataclass(frozen=True)
class Subscription:
    """Latest completed, active plan of an owner."""
    plan_duration: PlanDuration
    created_at: datetime

    @property
    def expires_at(self) -> datetime:
        months = 12 if self.plan_duration == PlanDuration.YEARLY else 1
        return add_months(self.created_at, months)

    def is_expired(self, now: datetime) -> bool:
        return _aware(now) > _aware(self.expires_at)


class Violation(str, Enum):
    FREE_ALLOWANCE_EXCEEDED = "free_allowance_exceeded"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    PLAN_LIMIT_EXCEEDED = "plan_limit_exceeded"


@dataclass(frozen=True)
class EntitlementCheck:
    max_seconds: int
    violation: Optional[Violation] = None

    @property
    def allowed(self) -> bool:
        return self.violation is None

    @property
    def message(self) -> Optional[str]:
        if self.violation == Violation.FREE_ALLOWANCE_EXCEEDED:
            return (
                "Kindly subscribe to upload videos over your free "
                f"{self.max_seconds} seconds allowance"
            )
        if self.violation == Violation.SUBSCRIPTION_EXPIRED:
            return "Subscription expired. Renew to upload pitch"
        if self.violation == Violation.PLAN_LIMIT_EXCEEDED:
            return f"Maximum allowed video duration is {self.max_seconds} seconds for your plan"
        return None


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day to the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def check_duration(
    role: Optional[str],
    subscription: Optional[Subscription],
    duration_seconds: float,
    now: Optional[datetime] = None,
) -> EntitlementCheck:
    """Decide whether a pitch of ``duration_seconds`` is within the plan."""
    now = now or datetime.now(timezone.utc)
    role = (role or "").lower()

    if role == "candidate":
        if subscription is None:
            if duration_seconds > CANDIDATE_FREE_SECONDS:
                return EntitlementCheck(CANDIDATE_FREE_SECONDS, Violation.FREE_ALLOWANCE_EXCEEDED)
            return EntitlementCheck(CANDIDATE_FREE_SECONDS)
        if subscription.is_expired(now):
            return EntitlementCheck(CANDIDATE_FREE_SECONDS, Violation.SUBSCRIPTION_EXPIRED)
        max_seconds = CANDIDATE_SUBSCRIBED_SECONDS
    elif role in EMPLOYER_ROLES:
        if subscription is None:
            max_seconds = EMPLOYER_FREE_SECONDS
        elif subscription.is_expired(now):
            return EntitlementCheck(EMPLOYER_FREE_SECONDS, Violation.SUBSCRIPTION_EXPIRED)
        else:
            max_seconds = EMPLOYER_SUBSCRIBED_SECONDS
    else:
        max_seconds = DEFAULT_MAX_SECONDS

    if duration_seconds > max_seconds:
        return EntitlementCheck(max_seconds, Violation.PLAN_LIMIT_EXCEEDED)
    return EntitlementCheck(max_seconds)
