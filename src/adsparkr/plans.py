from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

FREE_TRIAL = "free_trial"
MONTHLY = "monthly"
ANNUAL = "annual"
ENTERPRISE = "enterprise"
PLAN_TYPES = (FREE_TRIAL, MONTHLY, ANNUAL, ENTERPRISE)

SUBSCRIPTION_STATUSES = ("active", "expired", "cancelled", "trial_expired", "trialing")
# Stripe trials land as "trialing" before the first webhook flips them to active.
USABLE_STATUSES = ("active", "trialing")

LIMIT_TYPES = ("projects", "campaigns", "ads_per_day", "daily_budget", "facebook_accounts")

TRIAL_DAYS = 7


@dataclass(frozen=True)
class PlanLimits:
    max_projects: int | None
    max_campaigns: int | None
    max_ads_per_day: int | None
    max_facebook_accounts: int | None
    daily_budget_cap: float | None
    price: float | None
    monthly_equivalent: float | None = None
    card_required: bool = False
    trial_days: int | None = None


# None means unlimited.
PLAN_LIMITS: dict[str, PlanLimits] = {
    FREE_TRIAL: PlanLimits(
        max_projects=5,
        max_campaigns=5,
        max_ads_per_day=5,
        max_facebook_accounts=1,
        daily_budget_cap=150,
        price=199,
        card_required=True,
        trial_days=TRIAL_DAYS,
    ),
    MONTHLY: PlanLimits(
        max_projects=None,
        max_campaigns=None,
        max_ads_per_day=None,
        max_facebook_accounts=1,
        daily_budget_cap=150,
        price=199,
    ),
    ANNUAL: PlanLimits(
        max_projects=None,
        max_campaigns=None,
        max_ads_per_day=None,
        max_facebook_accounts=1,
        daily_budget_cap=150,
        price=1308,
        monthly_equivalent=109,
    ),
    ENTERPRISE: PlanLimits(
        max_projects=None,
        max_campaigns=None,
        max_ads_per_day=None,
        max_facebook_accounts=None,
        daily_budget_cap=None,
        price=None,
    ),
}

_DISPLAY_NAMES = {
    FREE_TRIAL: "Free Trial (7 Days)",
    MONTHLY: "Monthly Plan",
    ANNUAL: "Annual Plan",
    ENTERPRISE: "Enterprise Plan",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO strings (with or without a trailing Z) into aware datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


@dataclass
class Subscription:
    id: str
    user_id: str
    plan_type: str
    status: str
    is_trial: bool = False
    trial_start_date: str | None = None
    trial_end_date: str | None = None
    billing_cycle: str = "monthly"
    amount: float | None = None
    currency: str = "USD"
    start_date: str | None = None
    end_date: str | None = None
    auto_renew: bool = True
    card_added: bool = False
    card_required: bool = False
    payment_provider: str | None = None
    payment_provider_customer_id: str | None = None
    payment_provider_subscription_id: str | None = None
    cancelled_at: str | None = None
    created_at: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Subscription:
        known = {f for f in cls.__dataclass_fields__}
        data = {k: v for k, v in row.items() if k in known}
        if data.get("metadata") is None:
            data["metadata"] = {}
        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SubscriptionUsage:
    user_id: str
    subscription_id: str
    projects_count: int = 0
    campaigns_count: int = 0
    ads_published_count: int = 0
    max_projects: int | None = None
    max_campaigns: int | None = None
    max_ads_per_day: int | None = None
    max_facebook_accounts: int | None = None
    daily_budget_cap: float | None = None
    id: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> SubscriptionUsage:
        known = {f for f in cls.__dataclass_fields__}
        data = {k: v for k, v in row.items() if k in known}
        for key in ("projects_count", "campaigns_count", "ads_published_count"):
            data[key] = int(data.get(key) or 0)
        return cls(**data)

    @classmethod
    def for_plan(cls, user_id: str, subscription_id: str, plan_type: str) -> SubscriptionUsage:
        limits = limits_for_plan(plan_type)
        return cls(
            user_id=user_id,
            subscription_id=subscription_id,
            max_projects=limits.max_projects,
            max_campaigns=limits.max_campaigns,
            max_ads_per_day=limits.max_ads_per_day,
            max_facebook_accounts=limits.max_facebook_accounts,
            daily_budget_cap=limits.daily_budget_cap,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if data.get("id") is None:
            data.pop("id")
        return data


@dataclass(frozen=True)
class LimitCheck:
    can: bool
    reason: str | None = None
    message: str | None = None


ALLOWED = LimitCheck(can=True)
NO_SUBSCRIPTION = LimitCheck(
    can=False,
    reason="no_subscription",
    message="No active subscription found. Please subscribe to continue.",
)
TRIAL_EXPIRED = LimitCheck(
    can=False,
    reason="trial_expired",
    message="Your free trial has expired. Please upgrade to continue.",
)


def limits_for_plan(plan_type: str) -> PlanLimits:
    try:
        return PLAN_LIMITS[plan_type]
    except KeyError:
        raise ValueError(f"Unknown plan type: {plan_type}") from None


def is_subscription_active(sub: Subscription | None) -> bool:
    return sub is not None and sub.status in USABLE_STATUSES


def is_trial_expired(sub: Subscription | None, now: datetime | None = None) -> bool:
    if sub is None:
        return False
    if sub.plan_type != FREE_TRIAL and not sub.is_trial:
        return False
    end = parse_timestamp(sub.trial_end_date)
    if end is None:
        return False
    return end < (now or _utcnow())


def remaining_trial_days(sub: Subscription | None, now: datetime | None = None) -> int | None:
    if sub is None or (sub.plan_type != FREE_TRIAL and not sub.is_trial):
        return None
    end = parse_timestamp(sub.trial_end_date)
    if end is None:
        return None
    days = (end - (now or _utcnow())).total_seconds() / 86400
    return max(0, math.ceil(days))


def _count_limit(count: int, limit: int | None, reason: str, message: str) -> LimitCheck:
    if limit is not None and count >= limit:
        return LimitCheck(can=False, reason=reason, message=message)
    return ALLOWED


def evaluate_limit(
    limit_type: str,
    usage: SubscriptionUsage,
    ads_today: int = 0,
    daily_budget: float | None = None,
    facebook_accounts: int = 0,
) -> LimitCheck:
    """
    Compare one counter against its limit on the usage row.

    Count limits deny once the counter reaches the limit; the budget cap denies
    only when the requested budget is strictly greater than the cap.
    """
    if limit_type == "projects":
        return _count_limit(
            usage.projects_count,
            usage.max_projects,
            "project_limit_reached",
            f"You've reached the limit of {usage.max_projects} projects. Upgrade to continue.",
        )
    if limit_type == "campaigns":
        return _count_limit(
            usage.campaigns_count,
            usage.max_campaigns,
            "campaign_limit_reached",
            f"You've reached the limit of {usage.max_campaigns} campaigns. Upgrade to continue.",
        )
    if limit_type == "ads_per_day":
        return _count_limit(
            ads_today,
            usage.max_ads_per_day,
            "daily_ads_limit_reached",
            f"You've reached the daily limit of {usage.max_ads_per_day} ads. Upgrade to continue.",
        )
    if limit_type == "facebook_accounts":
        return _count_limit(
            facebook_accounts,
            usage.max_facebook_accounts,
            "facebook_accounts_limit_reached",
            f"You've reached the limit of {usage.max_facebook_accounts} Facebook account(s). "
            "Upgrade to Enterprise for unlimited accounts.",
        )
    if limit_type == "daily_budget":
        if daily_budget is None or usage.daily_budget_cap is None:
            return ALLOWED
        if float(daily_budget) > float(usage.daily_budget_cap):
            return LimitCheck(
                can=False,
                reason="budget_limit_exceeded",
                message=(
                    f"Daily budget cannot exceed ${_format_amount(usage.daily_budget_cap)}. "
                    "Upgrade to Enterprise for unlimited budget."
                ),
            )
        return ALLOWED
    raise ValueError(f"Unknown limit type: {limit_type}")


def _format_amount(value: float) -> str:
    f = float(value)
    return str(int(f)) if f.is_integer() else f"{f:g}"


def subscription_gate(sub: Subscription | None, now: datetime | None = None) -> LimitCheck | None:
    """
    The plan-independent part of every gated action; None means the caller
    goes on to the per-limit comparison.

    An ended trial reports trial_expired even after its row was flipped to that
    status.
    """
    if sub is None:
        return NO_SUBSCRIPTION
    if is_trial_expired(sub, now):
        return TRIAL_EXPIRED
    if not is_subscription_active(sub):
        return NO_SUBSCRIPTION
    return None


def plan_display_name(plan_type: str | None) -> str:
    return _DISPLAY_NAMES.get(plan_type or "", "Unknown Plan")


def plan_price_display(plan_type: str | None) -> str:
    if plan_type == ENTERPRISE:
        return "Custom pricing"
    if plan_type == ANNUAL:
        limits = PLAN_LIMITS[ANNUAL]
        return f"${_format_amount(limits.monthly_equivalent or 0)}/month (billed annually at ${_format_amount(limits.price or 0)})"
    limits = PLAN_LIMITS.get(plan_type or "", PLAN_LIMITS[MONTHLY])
    return f"${_format_amount(limits.price or 0)}/month"
