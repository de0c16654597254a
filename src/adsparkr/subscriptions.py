from __future__ import annotations

import calendar
import logging
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any

from adsparkr.plans import (
    ALLOWED,
    ANNUAL,
    FREE_TRIAL,
    LIMIT_TYPES,
    MONTHLY,
    PLAN_TYPES,
    TRIAL_DAYS,
    TRIAL_EXPIRED,
    LimitCheck,
    Subscription,
    SubscriptionUsage,
    evaluate_limit,
    plan_display_name,
    plan_price_display,
    remaining_trial_days,
    subscription_gate,
)
from adsparkr.storage import SupabaseStore

logger = logging.getLogger(__name__)


def utc_midnight(now: datetime | None = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def add_months(dt: datetime, months: int) -> datetime:
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def count_meta_accounts(profile: dict[str, Any] | None) -> int:
    accounts = (profile or {}).get("meta_accounts")
    if not accounts:
        return 0
    if isinstance(accounts, list):
        return len(accounts)
    return 1


class SubscriptionService:
    """Resolves the caller's subscription and applies the plan limits to it."""

    def __init__(self, store: SupabaseStore) -> None:
        self.store = store

    def resolve(self, user_id: str) -> Subscription | None:
        row = self.store.latest_active_subscription(user_id) or self.store.latest_trial_or_active_subscription(
            user_id
        )
        return Subscription.from_row(row) if row else None

    def usage_for(self, user_id: str, sub: Subscription) -> SubscriptionUsage | None:
        row = self.store.get_usage(user_id, sub.id)
        return SubscriptionUsage.from_row(row) if row else None

    def check_usage(
        self,
        user_id: str,
        limit_type: str,
        daily_budget: float | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        if limit_type not in LIMIT_TYPES:
            raise ValueError(f"Unknown limit type: {limit_type}")

        now = now or datetime.now(timezone.utc)
        sub = self.resolve(user_id)
        gate = subscription_gate(sub, now)
        if gate is TRIAL_EXPIRED and sub.status != "trial_expired":
            self.store.update_subscription(sub.id, {"status": "trial_expired"})
            logger.info("subscription %s trial expired at %s", sub.id, sub.trial_end_date)
        if gate is not None:
            return _result(gate)

        usage = self.usage_for(user_id, sub)
        if usage is None:
            return _result(ALLOWED, sub, None)

        ads_today = 0
        facebook_accounts = 0
        if limit_type == "ads_per_day":
            ads_today = self.store.count_published_ads_since(user_id, utc_midnight(now).isoformat())
        elif limit_type == "facebook_accounts":
            facebook_accounts = count_meta_accounts(self.store.get_profile(user_id))

        check = evaluate_limit(
            limit_type,
            usage,
            ads_today=ads_today,
            daily_budget=daily_budget,
            facebook_accounts=facebook_accounts,
        )
        return _result(check, sub, usage)

    def current(self, user_id: str) -> dict[str, Any]:
        sub = self.resolve(user_id)
        if sub is None:
            return {"subscription": None, "usage": None}
        usage = self.usage_for(user_id, sub)
        return {
            "subscription": sub.to_dict(),
            "usage": usage.to_dict() if usage else None,
            "plan_name": plan_display_name(sub.plan_type),
            "plan_price": plan_price_display(sub.plan_type),
            "remaining_trial_days": remaining_trial_days(sub),
        }

    def save(
        self,
        user_id: str,
        plan_type: str,
        card_required: bool = False,
        card_added: bool = False,
        trial_days: int = TRIAL_DAYS,
        amount: float | None = None,
        billing_cycle: str | None = None,
        payment_provider: str | None = None,
        payment_provider_subscription_id: str | None = None,
        payment_provider_customer_id: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Update the user's active subscription of this plan, or create one."""
        if plan_type not in PLAN_TYPES:
            raise ValueError(f"Unknown plan type: {plan_type}")
        now = now or datetime.now(timezone.utc)

        provider_fields = {
            "payment_provider": payment_provider,
            "payment_provider_subscription_id": payment_provider_subscription_id,
            "payment_provider_customer_id": payment_provider_customer_id,
        }
        provider_fields = {k: v for k, v in provider_fields.items() if v}

        existing = self.store.find_subscription(user_id, plan_type=plan_type, statuses=["active"])
        if existing:
            updates: dict[str, Any] = {"card_added": card_added, **provider_fields}
            if amount is not None:
                updates["amount"] = amount
            if billing_cycle:
                updates["billing_cycle"] = billing_cycle
            row = self.store.update_subscription(existing["id"], updates) or {**existing, **updates}
        else:
            row = self.store.insert_subscription(
                new_subscription_row(
                    user_id,
                    plan_type,
                    now=now,
                    card_required=card_required,
                    card_added=card_added,
                    trial_days=trial_days,
                    amount=amount,
                    billing_cycle=billing_cycle,
                    **provider_fields,
                )
            )
            logger.info("created %s subscription %s for user %s", plan_type, row.get("id"), user_id)

        usage = self.ensure_usage(user_id, row["id"], plan_type)
        return {"success": True, "subscription": row, "usage": usage}

    def ensure_usage(self, user_id: str, subscription_id: str, plan_type: str) -> dict[str, Any]:
        existing = self.store.get_usage(user_id, subscription_id)
        if existing:
            return existing
        usage = SubscriptionUsage.for_plan(user_id, subscription_id, plan_type)
        return self.store.insert_usage(usage.to_dict())

    def _increment(self, user_id: str, **deltas: int) -> None:
        sub = self.resolve(user_id)
        if sub is None:
            return
        usage = self.usage_for(user_id, sub)
        if usage is None:
            usage = SubscriptionUsage.from_row(self.ensure_usage(user_id, sub.id, sub.plan_type))
        updates = {k: getattr(usage, k) + v for k, v in deltas.items() if v}
        if updates and usage.id:
            self.store.update_usage(usage.id, updates)

    def record_project_created(self, user_id: str) -> None:
        self._increment(user_id, projects_count=1)

    def record_published_ads(self, user_id: str, ads: int, campaigns: int = 0) -> None:
        self._increment(user_id, ads_published_count=ads, campaigns_count=campaigns)


def new_subscription_row(
    user_id: str,
    plan_type: str,
    now: datetime,
    card_required: bool = False,
    card_added: bool = False,
    trial_days: int = TRIAL_DAYS,
    amount: float | None = None,
    billing_cycle: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    row: dict[str, Any] = {
        "user_id": user_id,
        "plan_type": plan_type,
        "status": "active",
        "card_required": card_required,
        "card_added": card_added,
        "auto_renew": True,
        "start_date": now.isoformat(),
    }
    if plan_type == FREE_TRIAL:
        trial_end = now + timedelta(days=trial_days)
        row.update(
            is_trial=True,
            trial_start_date=now.isoformat(),
            trial_end_date=trial_end.isoformat(),
            end_date=trial_end.isoformat(),
        )
    else:
        cycle = billing_cycle or ("annual" if plan_type == ANNUAL else "monthly")
        if cycle == "annual":
            row["end_date"] = add_months(now, 12).isoformat()
            row["amount"] = 1308 if plan_type == ANNUAL else None
        else:
            row["end_date"] = add_months(now, 1).isoformat()
            row["amount"] = 199 if plan_type == MONTHLY else None
        row["billing_cycle"] = cycle
    if amount:
        row["amount"] = amount
    row.update({k: v for k, v in extra.items() if v})
    return row


def _result(
    check: LimitCheck,
    sub: Subscription | None = None,
    usage: SubscriptionUsage | None = None,
) -> dict[str, Any]:
    out: dict[str, Any] = {
        "can_proceed": check.can,
        "reason": check.reason,
        "message": check.message,
    }
    if sub is not None:
        out["subscription"] = sub.to_dict()
        out["usage"] = asdict(usage) if usage else None
    return out
