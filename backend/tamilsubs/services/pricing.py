from __future__ import annotations

from datetime import timedelta
from typing import Any


PLANS: dict[str, dict[str, Any]] = {
    "editor-basic": {
        "name": "Editor Basic",
        "minutes_included": 200,
        "price": 29900,
        "target_user": "Students / beginners",
    },
    "creator-pro": {
        "name": "Creator Pro",
        "minutes_included": 500,
        "price": 59900,
        "target_user": "Freelancers handling 20–40 reels/month",
    },
    "editor-max": {
        "name": "Editor Max",
        "minutes_included": 1200,
        "price": 99900,
        "target_user": "Mid-level freelancers",
    },
    "studio-agency": {
        "name": "Studio/Agency",
        "minutes_included": 2400,
        "price": 149900,
        "target_user": "Teams / Instagram agencies",
    },
}

# Amounts are in paise.
CURRENCY = "INR"
LOW_BALANCE_THRESHOLD = 2000
MIN_WALLET_TOPUP = 10000
WALLET_COST_PER_MINUTE = 100

TRIAL_DURATION = timedelta(days=2)
TRIAL_MINUTES = 60
PLAN_VALIDITY = timedelta(days=30)
PAYMENT_HISTORY_LIMIT = 50


def get_plan(plan_id: str | None) -> dict[str, Any] | None:
    key = (plan_id or "").strip().lower()
    if not key:
        return None
    return PLANS.get(key)


def public_plans() -> list[dict[str, Any]]:
    return [
        {
            "id": plan_id,
            "name": plan["name"],
            "minutesIncluded": plan["minutes_included"],
            "price": plan["price"],
            "targetUser": plan["target_user"],
        }
        for plan_id, plan in PLANS.items()
    ]


def wallet_cost(minutes: int, rate: int = WALLET_COST_PER_MINUTE) -> int:
    return max(0, int(minutes)) * int(rate)
