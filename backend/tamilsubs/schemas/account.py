from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from tamilsubs.services.pricing import LOW_BALANCE_THRESHOLD


class WireModel(BaseModel):
    """Snake_case in Python and storage, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TrialInfo(WireModel):
    started_at: datetime
    expires_at: datetime
    consumed_minutes: int = 0
    active: bool = True
    max_minutes: int


class ActivePlan(WireModel):
    plan_id: str
    activated_at: datetime
    expires_at: Optional[datetime] = None
    remaining_minutes: int


class PaymentRecord(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: Literal["plan", "wallet"]
    gateway_order_id: str
    gateway_payment_id: str
    amount: int
    plan_id: Optional[str] = None
    created_at: datetime


class ProfileHints(BaseModel):
    display_name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None


class Account(WireModel):
    account_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    wallet_balance: int = 0
    trial: Optional[TrialInfo] = None
    active_plan: Optional[ActivePlan] = None
    payment_history: list[PaymentRecord] = []
    processed_payment_ids: list[str] = []
    created_at: datetime
    updated_at: datetime


def public_account(account: Account) -> dict[str, Any]:
    out = account.model_dump(mode="json", by_alias=True, exclude={"created_at", "updated_at", "processed_payment_ids"})
    out["lowBalance"] = account.wallet_balance < LOW_BALANCE_THRESHOLD
    return out
