"""Usage metering policy.

A usage request is funded by the first source that can cover it in full:
the active plan, then the trial, then the wallet. The funding check and the
debit happen inside one ledger update, so a concurrent request for the same
account always sees the result of the previous one.
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from tamilsubs.core.errors import AlreadyGranted, InsufficientBalance, InvalidInput, NotFound
from tamilsubs.schemas.account import Account, ActivePlan, PaymentRecord, TrialInfo
from tamilsubs.services.ledger_store import (
    LedgerStore,
    apply_plan_debit,
    apply_trial_consumption,
    apply_trial_expiry,
    apply_wallet_delta,
    prepend_payment,
    utcnow,
)
from tamilsubs.services.pricing import (
    PLAN_VALIDITY,
    TRIAL_DURATION,
    TRIAL_MINUTES,
    WALLET_COST_PER_MINUTE,
    get_plan,
    wallet_cost,
)

logger = logging.getLogger(__name__)


class TrialState(str, enum.Enum):
    NONE = "none"
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"


class FundingSource(str, enum.Enum):
    PLAN = "plan"
    TRIAL = "trial"
    WALLET = "wallet"


@dataclass(frozen=True)
class UsageOutcome:
    source: FundingSource
    minutes: int
    account: Account
    debited: int | None = None


@dataclass(frozen=True)
class TrialGrant:
    trial: TrialInfo
    already_active: bool = False


class _Unfunded(Exception):
    def __init__(self, cost: int, trial_expired: bool) -> None:
        super().__init__("unfunded")
        self.cost = cost
        self.trial_expired = trial_expired


class _TrialStillActive(Exception):
    def __init__(self, trial: TrialInfo) -> None:
        super().__init__("trial_active")
        self.trial = trial


class _PaymentAlreadyApplied(Exception):
    pass


def trial_state(trial: TrialInfo | None, now: datetime) -> TrialState:
    if trial is None:
        return TrialState.NONE
    if trial.consumed_minutes >= trial.max_minutes:
        return TrialState.EXHAUSTED
    if trial.expires_at <= now or not trial.active:
        return TrialState.EXPIRED
    return TrialState.ACTIVE


def plan_is_usable(plan: ActivePlan | None, now: datetime) -> bool:
    if plan is None:
        return False
    if plan.expires_at is not None and plan.expires_at <= now:
        return False
    return plan.remaining_minutes > 0


def normalize_minutes(minutes: float | int | str | None) -> int:
    try:
        value = float(minutes)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise InvalidInput("Invalid minutes value")
    if not math.isfinite(value) or value <= 0:
        raise InvalidInput("Invalid minutes value")
    return max(1, math.ceil(value))


class EntitlementResolver:
    def __init__(
        self,
        store: LedgerStore,
        *,
        rate_per_minute: int = WALLET_COST_PER_MINUTE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._rate = int(rate_per_minute)
        self._clock = clock

    async def consume(self, account_id: str, minutes: float | int, now: datetime | None = None) -> UsageOutcome:
        requested = normalize_minutes(minutes)
        at = now or self._clock()
        decision: dict[str, object] = {}

        def fund(account: Account) -> None:
            plan = account.active_plan
            if plan_is_usable(plan, at) and plan is not None and plan.remaining_minutes >= requested:
                apply_plan_debit(account, requested, at)
                decision["source"] = FundingSource.PLAN
                return

            trial_expired = apply_trial_expiry(account, at)
            trial = account.trial
            if trial_state(trial, at) == TrialState.ACTIVE and trial is not None:
                if trial.consumed_minutes + requested <= trial.max_minutes:
                    apply_trial_consumption(account, requested, at)
                    decision["source"] = FundingSource.TRIAL
                    return

            cost = wallet_cost(requested, self._rate)
            if account.wallet_balance >= cost:
                apply_wallet_delta(account, -cost)
                decision["source"] = FundingSource.WALLET
                decision["debited"] = cost
                return

            raise _Unfunded(cost, trial_expired)

        try:
            account = await self._store.update(account_id, fund)
        except _Unfunded as exc:
            if exc.trial_expired:
                await self._store.expire_trial(account_id, at)
            logger.info("usage.insufficient account=%s minutes=%s required=%s", account_id, requested, exc.cost)
            raise InsufficientBalance(required_amount=exc.cost) from None

        source = decision["source"]
        debited = decision.get("debited")
        logger.info(
            "usage.consumed account=%s minutes=%s source=%s debited=%s",
            account_id,
            requested,
            getattr(source, "value", source),
            debited,
        )
        return UsageOutcome(
            source=source,  # type: ignore[arg-type]
            minutes=requested,
            account=account,
            debited=(int(debited) if debited is not None else None),  # type: ignore[arg-type]
        )

    async def start_trial(self, account_id: str, now: datetime | None = None) -> TrialGrant:
        at = now or self._clock()
        granted: dict[str, TrialInfo] = {}

        def grant(account: Account) -> None:
            existing = account.trial
            if existing is not None:
                if trial_state(existing, at) == TrialState.ACTIVE:
                    raise _TrialStillActive(existing)
                raise AlreadyGranted("Trial already used")
            trial = TrialInfo(
                started_at=at,
                expires_at=at + TRIAL_DURATION,
                consumed_minutes=0,
                active=True,
                max_minutes=TRIAL_MINUTES,
            )
            account.trial = trial
            granted["trial"] = trial

        try:
            await self._store.update(account_id, grant)
        except _TrialStillActive as exc:
            return TrialGrant(trial=exc.trial, already_active=True)
        logger.info("trial.started account=%s", account_id)
        return TrialGrant(trial=granted["trial"])

    async def refresh_status(self, account_id: str, now: datetime | None = None) -> Account:
        at = now or self._clock()
        account = await self._store.load(account_id)
        if account is None:
            raise NotFound("User not found")
        trial = account.trial
        if trial is not None and trial.active and trial.expires_at <= at:
            account = await self._store.expire_trial(account_id, at)
            logger.info("trial.expired account=%s", account_id)
        return account

    async def apply_payment(
        self,
        account_id: str,
        *,
        intent: str,
        order_id: str,
        payment_id: str,
        plan_id: str | None = None,
        amount: int | None = None,
        now: datetime | None = None,
    ) -> Account:
        at = now or self._clock()
        kind = (intent or "").strip().lower()
        if kind == "plan":
            plan = get_plan(plan_id)
            if plan is None:
                raise InvalidInput("Invalid plan")
            plan_key = str(plan_id).strip().lower()
            record = PaymentRecord(
                type="plan",
                gateway_order_id=order_id,
                gateway_payment_id=payment_id,
                amount=int(plan["price"]),
                plan_id=plan_key,
                created_at=at,
            )
            new_plan = ActivePlan(
                plan_id=plan_key,
                activated_at=at,
                expires_at=at + PLAN_VALIDITY,
                remaining_minutes=int(plan["minutes_included"]),
            )
        elif kind == "wallet":
            if amount is None or int(amount) <= 0:
                raise InvalidInput("Missing top-up amount")
            record = PaymentRecord(
                type="wallet",
                gateway_order_id=order_id,
                gateway_payment_id=payment_id,
                amount=int(amount),
                created_at=at,
            )
            new_plan = None
        else:
            raise InvalidInput("Invalid intent")

        def settle(account: Account) -> None:
            # History is capped; processed ids are kept for the life of the account.
            if payment_id in account.processed_payment_ids or any(
                p.gateway_payment_id == payment_id for p in account.payment_history
            ):
                raise _PaymentAlreadyApplied()
            if new_plan is not None:
                account.active_plan = new_plan
            else:
                apply_wallet_delta(account, record.amount)
            prepend_payment(account, record)
            account.processed_payment_ids = [*account.processed_payment_ids, payment_id]

        try:
            account = await self._store.update(account_id, settle)
        except _PaymentAlreadyApplied:
            logger.warning("payment.duplicate account=%s payment=%s", account_id, payment_id)
            existing = await self._store.load(account_id)
            if existing is None:
                raise NotFound("User not found")
            return existing
        logger.info(
            "payment.applied account=%s intent=%s order=%s amount=%s",
            account_id,
            kind,
            order_id,
            record.amount,
        )
        return account
