"""Account ledger persistence.

Every write goes through ``LedgerStore.update``: the record is loaded, a
mutator is applied to a fresh copy, and the whole row is written back. When
the mutator raises, the transaction is rolled back and nothing is written.
All store calls run inside the mutation queue lane of the account they touch.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tamilsubs.core.errors import InsufficientBalance, InvalidInput, NotFound, ServiceError, StorageFailure
from tamilsubs.models.account import AccountRecord
from tamilsubs.schemas.account import Account, ActivePlan, PaymentRecord, ProfileHints, TrialInfo
from tamilsubs.services.mutation_queue import MutationQueue
from tamilsubs.services.pricing import PAYMENT_HISTORY_LIMIT

logger = logging.getLogger(__name__)

Mutator = Callable[[Account], None]


class TrialUnavailable(ServiceError):
    status_code = 402
    default_message = "Trial unavailable"


class PlanUnavailable(ServiceError):
    status_code = 402
    default_message = "No usable plan minutes"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---- mutators -------------------------------------------------------------


def apply_wallet_delta(account: Account, delta: int) -> None:
    delta = int(delta)
    nxt = int(account.wallet_balance) + delta
    if nxt < 0:
        raise InsufficientBalance(required_amount=-delta, message="Insufficient wallet balance")
    account.wallet_balance = nxt


def apply_trial_consumption(account: Account, minutes: int, now: datetime) -> None:
    trial = account.trial
    if trial is None or not trial.active:
        raise TrialUnavailable("Trial inactive")
    if trial.expires_at <= now:
        raise TrialUnavailable("Trial expired")
    if trial.consumed_minutes + minutes > trial.max_minutes:
        raise TrialUnavailable("Trial minutes exceeded")
    trial.consumed_minutes += minutes
    if trial.consumed_minutes >= trial.max_minutes:
        trial.active = False


def apply_trial_expiry(account: Account, now: datetime) -> bool:
    trial = account.trial
    if trial is None or not trial.active:
        return False
    if trial.expires_at > now:
        return False
    trial.active = False
    return True


def apply_plan_debit(account: Account, minutes: int, now: datetime) -> None:
    plan = account.active_plan
    if plan is None:
        raise PlanUnavailable("No active plan")
    if plan.expires_at is not None and plan.expires_at <= now:
        raise PlanUnavailable("Plan expired")
    if plan.remaining_minutes < minutes:
        raise PlanUnavailable("Insufficient plan minutes")
    account.active_plan = plan.model_copy(update={"remaining_minutes": plan.remaining_minutes - minutes})


def prepend_payment(account: Account, record: PaymentRecord) -> None:
    account.payment_history = [record, *account.payment_history][:PAYMENT_HISTORY_LIMIT]


def merge_profile_hints(account: Account, hints: ProfileHints | None) -> bool:
    if hints is None:
        return False
    changed = False
    for field in ("display_name", "email", "avatar_url"):
        value = getattr(hints, field)
        if value is None:
            continue
        if getattr(account, field) != value:
            setattr(account, field, value)
            changed = True
    return changed


# ---- row mapping ----------------------------------------------------------


def _to_account(row: AccountRecord) -> Account:
    return Account(
        account_id=row.account_id,
        display_name=row.display_name,
        email=row.email,
        avatar_url=row.avatar_url,
        wallet_balance=int(row.wallet_balance or 0),
        trial=(TrialInfo.model_validate(row.trial) if row.trial else None),
        active_plan=(ActivePlan.model_validate(row.active_plan) if row.active_plan else None),
        payment_history=[PaymentRecord.model_validate(p) for p in (row.payment_history or [])],
        processed_payment_ids=[str(p) for p in (row.processed_payment_ids or [])],
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _write_row(row: AccountRecord, account: Account) -> None:
    row.display_name = account.display_name
    row.email = account.email
    row.avatar_url = account.avatar_url
    row.wallet_balance = int(account.wallet_balance)
    row.trial = account.trial.model_dump(mode="json") if account.trial else None
    row.active_plan = account.active_plan.model_dump(mode="json") if account.active_plan else None
    row.payment_history = [p.model_dump(mode="json") for p in account.payment_history]
    row.processed_payment_ids = list(account.processed_payment_ids)
    row.created_at = account.created_at
    row.updated_at = account.updated_at


class LedgerStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        queue: MutationQueue | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._queue = queue or MutationQueue()
        self._clock = clock

    async def _run(self, account_id: str, fn: Callable[..., Any], *args: Any) -> Any:
        async def operation() -> Any:
            return await asyncio.to_thread(self._guarded, fn, *args)

        return await self._queue.enqueue(operation, key=account_id)

    def _guarded(self, fn: Callable[..., Any], *args: Any) -> Any:
        db: Session = self._session_factory()
        try:
            return fn(db, *args)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("ledger.storage_error op=%s", getattr(fn, "__name__", "?"))
            raise StorageFailure() from exc
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ---- primitive operations ---------------------------------------------

    async def get_or_create(self, account_id: str, hints: ProfileHints | None = None) -> Account:
        account_id = _require_account_id(account_id)
        return await self._run(account_id, self._get_or_create_sync, account_id, hints)

    async def load(self, account_id: str) -> Account | None:
        account_id = _require_account_id(account_id)
        return await self._run(account_id, self._load_sync, account_id)

    async def update(self, account_id: str, mutator: Mutator) -> Account:
        account_id = _require_account_id(account_id)
        return await self._run(account_id, self._update_sync, account_id, mutator)

    def _get_or_create_sync(self, db: Session, account_id: str, hints: ProfileHints | None) -> Account:
        row = db.get(AccountRecord, account_id)
        if row is not None:
            account = _to_account(row)
            if not merge_profile_hints(account, hints):
                return account
            account.updated_at = self._clock()
            _write_row(row, account)
            db.commit()
            logger.info("ledger.profile_merged account=%s", account_id)
            return _to_account(row)

        now = self._clock()
        account = Account(account_id=account_id, created_at=now, updated_at=now)
        merge_profile_hints(account, hints)
        row = AccountRecord(account_id=account_id)
        _write_row(row, account)
        db.add(row)
        db.commit()
        logger.info("ledger.account_created account=%s", account_id)
        return _to_account(row)

    def _load_sync(self, db: Session, account_id: str) -> Account | None:
        row = db.get(AccountRecord, account_id)
        return _to_account(row) if row is not None else None

    def _update_sync(self, db: Session, account_id: str, mutator: Mutator) -> Account:
        row = db.get(AccountRecord, account_id)
        if row is None:
            raise NotFound(f"Account {account_id} not found")
        account = _to_account(row)
        mutator(account)
        account.updated_at = self._clock()
        _write_row(row, account)
        db.commit()
        return _to_account(row)

    # ---- named mutations --------------------------------------------------

    async def record_payment(self, account_id: str, record: PaymentRecord) -> Account:
        return await self.update(account_id, lambda a: prepend_payment(a, record))

    async def activate_plan(self, account_id: str, plan: ActivePlan) -> Account:
        def mutate(account: Account) -> None:
            account.active_plan = plan

        return await self.update(account_id, mutate)

    async def adjust_wallet(self, account_id: str, delta: int) -> Account:
        account = await self.update(account_id, lambda a: apply_wallet_delta(a, delta))
        logger.info("ledger.wallet_adjusted account=%s delta=%s balance=%s", account_id, delta, account.wallet_balance)
        return account

    async def set_trial(self, account_id: str, trial: TrialInfo) -> Account:
        def mutate(account: Account) -> None:
            account.trial = trial

        return await self.update(account_id, mutate)

    async def consume_trial_minutes(self, account_id: str, minutes: int, now: datetime | None = None) -> Account:
        at = now or self._clock()
        return await self.update(account_id, lambda a: apply_trial_consumption(a, int(minutes), at))

    async def expire_trial(self, account_id: str, now: datetime | None = None) -> Account:
        at = now or self._clock()
        return await self.update(account_id, lambda a: apply_trial_expiry(a, at))

    async def debit_plan_minutes(self, account_id: str, minutes: int, now: datetime | None = None) -> Account:
        at = now or self._clock()
        return await self.update(account_id, lambda a: apply_plan_debit(a, int(minutes), at))


def _require_account_id(account_id: str) -> str:
    value = str(account_id or "").strip()
    if not value:
        raise InvalidInput("Missing account id")
    return value
