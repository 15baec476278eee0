import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from tamilsubs.core.database import Base, make_engine, make_session_factory
from tamilsubs.core.errors import AlreadyGranted, InsufficientBalance, InvalidInput, NotFound
from tamilsubs.models import account as account_models  # noqa: F401
from tamilsubs.schemas.account import ActivePlan, TrialInfo
from tamilsubs.services.entitlements import (
    EntitlementResolver,
    FundingSource,
    TrialState,
    normalize_minutes,
    plan_is_usable,
    trial_state,
)
from tamilsubs.services.ledger_store import LedgerStore

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestTrialState(unittest.TestCase):
    def _trial(self, **kw):
        base = dict(started_at=NOW, expires_at=NOW + timedelta(days=2), consumed_minutes=0, active=True, max_minutes=60)
        base.update(kw)
        return TrialInfo(**base)

    def test_none(self):
        self.assertEqual(trial_state(None, NOW), TrialState.NONE)

    def test_active(self):
        self.assertEqual(trial_state(self._trial(), NOW), TrialState.ACTIVE)

    def test_exhausted_wins_over_expired(self):
        trial = self._trial(consumed_minutes=60, active=False, expires_at=NOW - timedelta(hours=1))
        self.assertEqual(trial_state(trial, NOW), TrialState.EXHAUSTED)

    def test_expired_by_time_even_if_flag_still_set(self):
        self.assertEqual(trial_state(self._trial(expires_at=NOW), NOW), TrialState.EXPIRED)

    def test_plan_usable(self):
        plan = ActivePlan(plan_id="creator-pro", activated_at=NOW, expires_at=NOW + timedelta(days=1), remaining_minutes=5)
        self.assertTrue(plan_is_usable(plan, NOW))
        self.assertFalse(plan_is_usable(plan, NOW + timedelta(days=1)))
        self.assertFalse(plan_is_usable(plan.model_copy(update={"remaining_minutes": 0}), NOW))
        self.assertFalse(plan_is_usable(None, NOW))


class TestNormalizeMinutes(unittest.TestCase):
    def test_rounds_up(self):
        self.assertEqual(normalize_minutes(0.2), 1)
        self.assertEqual(normalize_minutes(2), 2)
        self.assertEqual(normalize_minutes(2.01), 3)
        self.assertEqual(normalize_minutes("1.5"), 2)

    def test_rejects_bad_values(self):
        for value in (0, -1, float("nan"), float("inf"), None, "abc"):
            with self.subTest(value=value):
                with self.assertRaises(InvalidInput):
                    normalize_minutes(value)


class TestEntitlementResolver(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.engine = make_engine("sqlite:///" + os.path.join(self._tmp.name, "ledger.db"))
        Base.metadata.create_all(bind=self.engine)
        self.store = LedgerStore(make_session_factory(self.engine), clock=lambda: NOW)
        self.resolver = EntitlementResolver(self.store, rate_per_minute=100, clock=lambda: NOW)

    def tearDown(self):
        self.engine.dispose()
        self._tmp.cleanup()

    async def _account(self, *, wallet=0, trial=None, plan=None):
        await self.store.get_or_create("acct-1")

        def seed(account):
            account.wallet_balance = wallet
            account.trial = trial
            account.active_plan = plan

        return await self.store.update("acct-1", seed)

    async def test_plan_pays_first(self):
        plan = ActivePlan(plan_id="editor-basic", activated_at=NOW, expires_at=NOW + timedelta(days=30), remaining_minutes=10)
        trial = TrialInfo(started_at=NOW, expires_at=NOW + timedelta(days=2), max_minutes=60)
        await self._account(wallet=5000, trial=trial, plan=plan)

        outcome = await self.resolver.consume("acct-1", 3.2)
        self.assertEqual(outcome.source, FundingSource.PLAN)
        self.assertEqual(outcome.minutes, 4)
        self.assertIsNone(outcome.debited)
        self.assertEqual(outcome.account.active_plan.remaining_minutes, 6)
        self.assertEqual(outcome.account.trial.consumed_minutes, 0)
        self.assertEqual(outcome.account.wallet_balance, 5000)

    async def test_trial_pays_when_plan_short(self):
        plan = ActivePlan(plan_id="editor-basic", activated_at=NOW, expires_at=NOW + timedelta(days=30), remaining_minutes=1)
        trial = TrialInfo(started_at=NOW, expires_at=NOW + timedelta(days=2), max_minutes=60)
        await self._account(wallet=5000, trial=trial, plan=plan)

        outcome = await self.resolver.consume("acct-1", 2)
        self.assertEqual(outcome.source, FundingSource.TRIAL)
        self.assertEqual(outcome.account.trial.consumed_minutes, 2)
        self.assertEqual(outcome.account.active_plan.remaining_minutes, 1)

    async def test_trial_reaching_cap_becomes_exhausted(self):
        trial = TrialInfo(started_at=NOW, expires_at=NOW + timedelta(days=2), consumed_minutes=55, max_minutes=60)
        await self._account(trial=trial)

        outcome = await self.resolver.consume("acct-1", 5)
        self.assertEqual(outcome.source, FundingSource.TRIAL)
        self.assertFalse(outcome.account.trial.active)
        self.assertEqual(trial_state(outcome.account.trial, NOW), TrialState.EXHAUSTED)

    async def test_wallet_pays_last(self):
        await self._account(wallet=1000)
        outcome = await self.resolver.consume("acct-1", 2.5)
        self.assertEqual(outcome.source, FundingSource.WALLET)
        self.assertEqual(outcome.debited, 300)
        self.assertEqual(outcome.account.wallet_balance, 700)

    async def test_fallback_to_insufficient_balance_leaves_state_unchanged(self):
        plan = ActivePlan(plan_id="editor-basic", activated_at=NOW, expires_at=NOW + timedelta(days=30), remaining_minutes=0)
        trial = TrialInfo(started_at=NOW, expires_at=NOW + timedelta(days=2), consumed_minutes=59, active=True, max_minutes=60)
        before = await self._account(wallet=50, trial=trial, plan=plan)

        with self.assertRaises(InsufficientBalance) as ctx:
            await self.resolver.consume("acct-1", 2)
        self.assertEqual(ctx.exception.required_amount, 200)
        self.assertEqual(ctx.exception.payload(), {"error": "Insufficient balance", "requiredAmount": 200})

        after = await self.store.load("acct-1")
        self.assertEqual(before.model_dump_json(), after.model_dump_json())

    async def test_expired_trial_is_flipped_even_when_unfunded(self):
        trial = TrialInfo(started_at=NOW - timedelta(days=3), expires_at=NOW - timedelta(days=1), max_minutes=60)
        await self._account(wallet=0, trial=trial)

        with self.assertRaises(InsufficientBalance):
            await self.resolver.consume("acct-1", 1)
        account = await self.store.load("acct-1")
        self.assertFalse(account.trial.active)
        self.assertEqual(account.trial.consumed_minutes, 0)

    async def test_expired_trial_falls_through_to_wallet(self):
        trial = TrialInfo(started_at=NOW - timedelta(days=3), expires_at=NOW - timedelta(days=1), max_minutes=60)
        await self._account(wallet=500, trial=trial)

        outcome = await self.resolver.consume("acct-1", 1)
        self.assertEqual(outcome.source, FundingSource.WALLET)
        self.assertFalse(outcome.account.trial.active)
        self.assertEqual(outcome.account.wallet_balance, 400)

    async def test_expired_plan_does_not_pay(self):
        plan = ActivePlan(plan_id="editor-basic", activated_at=NOW - timedelta(days=31), expires_at=NOW - timedelta(days=1), remaining_minutes=100)
        await self._account(wallet=100, plan=plan)
        outcome = await self.resolver.consume("acct-1", 1)
        self.assertEqual(outcome.source, FundingSource.WALLET)
        self.assertEqual(outcome.account.active_plan.remaining_minutes, 100)

    async def test_consume_unknown_account(self):
        with self.assertRaises(NotFound):
            await self.resolver.consume("ghost", 1)

    async def test_trial_is_granted_once_even_after_expiry(self):
        await self._account()
        grant = await self.resolver.start_trial("acct-1")
        self.assertFalse(grant.already_active)
        self.assertEqual(grant.trial.max_minutes, 60)
        self.assertEqual(grant.trial.expires_at, NOW + timedelta(days=2))

        later = EntitlementResolver(self.store, clock=lambda: NOW + timedelta(days=3))
        with self.assertRaises(AlreadyGranted):
            await later.start_trial("acct-1")

    async def test_start_trial_while_active_returns_existing(self):
        await self._account()
        first = await self.resolver.start_trial("acct-1")
        again = await self.resolver.start_trial("acct-1")
        self.assertTrue(again.already_active)
        self.assertEqual(again.trial.started_at, first.trial.started_at)

    async def test_refresh_status_persists_expiry(self):
        trial = TrialInfo(started_at=NOW - timedelta(days=3), expires_at=NOW - timedelta(seconds=1), max_minutes=60)
        await self._account(trial=trial)
        account = await self.resolver.refresh_status("acct-1")
        self.assertFalse(account.trial.active)
        stored = await self.store.load("acct-1")
        self.assertFalse(stored.trial.active)

    async def test_refresh_status_unknown_account(self):
        with self.assertRaises(NotFound):
            await self.resolver.refresh_status("ghost")

    async def test_plan_purchase_replaces_without_rollover(self):
        old = ActivePlan(plan_id="studio-agency", activated_at=NOW - timedelta(days=5), expires_at=NOW + timedelta(days=25), remaining_minutes=2000)
        await self._account(plan=old)

        account = await self.resolver.apply_payment(
            "acct-1", intent="plan", order_id="order_1", payment_id="pay_1", plan_id="editor-basic"
        )
        self.assertEqual(account.active_plan.plan_id, "editor-basic")
        self.assertEqual(account.active_plan.remaining_minutes, 200)
        self.assertEqual(account.active_plan.activated_at, NOW)
        self.assertEqual(account.active_plan.expires_at, NOW + timedelta(days=30))
        self.assertEqual(len(account.payment_history), 1)
        record = account.payment_history[0]
        self.assertEqual(record.type, "plan")
        self.assertEqual(record.amount, 29900)
        self.assertEqual(record.plan_id, "editor-basic")

    async def test_wallet_topup_and_duplicate_confirmation(self):
        await self._account(wallet=100)
        account = await self.resolver.apply_payment(
            "acct-1", intent="wallet", order_id="order_2", payment_id="pay_2", amount=10000
        )
        self.assertEqual(account.wallet_balance, 10100)

        again = await self.resolver.apply_payment(
            "acct-1", intent="wallet", order_id="order_2", payment_id="pay_2", amount=10000
        )
        self.assertEqual(again.wallet_balance, 10100)
        self.assertEqual(len(again.payment_history), 1)

    async def test_replayed_payment_is_ignored_after_leaving_history(self):
        await self._account()
        for i in range(51):
            await self.resolver.apply_payment(
                "acct-1", intent="wallet", order_id=f"order_{i}", payment_id=f"pay_{i}", amount=10000
            )
        before = await self.store.load("acct-1")
        self.assertEqual(before.wallet_balance, 510000)
        self.assertEqual(len(before.payment_history), 50)
        self.assertNotIn("pay_0", [p.gateway_payment_id for p in before.payment_history])

        replayed = await self.resolver.apply_payment(
            "acct-1", intent="wallet", order_id="order_0", payment_id="pay_0", amount=10000
        )
        self.assertEqual(replayed.wallet_balance, 510000)
        after = await self.store.load("acct-1")
        self.assertEqual(before.model_dump_json(), after.model_dump_json())

    async def test_payment_validation_happens_before_mutation(self):
        await self._account(wallet=100)
        with self.assertRaises(InvalidInput):
            await self.resolver.apply_payment("acct-1", intent="plan", order_id="o", payment_id="p", plan_id="nope")
        with self.assertRaises(InvalidInput):
            await self.resolver.apply_payment("acct-1", intent="wallet", order_id="o", payment_id="p")
        with self.assertRaises(InvalidInput):
            await self.resolver.apply_payment("acct-1", intent="gift", order_id="o", payment_id="p", amount=5)
        account = await self.store.load("acct-1")
        self.assertEqual(account.wallet_balance, 100)
        self.assertEqual(account.payment_history, [])


if __name__ == "__main__":
    unittest.main()
