import asyncio
import os
import random
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from tamilsubs.core.database import Base, make_engine, make_session_factory
from tamilsubs.core.errors import InsufficientBalance, InvalidInput, NotFound
from tamilsubs.models import account as account_models  # noqa: F401
from tamilsubs.schemas.account import ActivePlan, PaymentRecord, ProfileHints, TrialInfo
from tamilsubs.services.ledger_store import LedgerStore, TrialUnavailable
from tamilsubs.services.mutation_queue import MutationQueue

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _payment(i: int) -> PaymentRecord:
    return PaymentRecord(
        type="wallet",
        gateway_order_id=f"order_{i}",
        gateway_payment_id=f"pay_{i}",
        amount=10000,
        created_at=NOW + timedelta(seconds=i),
    )


class LedgerTestCase(unittest.IsolatedAsyncioTestCase):
    queue_per_key = True

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.engine = make_engine("sqlite:///" + os.path.join(self._tmp.name, "ledger.db"))
        Base.metadata.create_all(bind=self.engine)
        self.store = LedgerStore(
            make_session_factory(self.engine),
            MutationQueue(per_key=self.queue_per_key),
            clock=lambda: NOW,
        )

    def tearDown(self):
        self.engine.dispose()
        self._tmp.cleanup()


class TestLedgerStore(LedgerTestCase):
    async def test_get_or_create_starts_empty(self):
        account = await self.store.get_or_create("acct-1")
        self.assertEqual(account.account_id, "acct-1")
        self.assertEqual(account.wallet_balance, 0)
        self.assertIsNone(account.trial)
        self.assertIsNone(account.active_plan)
        self.assertEqual(account.payment_history, [])
        self.assertEqual(account.created_at, NOW)

    async def test_get_or_create_is_idempotent_without_new_hints(self):
        hints = ProfileHints(display_name="Kavin", email="kavin@example.com")
        first = await self.store.get_or_create("acct-1", hints)
        second = await self.store.get_or_create("acct-1")
        third = await self.store.get_or_create("acct-1", hints)
        self.assertEqual(first.model_dump_json(), second.model_dump_json())
        self.assertEqual(second.model_dump_json(), third.model_dump_json())

    async def test_profile_hints_overwrite_but_never_clear(self):
        await self.store.get_or_create("acct-1", ProfileHints(display_name="Old", email="old@example.com"))
        account = await self.store.get_or_create("acct-1", ProfileHints(display_name="New"))
        self.assertEqual(account.display_name, "New")
        self.assertEqual(account.email, "old@example.com")

    async def test_load_missing_returns_none(self):
        self.assertIsNone(await self.store.load("nobody"))

    async def test_update_missing_account_raises_not_found(self):
        with self.assertRaises(NotFound):
            await self.store.adjust_wallet("nobody", 100)

    async def test_blank_account_id_is_rejected(self):
        with self.assertRaises(InvalidInput):
            await self.store.get_or_create("  ")

    async def test_over_debit_fails_without_state_change(self):
        await self.store.get_or_create("acct-1")
        await self.store.adjust_wallet("acct-1", 300)
        before = await self.store.load("acct-1")
        with self.assertRaises(InsufficientBalance) as ctx:
            await self.store.adjust_wallet("acct-1", -301)
        self.assertEqual(ctx.exception.required_amount, 301)
        after = await self.store.load("acct-1")
        self.assertEqual(before.model_dump_json(), after.model_dump_json())
        self.assertEqual(after.wallet_balance, 300)

    async def test_random_adjustments_never_drive_balance_negative(self):
        await self.store.get_or_create("acct-1")
        rng = random.Random(20250301)
        rejected = 0
        for _ in range(200):
            delta = rng.randint(-600, 400)
            before = await self.store.load("acct-1")
            try:
                account = await self.store.adjust_wallet("acct-1", delta)
            except InsufficientBalance:
                rejected += 1
                self.assertLess(before.wallet_balance + delta, 0)
                after = await self.store.load("acct-1")
                self.assertEqual(before.model_dump_json(), after.model_dump_json())
            else:
                self.assertEqual(account.wallet_balance, before.wallet_balance + delta)
            self.assertGreaterEqual((await self.store.load("acct-1")).wallet_balance, 0)
        self.assertGreater(rejected, 0)

    async def test_concurrent_adjustments_never_lose_updates(self):
        await self.store.get_or_create("acct-1")
        for _ in range(15):
            await self.store.update("acct-1", lambda a: setattr(a, "wallet_balance", 1000))
            await asyncio.gather(
                self.store.adjust_wallet("acct-1", 500),
                self.store.adjust_wallet("acct-1", -200),
            )
            account = await self.store.load("acct-1")
            self.assertEqual(account.wallet_balance, 1300)

    async def test_payment_history_is_capped_newest_first(self):
        await self.store.get_or_create("acct-1")
        for i in range(51):
            await self.store.record_payment("acct-1", _payment(i))
        account = await self.store.load("acct-1")
        self.assertEqual(len(account.payment_history), 50)
        self.assertEqual(account.payment_history[0].gateway_payment_id, "pay_50")
        self.assertEqual(account.payment_history[-1].gateway_payment_id, "pay_1")

    async def test_trial_consumption_caps_and_deactivates(self):
        await self.store.get_or_create("acct-1")
        trial = TrialInfo(started_at=NOW, expires_at=NOW + timedelta(days=2), consumed_minutes=58, max_minutes=60)
        await self.store.set_trial("acct-1", trial)

        with self.assertRaises(TrialUnavailable):
            await self.store.consume_trial_minutes("acct-1", 3, now=NOW)
        account = await self.store.load("acct-1")
        self.assertEqual(account.trial.consumed_minutes, 58)
        self.assertTrue(account.trial.active)

        account = await self.store.consume_trial_minutes("acct-1", 2, now=NOW)
        self.assertEqual(account.trial.consumed_minutes, 60)
        self.assertFalse(account.trial.active)

    async def test_expire_trial_flips_active(self):
        await self.store.get_or_create("acct-1")
        trial = TrialInfo(started_at=NOW - timedelta(days=3), expires_at=NOW - timedelta(days=1), max_minutes=60)
        await self.store.set_trial("acct-1", trial)
        account = await self.store.expire_trial("acct-1", now=NOW)
        self.assertFalse(account.trial.active)
        self.assertEqual(account.trial.expires_at, NOW - timedelta(days=1))

    async def test_plan_activation_and_debit(self):
        await self.store.get_or_create("acct-1")
        plan = ActivePlan(plan_id="editor-basic", activated_at=NOW, expires_at=NOW + timedelta(days=30), remaining_minutes=200)
        await self.store.activate_plan("acct-1", plan)
        account = await self.store.debit_plan_minutes("acct-1", 15, now=NOW)
        self.assertEqual(account.active_plan.remaining_minutes, 185)
        self.assertEqual(account.active_plan.plan_id, "editor-basic")

    async def test_updated_at_refreshes_on_mutation(self):
        ticks = iter([NOW, NOW + timedelta(minutes=5)])
        self.store = LedgerStore(self.store._session_factory, clock=lambda: next(ticks))
        created = await self.store.get_or_create("acct-1")
        updated = await self.store.adjust_wallet("acct-1", 100)
        self.assertEqual(created.updated_at, NOW)
        self.assertEqual(updated.updated_at, NOW + timedelta(minutes=5))
        self.assertEqual(updated.created_at, NOW)


class TestLedgerStoreGlobalQueue(LedgerTestCase):
    queue_per_key = False

    async def test_concurrent_adjustments_across_accounts(self):
        for account_id in ("acct-a", "acct-b"):
            await self.store.get_or_create(account_id)
        await asyncio.gather(
            *(self.store.adjust_wallet(account_id, 100) for account_id in ("acct-a", "acct-b") for _ in range(5))
        )
        for account_id in ("acct-a", "acct-b"):
            account = await self.store.load(account_id)
            self.assertEqual(account.wallet_balance, 500)


if __name__ == "__main__":
    unittest.main()
