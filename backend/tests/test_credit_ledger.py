"""
Credit Ledger Tests

Tests for:
- Lazy account creation (single account under concurrent first access)
- Atomic conditional debit (balance never goes negative)
- Idempotency references on debit and credit
- Reset-to-full renewals and stale plan-state events
- Immutable transaction entries
"""

import asyncio
from unittest.mock import patch

import pytest

from credit_wallet.ledger import AccountNotFoundError, InsufficientCreditsError
from credit_wallet.models import CreditTransaction, Account


class TestAccounts:

    @pytest.mark.asyncio
    async def test_ensure_account_creates_free_account(self, ledger, fake_db):
        account = await ledger.ensure_account("user_1", "a@example.com")

        assert account["plan"] == "free"
        assert account["credits"] == 0
        assert "recent_refs" not in account
        assert "_id" not in account
        Account(**account)

    @pytest.mark.asyncio
    async def test_concurrent_first_access_creates_one_account(self, ledger, fake_db):
        """Racing first requests must not create duplicate accounts"""
        await asyncio.gather(*[ledger.ensure_account("user_1") for _ in range(10)])

        assert len([d for d in fake_db.accounts.docs if d["user_id"] == "user_1"]) == 1

    @pytest.mark.asyncio
    async def test_ensure_account_keeps_existing_balance(self, ledger, seed):
        seed("user_1", credits=42, plan="pro")

        account = await ledger.ensure_account("user_1")

        assert account["credits"] == 42
        assert account["plan"] == "pro"

    @pytest.mark.asyncio
    async def test_get_balance_unknown_account(self, ledger):
        with pytest.raises(AccountNotFoundError):
            await ledger.get_balance("missing")


class TestDebit:

    @pytest.mark.asyncio
    async def test_debit_reduces_balance_and_writes_entry(self, ledger, fake_db, seed):
        seed("user_1", credits=30)

        new_balance = await ledger.debit("user_1", 10, reason="thumbnail_generation")

        assert new_balance == 20
        entries = fake_db.credit_transactions.docs
        assert len(entries) == 1
        entry = CreditTransaction(**entries[0])
        assert entry.amount == -10
        assert entry.kind == "usage"
        assert entry.balance_after == 20

    @pytest.mark.asyncio
    async def test_debit_exact_balance_reaches_zero(self, ledger, seed):
        seed("user_1", credits=10)

        assert await ledger.debit("user_1", 10, reason="test") == 0

    @pytest.mark.asyncio
    async def test_insufficient_credits_leaves_balance_untouched(self, ledger, fake_db, seed):
        account = seed("user_1", credits=5)

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.debit("user_1", 10, reason="test")

        assert exc_info.value.required == 10
        assert exc_info.value.available == 5
        assert exc_info.value.to_dict()["error_code"] == "INSUFFICIENT_CREDITS"
        assert account["credits"] == 5
        assert fake_db.credit_transactions.docs == []

    @pytest.mark.asyncio
    async def test_concurrent_debits_never_go_negative(self, ledger, seed):
        """25 credits, ten racing debits of 10: exactly two succeed"""
        account = seed("user_1", credits=25)

        results = await asyncio.gather(
            *[ledger.debit("user_1", 10, reason=f"race_{i}") for i in range(10)],
            return_exceptions=True
        )

        succeeded = [r for r in results if isinstance(r, int)]
        rejected = [r for r in results if isinstance(r, InsufficientCreditsError)]
        assert len(succeeded) == 2
        assert len(rejected) == 8
        assert account["credits"] == 5
        print(f"✓ Concurrent debits: {len(succeeded)} ok, {len(rejected)} rejected, balance {account['credits']}")

    @pytest.mark.asyncio
    async def test_debit_with_reference_applies_once(self, ledger, fake_db, seed):
        account = seed("user_1", credits=30)

        first = await ledger.debit("user_1", 10, reason="gen", reference="kie_task:abc")
        second = await ledger.debit("user_1", 10, reason="gen", reference="kie_task:abc")

        assert first == 20
        assert second == 20
        assert account["credits"] == 20
        assert len(fake_db.credit_transactions.docs) == 1

    @pytest.mark.asyncio
    async def test_debit_unknown_account(self, ledger):
        with pytest.raises(AccountNotFoundError):
            await ledger.debit("missing", 10, reason="test")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, True, 2.5])
    async def test_debit_rejects_non_positive_amounts(self, ledger, seed, amount):
        seed("user_1", credits=30)

        with pytest.raises(ValueError):
            await ledger.debit("user_1", amount, reason="test")


class TestCredit:

    @pytest.mark.asyncio
    async def test_credit_adds_to_balance(self, ledger, seed):
        seed("user_1", credits=50)

        assert await ledger.credit("user_1", 100, reason="purchase:pack_basic") == 150

    @pytest.mark.asyncio
    async def test_credit_reference_replay_is_noop(self, ledger, fake_db, seed):
        account = seed("user_1", credits=50)

        await ledger.credit("user_1", 100, reason="purchase", reference="stripe_checkout:cs_1")
        await ledger.credit("user_1", 100, reason="purchase", reference="stripe_checkout:cs_1")

        assert account["credits"] == 150
        assert len(fake_db.credit_transactions.docs) == 1

    @pytest.mark.asyncio
    async def test_reference_memory_is_bounded(self, ledger, seed):
        account = seed("user_1", credits=0)

        with patch("credit_wallet.ledger.RECENT_REFS_LIMIT", 3):
            for i in range(5):
                await ledger.credit("user_1", 1, reason="grant", reference=f"ref_{i}")

        assert account["recent_refs"] == ["ref_2", "ref_3", "ref_4"]
        assert account["credits"] == 5

    @pytest.mark.asyncio
    async def test_credit_unknown_account(self, ledger):
        with pytest.raises(AccountNotFoundError):
            await ledger.credit("missing", 10, reason="test")


class TestPlanState:

    @pytest.mark.asyncio
    async def test_renew_plan_resets_to_full(self, ledger, fake_db, seed):
        """Renewal replaces the remaining balance, it does not add to it"""
        account = seed("user_1", credits=3)

        new_balance = await ledger.renew_plan(
            "user_1", plan="pro", period="month", credits=900,
            subscription_id="sub_1", reason="renewal:pro_monthly", event_at=1000
        )

        assert new_balance == 900
        assert account["plan"] == "pro"
        assert account["plan_period"] == "month"
        assert account["stripe_subscription_id"] == "sub_1"
        entry = fake_db.credit_transactions.docs[0]
        assert entry["amount"] == 897
        assert entry["kind"] == "subscription"

    @pytest.mark.asyncio
    async def test_renew_plan_is_idempotent(self, ledger, seed):
        account = seed("user_1", credits=3)

        for _ in range(2):
            await ledger.renew_plan("user_1", "pro", "month", 900, "sub_1", "renewal", event_at=1000)

        assert account["credits"] == 900

    @pytest.mark.asyncio
    async def test_renewal_reference_replay_keeps_spent_credits(self, ledger, fake_db, seed):
        """Credits spent after a renewal are not granted back when the same invoice replays"""
        account = seed("user_1", credits=3)

        await ledger.renew_plan("user_1", "pro", "month", 900, "sub_1", "renewal", event_at=1000, reference="stripe_invoice:in_1")
        await ledger.debit("user_1", 10, reason="gen")
        replay = await ledger.renew_plan("user_1", "pro", "month", 900, "sub_1", "renewal", event_at=1000, reference="stripe_invoice:in_1")

        assert replay == 890, f"Replay should report the current balance, got {replay}"
        assert account["credits"] == 890
        assert len([t for t in fake_db.credit_transactions.docs if t["kind"] == "subscription"]) == 1

    @pytest.mark.asyncio
    async def test_stale_renewal_is_skipped(self, ledger, seed):
        account = seed("user_1", credits=120, plan_event_at=2000)

        result = await ledger.renew_plan("user_1", "pro", "month", 900, "sub_1", "renewal", event_at=1500)

        assert result is None
        assert account["credits"] == 120
        assert account["plan"] == "free"

    @pytest.mark.asyncio
    async def test_set_plan_keeps_balance(self, ledger, seed):
        account = seed("user_1", credits=420, plan="pro", plan_period="month", stripe_subscription_id="sub_1")

        applied = await ledger.set_plan("user_1", "free", None, event_at=3000, expected_subscription_id="sub_1")

        assert applied is True
        assert account["plan"] == "free"
        assert account["plan_period"] is None
        assert account["stripe_subscription_id"] is None
        assert account["credits"] == 420

    @pytest.mark.asyncio
    async def test_set_plan_ignores_other_subscription(self, ledger, seed):
        """Deleting an old subscription must not downgrade a newer one"""
        account = seed("user_1", credits=900, plan="agency", plan_period="month", stripe_subscription_id="sub_new")

        applied = await ledger.set_plan("user_1", "free", None, event_at=3000, expected_subscription_id="sub_old")

        assert applied is False
        assert account["plan"] == "agency"


class TestTransactions:

    @pytest.mark.asyncio
    async def test_get_transactions_newest_first(self, ledger, seed):
        seed("user_1", credits=100)
        await ledger.debit("user_1", 10, reason="first")
        await ledger.credit("user_1", 5, reason="second", kind="adjustment")

        entries = await ledger.get_transactions("user_1", limit=10)

        assert len(entries) == 2
        assert entries[0]["timestamp"] >= entries[1]["timestamp"]
        assert all("_id" not in e for e in entries)

    @pytest.mark.asyncio
    async def test_record_anomaly(self, ledger, fake_db):
        await ledger.record_anomaly("user_1", "task_1", 10, "insufficient_credits_after_success")

        anomaly = fake_db.billing_anomalies.docs[0]
        assert anomaly["task_id"] == "task_1"
        assert anomaly["amount"] == 10


class TestSetBalance:

    @pytest.mark.asyncio
    async def test_set_balance_logs_signed_delta(self, ledger, fake_db, seed):
        account = seed("user_1", credits=120)

        assert await ledger.set_balance("user_1", 40, reason="support_adjustment") == 40

        assert account["credits"] == 40
        entry = fake_db.credit_transactions.docs[0]
        assert entry["amount"] == -80
        assert entry["kind"] == "adjustment"
        assert entry["balance_after"] == 40

    @pytest.mark.asyncio
    async def test_set_balance_reference_replay_is_noop(self, ledger, fake_db, seed):
        account = seed("user_1", credits=10)

        await ledger.set_balance("user_1", 400, reason="reset", reference="reset:1")
        account["credits"] = 390
        assert await ledger.set_balance("user_1", 400, reason="reset", reference="reset:1") == 390

        assert len(fake_db.credit_transactions.docs) == 1

    @pytest.mark.asyncio
    async def test_set_balance_rejects_negative(self, ledger, seed):
        seed("user_1", credits=10)

        with pytest.raises(ValueError):
            await ledger.set_balance("user_1", -1, reason="reset")
