"""
Credit Ledger

Core balance operations:
- Lazy account creation
- Balance queries
- Credit debits (atomic, concurrency-safe)
- Credits for purchases and reset-to-full renewals
- Immutable transaction entries

CRITICAL: Every balance mutation is a single MongoDB conditional update.
Debits only match while credits >= amount, so a negative balance is
impossible no matter how many requests race on the same account.
Idempotency references are checked and recorded inside that same update.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Tuple, Dict, Any, List

from pymongo import ReturnDocument

from .config import (
    SIGNUP_FREE_CREDITS,
    RECENT_REFS_LIMIT,
    MONGO_TRANSACTIONS,
    ERROR_CODES,
)

logger = logging.getLogger(__name__)


class AccountNotFoundError(Exception):
    """Raised when the account does not exist."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Account not found: {user_id}")


class InsufficientCreditsError(Exception):
    """Raised when the balance cannot cover a debit."""

    def __init__(self, user_id: str, required: int, available: int):
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(ERROR_CODES["INSUFFICIENT_CREDITS"])

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        return {
            "error_code": "INSUFFICIENT_CREDITS",
            "message": str(self),
            "required": self.required,
            "credits": self.available,
        }


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CreditLedger:
    """Authoritative per-account credit balance."""

    def __init__(self, db, client=None, use_transactions: bool = MONGO_TRANSACTIONS):
        self.db = db
        self.client = client
        self.use_transactions = use_transactions and client is not None

    @asynccontextmanager
    async def _unit_of_work(self):
        """Yield a session bound to a transaction, or None when transactions are off."""
        if not self.use_transactions:
            yield None
            return

        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

    @staticmethod
    def _check_amount(amount: int):
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValueError(f"Amount must be a positive integer, got {amount!r}")

    # ==================== ACCOUNTS ====================

    async def ensure_account(self, user_id: str, email: Optional[str] = None) -> Dict[str, Any]:
        """
        Get existing account or create one lazily.

        Uses an upsert so concurrent first requests create a single account.
        """
        now = _now_iso()
        account_doc = {
            "user_id": user_id,
            "email": email,
            "plan": "free",
            "plan_period": None,
            "credits": SIGNUP_FREE_CREDITS,
            "stripe_customer_id": None,
            "stripe_subscription_id": None,
            "plan_event_at": 0,
            "recent_refs": [],
            "created_at": now,
            "updated_at": now,
        }

        async with self._unit_of_work() as session:
            result = await self.db.accounts.update_one(
                {"user_id": user_id},
                {"$setOnInsert": account_doc},
                upsert=True,
                session=session,
            )

            if result.upserted_id is not None:
                logger.info(f"Created account for user {user_id}")
                if SIGNUP_FREE_CREDITS > 0:
                    await self._write_transaction(
                        user_id=user_id,
                        amount=SIGNUP_FREE_CREDITS,
                        reason="signup_grant",
                        kind="grant",
                        balance_after=SIGNUP_FREE_CREDITS,
                        session=session,
                    )

        return await self.get_account(user_id)

    async def get_account(self, user_id: str) -> Dict[str, Any]:
        """Read the account document (without internal bookkeeping fields)."""
        account = await self.db.accounts.find_one(
            {"user_id": user_id},
            {"_id": 0, "recent_refs": 0}
        )
        if not account:
            raise AccountNotFoundError(user_id)
        return account

    async def get_balance(self, user_id: str) -> Tuple[int, str]:
        """
        Read current balance and plan.

        Returns:
            Tuple of (credits, plan)
        """
        account = await self.get_account(user_id)
        return account.get("credits", 0), account.get("plan", "free")

    async def set_stripe_customer(self, user_id: str, customer_id: str) -> bool:
        """Remember the Stripe customer id for an account."""
        result = await self.db.accounts.update_one(
            {"user_id": user_id},
            {"$set": {"stripe_customer_id": customer_id, "updated_at": _now_iso()}}
        )
        return result.matched_count > 0

    # ==================== BALANCE MUTATIONS ====================

    async def debit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        reference: Optional[str] = None,
        details: Optional[Dict] = None
    ) -> int:
        """
        Atomically debit credits.

        The update only matches while credits >= amount (and, when a reference
        is given, while that reference has not been applied yet).

        Returns:
            New balance

        Raises:
            AccountNotFoundError, InsufficientCreditsError
        """
        self._check_amount(amount)

        query: Dict[str, Any] = {"user_id": user_id, "credits": {"$gte": amount}}
        update: Dict[str, Any] = {
            "$inc": {"credits": -amount},
            "$set": {"updated_at": _now_iso()},
        }
        if reference:
            query["recent_refs"] = {"$ne": reference}
            update["$push"] = {"recent_refs": {"$each": [reference], "$slice": -RECENT_REFS_LIMIT}}

        async with self._unit_of_work() as session:
            account = await self.db.accounts.find_one_and_update(
                query,
                update,
                projection={"_id": 0, "credits": 1},
                return_document=ReturnDocument.AFTER,
                session=session,
            )

            if account is None:
                current = await self._get_for_failure(user_id, session)
                if reference and reference in current.get("recent_refs", []):
                    logger.info(f"Debit {reference} already applied for user {user_id}, skipping")
                    return current.get("credits", 0)

                available = current.get("credits", 0)
                logger.info(
                    f"Insufficient credits for user {user_id}: "
                    f"required={amount} available={available}"
                )
                raise InsufficientCreditsError(user_id, amount, available)

            new_balance = account["credits"]
            await self._write_transaction(
                user_id=user_id,
                amount=-amount,
                reason=reason,
                kind="usage",
                balance_after=new_balance,
                reference=reference,
                details=details,
                session=session,
            )

        logger.info(f"Debited {amount} credits from user {user_id} ({reason}), balance={new_balance}")
        return new_balance

    async def credit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        reference: Optional[str] = None,
        kind: str = "purchase",
        details: Optional[Dict] = None
    ) -> int:
        """
        Unconditionally add credits to an existing account.

        Replaying the same reference is a no-op.

        Returns:
            New balance
        """
        self._check_amount(amount)

        query: Dict[str, Any] = {"user_id": user_id}
        update: Dict[str, Any] = {
            "$inc": {"credits": amount},
            "$set": {"updated_at": _now_iso()},
        }
        if reference:
            query["recent_refs"] = {"$ne": reference}
            update["$push"] = {"recent_refs": {"$each": [reference], "$slice": -RECENT_REFS_LIMIT}}

        async with self._unit_of_work() as session:
            account = await self.db.accounts.find_one_and_update(
                query,
                update,
                projection={"_id": 0, "credits": 1},
                return_document=ReturnDocument.AFTER,
                session=session,
            )

            if account is None:
                current = await self._get_for_failure(user_id, session)
                logger.info(f"Credit {reference} already applied for user {user_id}, skipping")
                return current.get("credits", 0)

            new_balance = account["credits"]
            await self._write_transaction(
                user_id=user_id,
                amount=amount,
                reason=reason,
                kind=kind,
                balance_after=new_balance,
                reference=reference,
                details=details,
                session=session,
            )

        logger.info(f"Credited {amount} credits to user {user_id} ({reason}), balance={new_balance}")
        return new_balance

    async def set_balance(
        self,
        user_id: str,
        amount: int,
        reason: str,
        reference: Optional[str] = None,
        kind: str = "adjustment"
    ) -> int:
        """
        Reset the balance to an absolute amount and log the signed delta.

        Replaying the same reference is a no-op.

        Returns:
            New balance
        """
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
            raise ValueError(f"Balance must be a non-negative integer, got {amount!r}")

        query: Dict[str, Any] = {"user_id": user_id}
        update: Dict[str, Any] = {"$set": {"credits": amount, "updated_at": _now_iso()}}
        if reference:
            query["recent_refs"] = {"$ne": reference}
            update["$push"] = {"recent_refs": {"$each": [reference], "$slice": -RECENT_REFS_LIMIT}}

        async with self._unit_of_work() as session:
            before = await self.db.accounts.find_one_and_update(
                query,
                update,
                projection={"_id": 0, "credits": 1},
                return_document=ReturnDocument.BEFORE,
                session=session,
            )

            if before is None:
                current = await self._get_for_failure(user_id, session)
                logger.info(f"Balance reset {reference} already applied for user {user_id}, skipping")
                return current.get("credits", 0)

            await self._write_transaction(
                user_id=user_id,
                amount=amount - before.get("credits", 0),
                reason=reason,
                kind=kind,
                balance_after=amount,
                reference=reference,
                details={"previous_balance": before.get("credits", 0)},
                session=session,
            )

        logger.info(f"Balance for user {user_id} set to {amount} ({reason})")
        return amount

    async def renew_plan(
        self,
        user_id: str,
        plan: str,
        period: Optional[str],
        credits: int,
        subscription_id: Optional[str],
        reason: str,
        event_at: int = 0,
        reference: Optional[str] = None
    ) -> Optional[int]:
        """
        set_plan and set_balance for a paid renewal, applied as one update.

        This is a reset-to-full, not an additive credit: remaining credits are
        replaced. Plan and balance change in one document update, which is
        skipped when a newer plan-state event has already been applied.

        Replaying the same reference is a no-op returning the current balance.

        Returns:
            New balance, or None if the update was stale
        """
        if credits < 0:
            raise ValueError(f"Credit allotment must be >= 0, got {credits}")

        query: Dict[str, Any] = {"user_id": user_id, "plan_event_at": {"$lte": event_at}}
        update: Dict[str, Any] = {
            "$set": {
                "plan": plan,
                "plan_period": period,
                "stripe_subscription_id": subscription_id,
                "credits": credits,
                "plan_event_at": event_at,
                "updated_at": _now_iso(),
            }
        }
        if reference:
            query["recent_refs"] = {"$ne": reference}
            update["$push"] = {"recent_refs": {"$each": [reference], "$slice": -RECENT_REFS_LIMIT}}

        async with self._unit_of_work() as session:
            before = await self.db.accounts.find_one_and_update(
                query,
                update,
                projection={"_id": 0, "credits": 1},
                return_document=ReturnDocument.BEFORE,
                session=session,
            )

            if before is None:
                current = await self._get_for_failure(user_id, session)
                if reference and reference in current.get("recent_refs", []):
                    logger.info(f"Renewal {reference} already applied for user {user_id}, skipping")
                    return current.get("credits", 0)

                logger.warning(
                    f"Skipping stale renewal for user {user_id} "
                    f"(event_at={event_at} is older than current plan state)"
                )
                return None

            await self._write_transaction(
                user_id=user_id,
                amount=credits - before.get("credits", 0),
                reason=reason,
                kind="subscription",
                balance_after=credits,
                reference=reference,
                details={"plan": plan, "plan_period": period, "previous_balance": before.get("credits", 0)},
                session=session,
            )

        logger.info(f"Renewed plan {plan}/{period} for user {user_id}: balance reset to {credits}")
        return credits

    async def set_plan(
        self,
        user_id: str,
        plan: str,
        period: Optional[str],
        subscription_id: Optional[str] = None,
        event_at: int = 0,
        expected_subscription_id: Optional[str] = None
    ) -> bool:
        """
        Change plan state without touching the balance.

        When expected_subscription_id is given, the change only applies if the
        account still points at that subscription (or at none).

        Returns:
            True if the account was updated
        """
        query: Dict[str, Any] = {"user_id": user_id, "plan_event_at": {"$lte": event_at}}
        if expected_subscription_id:
            query["stripe_subscription_id"] = {"$in": [expected_subscription_id, None]}

        result = await self.db.accounts.update_one(
            query,
            {
                "$set": {
                    "plan": plan,
                    "plan_period": period,
                    "stripe_subscription_id": subscription_id,
                    "plan_event_at": event_at,
                    "updated_at": _now_iso(),
                }
            }
        )

        if result.matched_count == 0:
            await self._get_for_failure(user_id, None)
            logger.warning(f"Plan change to {plan} for user {user_id} not applied (stale or superseded)")
            return False

        logger.info(f"Plan for user {user_id} set to {plan}/{period}")
        return True

    # ==================== LEDGER ====================

    async def _get_for_failure(self, user_id: str, session) -> Dict[str, Any]:
        """Re-read an account after a conditional update did not match."""
        current = await self.db.accounts.find_one(
            {"user_id": user_id},
            {"_id": 0, "credits": 1, "recent_refs": 1},
            session=session,
        )
        if current is None:
            raise AccountNotFoundError(user_id)
        return current

    async def _write_transaction(
        self,
        user_id: str,
        amount: int,
        reason: str,
        kind: str,
        balance_after: int,
        reference: Optional[str] = None,
        details: Optional[Dict] = None,
        session=None
    ):
        """Write an immutable ledger entry."""
        entry = {
            "transaction_id": str(uuid.uuid4()),
            "user_id": user_id,
            "amount": amount,
            "reason": reason,
            "kind": kind,
            "reference": reference,
            "balance_after": balance_after,
            "timestamp": _now_iso(),
            "details": details or {},
        }

        await self.db.credit_transactions.insert_one(entry, session=session)

    async def get_transactions(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Get recent ledger entries for user, newest first."""
        cursor = self.db.credit_transactions.find(
            {"user_id": user_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)

        return await cursor.to_list(length=limit)

    async def record_anomaly(
        self,
        user_id: str,
        task_id: str,
        amount: int,
        reason: str,
        result_url: Optional[str] = None,
        details: Optional[Dict] = None
    ):
        """Record a billing anomaly (e.g. a debit that failed after a paid-for job)."""
        await self.db.billing_anomalies.insert_one({
            "user_id": user_id,
            "task_id": task_id,
            "amount": amount,
            "reason": reason,
            "result_url": result_url,
            "details": details or {},
            "timestamp": _now_iso(),
        })
