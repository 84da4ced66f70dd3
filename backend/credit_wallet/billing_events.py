"""
Billing Event Translator

Maps verified Stripe webhook events onto ledger mutations and plan-state
changes.

Guarantees:
- Idempotent: each event id is recorded in billing_events and a redelivered
  event short-circuits. One-time pack credits are additionally keyed by the
  checkout session id inside the ledger update.
- Out-of-order tolerant: plan-state changes carry the event's created
  timestamp and never override state written by a newer event.
- Never raises for bad metadata: events that cannot be resolved to an
  account/plan are logged and dropped (status "skipped").

Signature verification happens before this module is called.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import (
    STRIPE_CHECKOUT_COMPLETED,
    STRIPE_CHECKOUT_ASYNC_SUCCEEDED,
    STRIPE_INVOICE_PAID,
    STRIPE_INVOICE_PAYMENT_SUCCEEDED,
    STRIPE_SUBSCRIPTION_UPDATED,
    STRIPE_SUBSCRIPTION_DELETED,
)
from .ledger import CreditLedger, AccountNotFoundError
from .plan_catalog import is_pack_key, get_pack, resolve_plan_state

logger = logging.getLogger(__name__)

SubscriptionLookup = Callable[[str], Awaitable[Dict[str, Any]]]


def _user_id_from(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    """Account id stored in Stripe metadata (legacy key supported)."""
    if not metadata:
        return None
    return metadata.get("user_id") or metadata.get("supabase_user_id")


def _skipped(reason: str, **extra) -> Dict[str, Any]:
    return {"status": "skipped", "reason": reason, **extra}


class BillingEventTranslator:
    """Apply Stripe events to accounts exactly once."""

    def __init__(self, db, ledger: CreditLedger, subscription_lookup: Optional[SubscriptionLookup] = None):
        self.db = db
        self.ledger = ledger
        self.subscription_lookup = subscription_lookup

        self._handlers = {
            STRIPE_CHECKOUT_COMPLETED: self._handle_checkout_completed,
            STRIPE_CHECKOUT_ASYNC_SUCCEEDED: self._handle_checkout_completed,
            STRIPE_INVOICE_PAID: self._handle_invoice_paid,
            STRIPE_INVOICE_PAYMENT_SUCCEEDED: self._handle_invoice_paid,
            STRIPE_SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            STRIPE_SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
        }

    async def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Route a verified event to its handler.

        Returns:
            Result dict with a "status" of success, skipped, ignored or duplicate
        """
        event_id = event.get("id")
        event_type = event.get("type")
        created = int(event.get("created") or 0)
        data = (event.get("data") or {}).get("object") or {}

        if not event_id:
            logger.error(f"Billing event without id dropped (type={event_type})")
            return _skipped("Missing event id")

        existing = await self.db.billing_events.find_one({"event_id": event_id}, {"_id": 0})
        if existing and existing.get("status") in ("processed", "skipped"):
            logger.info(f"Event {event_id} already processed, skipping")
            return {"status": "duplicate", "event_id": event_id}

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled event type: {event_type}")
            return {"status": "ignored", "event_type": event_type}

        # Claim the event before applying side effects
        now = datetime.now(timezone.utc).isoformat()
        await self.db.billing_events.update_one(
            {"event_id": event_id},
            {
                "$set": {"event_type": event_type, "status": "processing"},
                "$setOnInsert": {"event_id": event_id, "received_at": now},
            },
            upsert=True
        )

        try:
            result = await handler(data, event_id, created)
        except AccountNotFoundError as e:
            logger.error(f"Event {event_id} ({event_type}) references unknown account {e.user_id}")
            result = _skipped("Account not found", user_id=e.user_id)

        status = "skipped" if result.get("status") == "skipped" else "processed"
        await self.db.billing_events.update_one(
            {"event_id": event_id},
            {"$set": {
                "status": status,
                "result": result,
                "processed_at": datetime.now(timezone.utc).isoformat()
            }}
        )

        logger.info(f"Billing event {event_id} ({event_type}) -> {result}")
        return result

    # ==================== HANDLERS ====================

    async def _handle_checkout_completed(self, session: Dict, event_id: str, created: int) -> Dict[str, Any]:
        """One-time pack purchases credit immediately; subscriptions wait for the invoice."""
        metadata = session.get("metadata") or {}
        user_id = _user_id_from(metadata)
        plan_key = metadata.get("plan_key")

        if not user_id or not plan_key:
            logger.error(f"Missing metadata in checkout session {session.get('id')}")
            return _skipped("Missing metadata")

        customer_id = session.get("customer")
        if customer_id:
            await self.ledger.set_stripe_customer(user_id, customer_id)

        if not is_pack_key(plan_key):
            # Granting here as well as on invoice.paid would double-grant the first period
            return {"status": "success", "action": "subscription_deferred_to_invoice", "user_id": user_id}

        pack = get_pack(plan_key)
        if not pack:
            logger.error(f"Unknown pack {plan_key} in checkout session {session.get('id')}")
            return _skipped("Unknown pack", plan_key=plan_key)

        payment_status = session.get("payment_status")
        if payment_status and payment_status != "paid":
            logger.info(f"Checkout {session.get('id')} not paid yet ({payment_status}), waiting")
            return _skipped("Payment not settled", payment_status=payment_status)

        reference = f"stripe_checkout:{session.get('id') or event_id}"
        new_balance = await self.ledger.credit(
            user_id=user_id,
            amount=pack.credits,
            reason=f"purchase:{plan_key}",
            reference=reference,
            kind="purchase",
            details={"pack_name": pack.name, "stripe_event_id": event_id}
        )

        logger.info(f"Added {pack.credits} credits to user {user_id} ({pack.name})")
        return {
            "status": "success",
            "action": "credits_added",
            "user_id": user_id,
            "credits": pack.credits,
            "balance": new_balance,
        }

    async def _handle_invoice_paid(self, invoice: Dict, event_id: str, created: int) -> Dict[str, Any]:
        """Paid invoice renews the plan and resets credits to the full allotment."""
        subscription_id, metadata = self._subscription_ref_from_invoice(invoice)

        if not subscription_id:
            return _skipped("Invoice has no subscription")

        if not (_user_id_from(metadata) and metadata.get("plan_key")):
            metadata = await self._lookup_subscription_metadata(subscription_id)

        user_id = _user_id_from(metadata)
        plan_key = metadata.get("plan_key")
        if not user_id or not plan_key:
            logger.error(f"Missing metadata in subscription {subscription_id}")
            return _skipped("Missing metadata", subscription_id=subscription_id)

        try:
            plan_name, plan_period, credits = resolve_plan_state(plan_key)
        except KeyError:
            logger.error(f"Unknown plan {plan_key} on subscription {subscription_id}")
            return _skipped("Unknown plan", plan_key=plan_key)

        new_balance = await self.ledger.renew_plan(
            user_id=user_id,
            plan=plan_name,
            period=plan_period,
            credits=credits,
            subscription_id=subscription_id,
            reason=f"renewal:{plan_key}",
            event_at=created,
            reference=f"stripe_invoice:{invoice.get('id') or event_id}",
        )

        if new_balance is None:
            return _skipped("Stale event", user_id=user_id)

        return {
            "status": "success",
            "action": "subscription_renewed",
            "user_id": user_id,
            "plan": plan_name,
            "plan_period": plan_period,
            "balance": new_balance,
        }

    async def _handle_subscription_updated(self, subscription: Dict, event_id: str, created: int) -> Dict[str, Any]:
        """Dunning states are flagged only; the provider decides when to cancel."""
        user_id = _user_id_from(subscription.get("metadata"))
        if not user_id:
            return _skipped("Missing metadata")

        status = subscription.get("status")
        if status in ("past_due", "unpaid"):
            logger.warning(f"Subscription {subscription.get('id')} for user {user_id} is {status}")
            return {"status": "success", "action": "flagged", "user_id": user_id, "subscription_status": status}

        return {"status": "success", "action": "no_change", "subscription_status": status}

    async def _handle_subscription_deleted(self, subscription: Dict, event_id: str, created: int) -> Dict[str, Any]:
        """Downgrade to free. Remaining credits are kept."""
        user_id = _user_id_from(subscription.get("metadata"))
        if not user_id:
            return _skipped("Missing metadata")

        applied = await self.ledger.set_plan(
            user_id=user_id,
            plan="free",
            period=None,
            subscription_id=None,
            event_at=created,
            expected_subscription_id=subscription.get("id"),
        )

        if not applied:
            return _skipped("Superseded by newer plan state", user_id=user_id)

        logger.info(f"Subscription cancelled for user {user_id}, downgraded to free")
        return {"status": "success", "action": "downgraded", "user_id": user_id}

    # ==================== HELPERS ====================

    @staticmethod
    def _subscription_ref_from_invoice(invoice: Dict) -> tuple:
        """
        Subscription id and embedded metadata of an invoice.

        Older API versions put the id at invoice.subscription; newer ones nest
        it under invoice.parent.subscription_details.
        """
        details = invoice.get("subscription_details") or {}
        parent_details = (invoice.get("parent") or {}).get("subscription_details") or {}

        subscription_id = (
            invoice.get("subscription")
            or parent_details.get("subscription")
        )
        if isinstance(subscription_id, dict):
            subscription_id = subscription_id.get("id")

        metadata = details.get("metadata") or parent_details.get("metadata") or {}
        return subscription_id, metadata

    async def _lookup_subscription_metadata(self, subscription_id: str) -> Dict[str, Any]:
        if self.subscription_lookup is None:
            return {}
        subscription = await self.subscription_lookup(subscription_id)
        return (subscription or {}).get("metadata") or {}
