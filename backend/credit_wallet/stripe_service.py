"""
Stripe Service for Subscriptions and Credit Pack Purchases

Features:
- Webhook signature verification (unsigned events are never accepted)
- Catalog sync: one Stripe product/price per catalog key, found by metadata.plan_key
- Price id cache with TTL (entries expire and are re-synced on access)
- Find-or-create Stripe customer per account
- Checkout and customer portal sessions
- Subscription lookup for invoice reconciliation

Required Environment Variables:
- STRIPE_SECRET_KEY
- STRIPE_WEBHOOK_SECRET
"""

import os
import json
import asyncio
import logging
from typing import Any, Dict, Optional

import stripe
from cachetools import TTLCache

from .config import (
    SUBSCRIPTION_PLANS,
    CREDIT_PACKS,
    CURRENCY,
    STRIPE_PRICE_CACHE_TTL_SECONDS,
    STRIPE_PRODUCT_PREFIX,
)
from .ledger import CreditLedger
from .models import PlanDefinition

logger = logging.getLogger(__name__)


class WebhookNotConfiguredError(Exception):
    """Raised when no webhook secret is configured."""
    pass


class PriceNotFoundError(Exception):
    """Raised when a catalog key has no Stripe price."""
    pass


def _metadata_value(obj: Any, key: str) -> Optional[str]:
    metadata = getattr(obj, "metadata", None)
    if metadata is None:
        return None
    return getattr(metadata, key, None)


class StripeBillingService:
    """Stripe SDK boundary for checkout, portal and webhook verification."""

    def __init__(self, ledger: CreditLedger, price_cache_ttl: int = STRIPE_PRICE_CACHE_TTL_SECONDS):
        self.ledger = ledger
        # catalog key -> Stripe price id
        self._price_ids: TTLCache = TTLCache(maxsize=64, ttl=price_cache_ttl)
        self._sync_lock = asyncio.Lock()

        api_key = os.environ.get("STRIPE_SECRET_KEY")
        if api_key:
            stripe.api_key = api_key

    @property
    def webhook_secret(self) -> str:
        return os.environ.get("STRIPE_WEBHOOK_SECRET", "")

    # ==================== WEBHOOKS ====================

    def construct_event(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header and parse the event.

        Raises:
            WebhookNotConfiguredError: no secret configured
            ValueError: payload is not valid JSON
            stripe.SignatureVerificationError: signature mismatch
        """
        if not self.webhook_secret:
            raise WebhookNotConfiguredError("STRIPE_WEBHOOK_SECRET is not configured")

        stripe.Webhook.construct_event(payload, sig_header or "", self.webhook_secret)
        return json.loads(payload)

    # ==================== CATALOG ====================

    def _sync_catalog(self) -> Dict[str, str]:
        """Find or create one product + price per catalog key."""
        logger.info("Initializing Stripe products...")

        existing_products = stripe.Product.list(limit=100, active=True).data
        existing_prices = stripe.Price.list(limit=100, active=True).data

        catalog = {}
        for key, plan in SUBSCRIPTION_PLANS.items():
            catalog[key] = (plan["name"], plan["price"], plan["credits"], plan["interval"])
        for key, pack in CREDIT_PACKS.items():
            catalog[key] = (pack["name"], pack["price"], pack["credits"], None)

        price_ids = {}
        for key, (name, price_cents, credits, interval) in catalog.items():
            product = next(
                (p for p in existing_products if _metadata_value(p, "plan_key") == key),
                None
            )

            if product is not None:
                existing_price = next(
                    (
                        p for p in existing_prices
                        if p.product == product.id
                        and p.unit_amount == price_cents
                        and (getattr(p.recurring, "interval", None) if p.recurring else None) == interval
                    ),
                    None
                )
                if existing_price is not None:
                    price_ids[key] = existing_price.id
                    logger.info(f"  {name} already exists ({existing_price.id})")
                    continue
            else:
                product = stripe.Product.create(
                    name=f"{STRIPE_PRODUCT_PREFIX} {name}",
                    metadata={"plan_key": key, "credits": str(credits)},
                )

            price_params = {
                "product": product.id,
                "unit_amount": price_cents,
                "currency": CURRENCY,
                "metadata": {"plan_key": key, "credits": str(credits)},
            }
            if interval:
                price_params["recurring"] = {"interval": interval}

            price = stripe.Price.create(**price_params)
            price_ids[key] = price.id
            logger.info(f"  {name}: {price.id}")

        logger.info("Stripe products ready")
        return price_ids

    async def sync_catalog(self) -> Dict[str, str]:
        """Sync the catalog to Stripe and refresh the price id cache."""
        price_ids = await asyncio.to_thread(self._sync_catalog)
        for key, price_id in price_ids.items():
            self._price_ids[key] = price_id
        return price_ids

    async def get_price_id(self, key: str) -> str:
        """Cached price id for a catalog key, re-syncing on miss or expiry."""
        price_id = self._price_ids.get(key)
        if price_id:
            return price_id

        # one resync at a time, or concurrent misses create duplicate prices
        async with self._sync_lock:
            price_id = self._price_ids.get(key)
            if price_id:
                return price_id
            price_ids = await self.sync_catalog()

        if key not in price_ids:
            raise PriceNotFoundError(f"No Stripe price for {key}")
        return price_ids[key]

    # ==================== CUSTOMERS & SESSIONS ====================

    async def get_or_create_customer(self, user_id: str, email: Optional[str]) -> str:
        """Stripe customer id for an account, created on first checkout."""
        account = await self.ledger.get_account(user_id)
        if account.get("stripe_customer_id"):
            return account["stripe_customer_id"]

        customer = await asyncio.to_thread(
            stripe.Customer.create,
            email=email or account.get("email"),
            metadata={"user_id": user_id},
        )
        await self.ledger.set_stripe_customer(user_id, customer.id)
        logger.info(f"Created Stripe customer {customer.id} for user {user_id}")
        return customer.id

    async def create_checkout_session(
        self,
        user_id: str,
        email: Optional[str],
        item: PlanDefinition,
        success_url: str,
        cancel_url: str
    ) -> str:
        """Create a checkout session for a plan or pack and return its URL."""
        price_id = await self.get_price_id(item.key)
        customer_id = await self.get_or_create_customer(user_id, email)

        metadata = {"user_id": user_id, "plan_key": item.key}
        params: Dict[str, Any] = {
            "customer": customer_id,
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "mode": "subscription" if item.is_subscription else "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if item.is_subscription:
            # invoice.paid resolves the account and plan from subscription metadata
            params["subscription_data"] = {"metadata": metadata}

        session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
        logger.info(f"Created checkout session {session.id} for user {user_id}, item {item.key}")
        return session.url

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a customer portal session and return its URL."""
        session = await asyncio.to_thread(
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return session.url

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Subscription id, status and the metadata keys used for reconciliation."""
        subscription = await asyncio.to_thread(stripe.Subscription.retrieve, subscription_id)
        return {
            "id": subscription.id,
            "status": getattr(subscription, "status", None),
            "metadata": {
                key: _metadata_value(subscription, key)
                for key in ("user_id", "supabase_user_id", "plan_key")
                if _metadata_value(subscription, key)
            },
        }
