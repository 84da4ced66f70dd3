"""
Credit Wallet API Routes

Endpoints:
- GET /api/credits - Get balance and plan
- GET /api/credits/ledger - Get transaction history
- POST /api/credits/spend - Spend credits (atomic)
- GET /api/plans - Plan and credit pack catalog
- POST /api/create-checkout-session - Stripe checkout for a plan or pack
- POST /api/customer-portal - Stripe billing portal
- GET /api/subscription-status/{user_id} - Plan state for an account
- POST /api/webhooks/stripe - Stripe webhook handler
"""

import os
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, Query

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from utils.auth import get_current_user, require_same_user
from credit_wallet.config import GENERATION_CREDIT_COST
from credit_wallet.ledger import CreditLedger, InsufficientCreditsError
from credit_wallet.billing_events import BillingEventTranslator
from credit_wallet.plan_catalog import resolve_catalog_item, list_catalog
from credit_wallet.stripe_service import (
    StripeBillingService,
    WebhookNotConfiguredError,
    PriceNotFoundError,
)
from credit_wallet.models import (
    CreditBalanceResponse,
    SubscriptionStatusResponse,
    SpendCreditsRequest,
    SpendCreditsResponse,
    CheckoutSessionRequest,
    CustomerPortalRequest,
)

logger = logging.getLogger(__name__)

credit_wallet_router = APIRouter(tags=["Credits"])

_stripe_service = None


# ==================== DEPENDENCIES ====================

def get_ledger() -> CreditLedger:
    from database import db, client
    return CreditLedger(db, client)


def get_stripe_service() -> StripeBillingService:
    """Process-wide Stripe service (owns the price id cache)."""
    global _stripe_service
    if _stripe_service is None:
        _stripe_service = StripeBillingService(get_ledger())
    return _stripe_service


def get_billing_translator(
    ledger: CreditLedger = Depends(get_ledger),
    stripe_service: StripeBillingService = Depends(get_stripe_service)
) -> BillingEventTranslator:
    return BillingEventTranslator(ledger.db, ledger, stripe_service.retrieve_subscription)


def _frontend_url() -> str:
    return os.environ.get("FRONTEND_URL", "http://localhost:3000").rstrip("/")


# ==================== BALANCE ENDPOINTS ====================

@credit_wallet_router.get("/credits", response_model=CreditBalanceResponse)
async def get_credits(
    user: dict = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger)
):
    """
    Get current user's credit balance and plan.

    The account is created on first access.
    """
    account = await ledger.ensure_account(user["id"], user.get("email"))
    credits = account.get("credits", 0)
    return CreditBalanceResponse(
        user_id=user["id"],
        credits=credits,
        plan=account.get("plan", "free"),
        plan_period=account.get("plan_period"),
        generation_cost=GENERATION_CREDIT_COST,
        can_generate=credits >= GENERATION_CREDIT_COST,
    )


@credit_wallet_router.get("/credits/ledger")
async def get_credit_ledger(
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger)
):
    """Credit history: usage, purchases, renewals and grants."""
    entries = await ledger.get_transactions(user["id"], limit)
    return {
        "entries": entries,
        "count": len(entries)
    }


@credit_wallet_router.post("/credits/spend", response_model=SpendCreditsResponse)
async def spend_credits(
    body: SpendCreditsRequest,
    user: dict = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger)
):
    await ledger.ensure_account(user["id"], user.get("email"))

    try:
        new_balance = await ledger.debit(user["id"], body.amount, reason=body.reason)
    except InsufficientCreditsError as e:
        raise HTTPException(status_code=402, detail=e.to_dict())

    return SpendCreditsResponse(success=True, credits=new_balance)


# ==================== CATALOG ====================

@credit_wallet_router.get("/plans")
async def get_plans():
    """Subscription plans and one-time credit packs with prices in cents."""
    return list_catalog()


# ==================== CHECKOUT & PORTAL ====================

@credit_wallet_router.post("/create-checkout-session")
async def create_checkout_session(
    body: CheckoutSessionRequest,
    user: dict = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
    stripe_service: StripeBillingService = Depends(get_stripe_service)
):
    """
    Create a Stripe checkout session for a plan or credit pack.

    Credits are granted by the webhook once the payment settles, never here.
    """
    require_same_user(user, body.user_id)

    item = resolve_catalog_item(body.plan_key)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Unknown plan: {body.plan_key}")

    email = body.user_email or user.get("email")
    await ledger.ensure_account(body.user_id, email)

    success_url = body.success_url or f"{_frontend_url()}/dashboard?checkout=success"
    cancel_url = body.cancel_url or f"{_frontend_url()}/pricing?checkout=cancelled"

    try:
        url = await stripe_service.create_checkout_session(
            user_id=body.user_id,
            email=email,
            item=item,
            success_url=success_url,
            cancel_url=cancel_url
        )
    except (PriceNotFoundError, stripe.StripeError) as e:
        logger.error(f"Checkout session creation failed for user {body.user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to create checkout session")

    return {"url": url}


@credit_wallet_router.post("/customer-portal")
async def create_customer_portal(
    body: CustomerPortalRequest,
    user: dict = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
    stripe_service: StripeBillingService = Depends(get_stripe_service)
):
    require_same_user(user, body.user_id)

    account = await ledger.get_account(body.user_id)
    customer_id = account.get("stripe_customer_id")
    if not customer_id:
        raise HTTPException(status_code=400, detail="No billing account found for this user")

    try:
        url = await stripe_service.create_portal_session(
            customer_id,
            body.return_url or f"{_frontend_url()}/dashboard"
        )
    except stripe.StripeError as e:
        logger.error(f"Portal session creation failed for user {body.user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to create portal session")

    return {"url": url}


@credit_wallet_router.get("/subscription-status/{user_id}", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    user_id: str,
    user: dict = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger)
):
    require_same_user(user, user_id)

    account = await ledger.get_account(user_id)
    return SubscriptionStatusResponse(
        credits=account.get("credits", 0),
        plan=account.get("plan", "free"),
        plan_period=account.get("plan_period"),
        stripe_subscription_id=account.get("stripe_subscription_id"),
    )


# ==================== STRIPE WEBHOOK ====================

@credit_wallet_router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_service: StripeBillingService = Depends(get_stripe_service),
    translator: BillingEventTranslator = Depends(get_billing_translator)
):
    """
    Handle Stripe webhook events.

    Only signature failures are rejected (400). Once verified, the event is
    acknowledged with 200 whatever the processing outcome, so Stripe does not
    redeliver it forever.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        event = stripe_service.construct_event(payload, sig_header)
    except WebhookNotConfiguredError:
        logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not set")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning(f"Stripe webhook rejected: {e}")
        raise HTTPException(status_code=400, detail=f"Webhook Error: {e}")

    try:
        await translator.handle_event(event)
    except Exception as e:
        logger.error(f"Webhook processing error for event {event.get('id')}: {e}", exc_info=True)

    return {"received": True}
