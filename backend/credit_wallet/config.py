"""
Credit Wallet Configuration and Constants

Subscription plans, credit packs, generation costs and tunables are defined here.
Prices are in EUR cents.
"""

import os

CURRENCY = "eur"

# ==================== SUBSCRIPTION PLANS ====================
# Credits are a reset-to-full allotment granted on every paid invoice
SUBSCRIPTION_PLANS = {
    "starter_monthly": {"name": "Starter Mensual", "plan": "starter", "price": 1999, "credits": 400, "interval": "month"},
    "starter_annual": {"name": "Starter Anual", "plan": "starter", "price": 19900, "credits": 4500, "interval": "year"},
    "pro_monthly": {"name": "Pro Mensual", "plan": "pro", "price": 3999, "credits": 900, "interval": "month"},
    "pro_annual": {"name": "Pro Anual", "plan": "pro", "price": 39900, "credits": 9000, "interval": "year"},
    "agency_monthly": {"name": "Agency Mensual", "plan": "agency", "price": 7999, "credits": 1800, "interval": "month"},
    "agency_annual": {"name": "Agency Anual", "plan": "agency", "price": 79900, "credits": 18000, "interval": "year"},
}

# ==================== CREDIT PACKS (ONE-TIME) ====================
# Keys are the catalog keys used in checkout metadata
CREDIT_PACKS = {
    "pack_micro": {"name": "Pack Micro", "price": 499, "credits": 50},
    "pack_basic": {"name": "Pack Basic", "price": 799, "credits": 100},
    "pack_plus": {"name": "Pack Plus", "price": 1499, "credits": 250},
    "pack_boost": {"name": "Pack Boost", "price": 2499, "credits": 500},
    "pack_ultra": {"name": "Pack Ultra", "price": 4499, "credits": 1000},
}

PACK_PREFIX = "pack_"

PLAN_NAMES = ("free", "starter", "pro", "agency")
PLAN_PERIODS = ("month", "year")

# Credits granted when an account is first created
SIGNUP_FREE_CREDITS = int(os.environ.get("SIGNUP_FREE_CREDITS", "0"))

# ==================== GENERATION ====================
GENERATION_CREDIT_COST = int(os.environ.get("GENERATION_CREDIT_COST", "10"))
GENERATION_POLL_INTERVAL_SECONDS = float(os.environ.get("GENERATION_POLL_INTERVAL_SECONDS", "2"))
GENERATION_MAX_POLL_ATTEMPTS = int(os.environ.get("GENERATION_MAX_POLL_ATTEMPTS", "120"))

KIE_API_BASE = os.environ.get("KIE_API_BASE", "https://api.kie.ai")
KIE_REQUEST_TIMEOUT_SECONDS = float(os.environ.get("KIE_REQUEST_TIMEOUT_SECONDS", "30"))

# Fixed output parameters sent with every job
GENERATION_MODEL = "nano-banana-pro"
GENERATION_OUTPUT = {
    "aspect_ratio": "16:9",
    "resolution": "1K",
    "output_format": "png",
}

# ==================== LEDGER ====================
# Number of applied idempotency references remembered on each account
RECENT_REFS_LIMIT = 500

MAX_SPEND_PER_CALL = 1000

# ==================== STRIPE ====================
STRIPE_PRICE_CACHE_TTL_SECONDS = int(os.environ.get("STRIPE_PRICE_CACHE_TTL_SECONDS", "3600"))
STRIPE_PRODUCT_PREFIX = "MiniaturIA"

# Events the billing translator reacts to
STRIPE_CHECKOUT_COMPLETED = "checkout.session.completed"
STRIPE_CHECKOUT_ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"
STRIPE_INVOICE_PAID = "invoice.paid"
STRIPE_INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
STRIPE_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
STRIPE_SUBSCRIPTION_DELETED = "customer.subscription.deleted"

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "INSUFFICIENT_CREDITS": "Not enough credits. Please upgrade your plan or buy a credit pack.",
    "ACCOUNT_NOT_FOUND": "Account not found.",
    "GENERATION_FAILED": "Image generation failed.",
    "GENERATION_TIMEOUT": "Timeout: Image generation took too long.",
    "SUBMISSION_FAILED": "The image provider rejected the request.",
}

# Wrap balance mutations and their ledger entries in multi-document
# transactions (requires a replica set)
MONGO_TRANSACTIONS = os.environ.get("MONGO_TRANSACTIONS", "false").lower() == "true"
