"""
Credit Wallet Data Models

Pydantic models for wallet, billing and generation operations.
These define the structure of documents stored in MongoDB collections
and the request/response bodies of the API.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Literal

from .config import MAX_SPEND_PER_CALL


# ==================== ACCOUNT MODELS ====================

class Account(BaseModel):
    """User account with plan state and credit balance"""
    user_id: str
    email: Optional[str] = None
    plan: Literal["free", "starter", "pro", "agency"] = "free"
    plan_period: Optional[Literal["month", "year"]] = None
    credits: int = Field(0, ge=0)
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    plan_event_at: int = 0  # Provider timestamp of last applied plan change
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class CreditBalanceResponse(BaseModel):
    """Response model for balance endpoint"""
    user_id: str
    credits: int
    plan: str
    plan_period: Optional[str] = None
    generation_cost: int
    can_generate: bool


class SubscriptionStatusResponse(BaseModel):
    credits: int
    plan: str
    plan_period: Optional[str] = None
    stripe_subscription_id: Optional[str] = None


# ==================== LEDGER MODELS ====================

class CreditTransaction(BaseModel):
    """Immutable ledger entry for credit mutations"""
    transaction_id: str
    user_id: str
    amount: int  # Signed: negative for usage
    reason: str
    kind: Literal["usage", "purchase", "subscription", "grant", "adjustment"]
    reference: Optional[str] = None
    balance_after: int
    timestamp: str  # ISO datetime string
    details: Optional[dict] = None


# ==================== CATALOG MODELS ====================

class PlanDefinition(BaseModel):
    """Static catalog entry for a plan or a credit pack"""
    key: str
    name: str
    price: int  # cents
    credits: int
    interval: Optional[Literal["month", "year"]] = None
    plan: Optional[str] = None

    @property
    def is_subscription(self) -> bool:
        return self.interval is not None


# ==================== REQUEST MODELS ====================

class SpendCreditsRequest(BaseModel):
    amount: int = Field(..., gt=0, le=MAX_SPEND_PER_CALL, description="Credits to spend")
    reason: str = Field(..., min_length=1, max_length=200)


class CheckoutSessionRequest(BaseModel):
    plan_key: str = Field(..., min_length=1, description="Plan or pack key, e.g. pro_monthly or pack_basic")
    user_id: str = Field(..., min_length=1)
    user_email: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CustomerPortalRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    return_url: Optional[str] = None


class GenerateThumbnailRequest(BaseModel):
    """Prompt plus ordered image URLs (base image first, then references)"""
    prompt: str = Field(..., min_length=1, max_length=8000)
    image_urls: List[str] = Field(default_factory=list, max_length=16)

    @field_validator("prompt")
    @classmethod
    def prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt must not be blank")
        return value

    @field_validator("image_urls")
    @classmethod
    def urls_are_http(cls, value: List[str]) -> List[str]:
        for url in value:
            if not url.startswith(("https://", "http://")):
                raise ValueError(f"Invalid image URL: {url[:80]}")
        return value


# ==================== RESPONSE MODELS ====================

class GenerateThumbnailResponse(BaseModel):
    url: str
    task_id: str
    credits_charged: int
    credits_remaining: Optional[int] = None


class SpendCreditsResponse(BaseModel):
    success: bool
    credits: int


# ==================== BILLING EVENT MODELS ====================

class BillingEventRecord(BaseModel):
    """Processed webhook event record for idempotency"""
    event_id: str
    event_type: str
    status: Literal["processing", "processed", "skipped"]
    result: Optional[dict] = None
    received_at: str
    processed_at: Optional[str] = None
