from __future__ import annotations

import enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SubscriptionTier(str, enum.Enum):
    FREE = "free"
    PAID_STANDARD = "paid_standard"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)


# Upgrade ordering, lowest first
TIER_ORDER = [
    SubscriptionTier.FREE,
    SubscriptionTier.PAID_STANDARD,
    SubscriptionTier.PREMIUM,
    SubscriptionTier.ENTERPRISE,
]

BillingCycle = Literal["monthly", "yearly"]


class ErrorCode(str, enum.Enum):
    PLAN_NOT_FOUND = "PLAN_NOT_FOUND"
    PLAN_INACTIVE = "PLAN_INACTIVE"
    INVALID_CURRENCY = "INVALID_CURRENCY"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_BILLING_CYCLE = "INVALID_BILLING_CYCLE"
    SECURITY_VALIDATION_FAILED = "SECURITY_VALIDATION_FAILED"
    UPGRADE_NOT_ALLOWED = "UPGRADE_NOT_ALLOWED"
    IDENTITY_REQUIRED = "IDENTITY_REQUIRED"
    VALIDATION_SERVICE_ERROR = "VALIDATION_SERVICE_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"


class TierLimits(BaseModel):
    """Entitlements bound to a tier. ``-1`` means unlimited."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    daily_email_limit: int = Field(ge=-1)
    monthly_recipient_limit: int = Field(ge=-1)
    monthly_email_limit: int = Field(ge=-1)
    template_limit: int = Field(ge=-1)
    custom_domain_limit: int = Field(ge=-1)
    has_logo_customization: bool = False
    has_custom_domains: bool = False
    has_advanced_analytics: bool = False


class PricingPlan(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1, max_length=128)
    tier: SubscriptionTier
    name: str
    description: str = ""
    price_amount: float = Field(ge=0, allow_inf_nan=False)
    currency: str = Field(min_length=3, max_length=3)
    billing_cycle: BillingCycle = "monthly"
    limits: TierLimits
    features: list[str] = Field(default_factory=list)
    is_popular: bool = False
    is_active: bool = True
    # Derived display prices; never authoritative, never signed
    display_prices: dict[str, float] = Field(default_factory=dict)
    # Signed credential binding id/price/currency/cycle; set when the snapshot is built
    credential: str | None = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        if not v.isalpha():
            raise ValueError("currency must be a 3-letter code")
        return v.upper()

    @model_validator(mode="after")
    def _single_canonical_price(self) -> "PricingPlan":
        if self.currency in {c.upper() for c in self.display_prices}:
            raise ValueError("display_prices must not restate the canonical currency")
        return self


class CatalogDoc(BaseModel):
    plans: list[PricingPlan]

    @model_validator(mode="after")
    def _unique_ids(self) -> "CatalogDoc":
        seen: set[str] = set()
        for p in self.plans:
            if p.id in seen:
                raise ValueError(f"duplicate plan id {p.id}")
            seen.add(p.id)
        return self


class CatalogSnapshot(BaseModel):
    plans: list[PricingPlan]
    last_updated_ms: int
    version: str

    def find(self, plan_id: str) -> PricingPlan | None:
        for p in self.plans:
            if p.id == plan_id:
                return p
        return None


class ValidationResult(BaseModel):
    is_valid: bool
    validated_amount: float | None = None
    validated_currency: str | None = None
    plan: PricingPlan | None = None
    error_code: ErrorCode | None = None
    error_message: str | None = None

    @classmethod
    def reject(cls, code: ErrorCode, message: str) -> "ValidationResult":
        return cls(is_valid=False, error_code=code, error_message=message)


class TamperingEvent(BaseModel):
    actor_id: str | None = None
    tenant_id: str | None = None
    plan_id: str
    attempted_amount: float
    canonical_amount: float
    delta: float = Field(ge=0)
    currency: str
    ts_ms: int
    ip_address: str | None = None
    user_agent: str | None = None


class TargetedPlan(BaseModel):
    plan_id: str
    attempts: int
    last_attempt_ms: int


class TamperingStatistics(BaseModel):
    timeframe: str
    since_ms: int
    until_ms: int
    total_attempts: int = 0
    unique_users: int = 0
    average_delta: float = 0.0
    top_targeted_plans: list[TargetedPlan] = Field(default_factory=list)


class CacheStatistics(BaseModel):
    is_cached: bool
    last_updated_ms: int | None = None
    version: str | None = None
    plan_count: int | None = None


class PurchaseAttemptReceipt(BaseModel):
    kind: Literal["pricing.purchase_attempt"] = "pricing.purchase_attempt"
    ts_ms: int
    actor_id: str | None = None
    tenant_id: str | None = None
    plan_id: str
    amount: float | None = None
    currency: str
    outcome: Literal["accepted", "rejected"]
    error_code: str | None = None
    validated_amount: float | None = None
    current_tier: str | None = None
    prev_receipt_hash_b64: str | None = None


# --- HTTP request bodies ---

class ValidateRequest(BaseModel):
    plan_id: str
    amount: float
    currency: str = "INR"
    billing_cycle: Optional[BillingCycle] = None


class PurchaseRequest(BaseModel):
    plan_id: str
    amount: float
    currency: str = "INR"
