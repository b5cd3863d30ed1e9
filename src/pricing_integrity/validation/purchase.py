from __future__ import annotations

import logging
import math
from typing import Optional

from ..api.models import ErrorCode, SubscriptionTier, ValidationResult
from ..audit.purchase_receipts import PurchaseReceiptLog
from ..catalog.subscriptions import SubscriptionStateProvider
from ..errors import AuditWriteError, SubscriptionStateError
from .validator import PricingValidator


def upgrade_allowed(current: Optional[SubscriptionTier], target: SubscriptionTier) -> bool:
    """Strictly higher tiers are upgrades; moving to FREE is always allowed."""
    if current is None:
        return True
    return target == SubscriptionTier.FREE or target.rank > current.rank


def _receipt_amount(amount) -> float | None:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return None
    return float(amount) if math.isfinite(amount) else None


class PurchaseGuard:
    """Price validation plus the tier-ordering rule, with a receipt for every attempt."""

    def __init__(
        self,
        validator: PricingValidator,
        subscriptions: SubscriptionStateProvider,
        receipts: PurchaseReceiptLog,
    ):
        self.validator = validator
        self.subscriptions = subscriptions
        self.receipts = receipts

    def validate_purchase(
        self,
        plan_id: str,
        amount,
        currency: str,
        actor_id: str | None,
        tenant_id: str | None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ValidationResult:
        receipt = dict(
            plan_id=plan_id,
            amount=_receipt_amount(amount),
            currency=str(currency),
            actor_id=actor_id,
            tenant_id=tenant_id,
        )
        try:
            result, current = self._evaluate(plan_id, amount, currency, actor_id, tenant_id, ip_address, user_agent)
        except AuditWriteError:
            self.receipts.record(**receipt, outcome="rejected", error_code=ErrorCode.VALIDATION_SERVICE_ERROR.value)
            raise
        self.receipts.record(
            **receipt,
            outcome="accepted" if result.is_valid else "rejected",
            error_code=result.error_code.value if result.error_code else None,
            validated_amount=result.validated_amount,
            current_tier=current.value if current else None,
        )
        return result

    def _evaluate(
        self, plan_id, amount, currency, actor_id, tenant_id, ip_address, user_agent
    ) -> tuple[ValidationResult, Optional[SubscriptionTier]]:
        if not actor_id or not tenant_id:
            return ValidationResult.reject(ErrorCode.IDENTITY_REQUIRED, "Purchases require an actor and tenant"), None
        result = self.validator.validate(
            plan_id, amount, currency, actor_id, tenant_id, ip_address=ip_address, user_agent=user_agent
        )
        if not result.is_valid:
            return result, None
        try:
            current = self.subscriptions.current_tier(tenant_id)
        except SubscriptionStateError as e:
            logging.error("Subscription state unavailable for tenant %s: %s", tenant_id, e)
            return ValidationResult.reject(
                ErrorCode.VALIDATION_SERVICE_ERROR, "Subscription state is temporarily unavailable"
            ), None
        target = result.plan.tier
        if not upgrade_allowed(current, target):
            return ValidationResult.reject(
                ErrorCode.UPGRADE_NOT_ALLOWED,
                f"Cannot move from {current.value} to {target.value}",
            ), current
        return result, current
