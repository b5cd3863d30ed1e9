from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from ..api.models import CatalogDoc, PricingPlan, SubscriptionTier, TierLimits
from ..errors import CatalogUnavailableError

DEFAULT_PLANS = [
    PricingPlan(
        id="free-tier",
        tier=SubscriptionTier.FREE,
        name="Free",
        description="Basic email sending with ads and branding",
        price_amount=0,
        currency="INR",
        limits=TierLimits(
            daily_email_limit=100,
            monthly_recipient_limit=300,
            monthly_email_limit=2000,
            template_limit=1,
            custom_domain_limit=0,
        ),
        features=[
            "100 emails per day",
            "300 recipients per month",
            "2000 emails per month",
            "1 AI template daily",
            "Ads included in emails",
            "Website branding attached",
            "3-day email history storage",
        ],
    ),
    PricingPlan(
        id="paid-standard-tier",
        tier=SubscriptionTier.PAID_STANDARD,
        name="Paid Standard",
        description="Enhanced features with logo customization",
        price_amount=59,
        currency="INR",
        limits=TierLimits(
            daily_email_limit=1000,
            monthly_recipient_limit=5000,
            monthly_email_limit=30000,
            template_limit=10,
            custom_domain_limit=0,
            has_logo_customization=True,
        ),
        features=[
            "500-1000 emails per day",
            "1500-5000 recipients per month",
            "10000-30000 emails per month",
            "10 AI/Custom templates daily",
            "Logo customization available",
            "Website branding attached",
            "Full email history storage",
        ],
        is_popular=True,
    ),
    PricingPlan(
        id="premium-tier",
        tier=SubscriptionTier.PREMIUM,
        name="Premium",
        description="Advanced features with custom business emails",
        price_amount=649,
        currency="INR",
        limits=TierLimits(
            daily_email_limit=5000,
            monthly_recipient_limit=25000,
            monthly_email_limit=100000,
            template_limit=-1,
            custom_domain_limit=10,
            has_logo_customization=True,
            has_custom_domains=True,
            has_advanced_analytics=True,
        ),
        features=[
            "2000-5000 emails per day",
            "10000-25000 recipients per month",
            "50000-100000 emails per month",
            "Unlimited AI/Custom templates",
            "Logo customization",
            "2-10 custom business emails",
            "Full subscriber management",
            "Complete email history",
        ],
    ),
    PricingPlan(
        id="enterprise-tier",
        tier=SubscriptionTier.ENTERPRISE,
        name="Enterprise",
        description="Fully customizable with unlimited features",
        price_amount=0,  # custom pricing, quoted by sales
        currency="INR",
        limits=TierLimits(
            daily_email_limit=-1,
            monthly_recipient_limit=-1,
            monthly_email_limit=-1,
            template_limit=-1,
            custom_domain_limit=-1,
            has_logo_customization=True,
            has_custom_domains=True,
            has_advanced_analytics=True,
        ),
        features=[
            "Customizable email limits per day",
            "Customizable recipients per month",
            "Unlimited templates",
            "Full customization options",
            "Unlimited custom business emails",
            "Dedicated support",
        ],
    ),
]


class CatalogProvider:
    """Source of truth for plan definitions. This subsystem never mutates it."""

    def list_plans(self) -> list[PricingPlan]:
        raise NotImplementedError


class StaticCatalogProvider(CatalogProvider):
    def __init__(self, plans: list[PricingPlan]):
        self._doc = CatalogDoc(plans=list(plans))

    def list_plans(self) -> list[PricingPlan]:
        return list(self._doc.plans)


class FileCatalogProvider(CatalogProvider):
    """JSON catalog file, seeded with the default tiers on first read."""

    def __init__(self, path: Path):
        self.path = path

    def list_plans(self) -> list[PricingPlan]:
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            doc = CatalogDoc(plans=DEFAULT_PLANS)
            self.path.write_text(doc.model_dump_json(indent=2, exclude={"plans": {"__all__": {"credential"}}}))
            return list(doc.plans)
        try:
            return list(CatalogDoc.model_validate_json(self.path.read_text()).plans)
        except (OSError, ValidationError) as e:
            logging.exception("Canonical catalog %s is unreadable", self.path)
            raise CatalogUnavailableError(f"catalog unreadable: {self.path}") from e
