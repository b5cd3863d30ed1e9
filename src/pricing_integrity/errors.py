from __future__ import annotations


class PricingIntegrityError(Exception):
    """Base class for infrastructure failures inside the pricing subsystem."""


class CatalogUnavailableError(PricingIntegrityError):
    """Canonical catalog could not be read (unreachable, timed out or invalid)."""


class SubscriptionStateError(PricingIntegrityError):
    """Tier state for a tenant could not be resolved."""


class AuditWriteError(PricingIntegrityError):
    """A tampering event could be neither stored nor spooled."""


__all__ = [
    "PricingIntegrityError",
    "CatalogUnavailableError",
    "SubscriptionStateError",
    "AuditWriteError",
]
