from .purchase import PurchaseGuard, upgrade_allowed  # noqa: F401
from .validator import PricingValidator  # noqa: F401
