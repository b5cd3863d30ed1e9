from .purchase_receipts import PurchaseReceiptLog  # noqa: F401
from .store import TamperingEventRow, create_audit_engine  # noqa: F401
from .tamper_log import TIMEFRAMES, TamperAuditLog  # noqa: F401
