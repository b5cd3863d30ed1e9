from .jcs import jcs_canonical  # noqa: F401
from .sign import CredentialSigner, sign_receipt_ed25519, verify_receipt_ed25519  # noqa: F401
