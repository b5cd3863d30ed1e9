from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import time
from decimal import Decimal
from typing import Any, Callable

from nacl.encoding import RawEncoder
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .jcs import jcs_canonical

CREDENTIAL_ALG = "EdDSA"
CREDENTIAL_TYP = "pricing-credential+jws"


def sha256_b64(data: bytes) -> str:
    return base64.b64encode(hashlib.sha256(data).digest()).decode()


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    if not text or any(c not in _B64URL_ALPHABET for c in text):
        raise ValueError("not base64url")
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


_B64URL_ALPHABET = frozenset("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_")


def gen_ed25519_keypair() -> tuple[bytes, bytes]:
    sk = SigningKey.generate()
    return (bytes(sk), bytes(sk.verify_key))


def key_id_for(vk_bytes: bytes) -> str:
    return b64url(hashlib.sha256(vk_bytes).digest())[:16]


def _same_amount(a: Any, b: float) -> bool:
    if isinstance(a, bool) or not isinstance(a, (int, float)):
        return False
    return Decimal(repr(float(a))) == Decimal(repr(float(b)))


class CredentialSigner:
    """Issue and verify signed pricing credentials.

    A credential is a compact JWS-shaped string ``<header>.<payload>.<signature>``
    where header and payload are base64url JCS bytes and the signature is Ed25519
    over ``<header>.<payload>``. The payload binds exactly plan id, price amount,
    currency and billing cycle, plus issuer, issuance and expiry times.

    ``verify`` is a pure function of the credential, the call arguments and the
    verify key; it answers ``False`` for every failure, malformed input included.
    """

    def __init__(
        self,
        sk_bytes: bytes,
        *,
        ttl_seconds: int = 600,
        freshness_seconds: int | None = None,
        future_skew_seconds: int = 30,
        issuer: str = "pricing-integrity",
        clock: Callable[[], float] = time.time,
    ):
        self._sk = SigningKey(sk_bytes)
        self._vk = self._sk.verify_key
        self.key_id = key_id_for(bytes(self._vk))
        self.ttl_seconds = ttl_seconds
        self.freshness_seconds = ttl_seconds if freshness_seconds is None else freshness_seconds
        self.future_skew_seconds = future_skew_seconds
        self.issuer = issuer
        self._clock = clock

    @property
    def verify_key_bytes(self) -> bytes:
        return bytes(self._vk)

    def sign(self, plan_id: str, price_amount: float, currency: str, billing_cycle: str) -> str:
        iat = int(self._clock())
        header = {"alg": CREDENTIAL_ALG, "typ": CREDENTIAL_TYP, "kid": self.key_id}
        payload = {
            "plan_id": plan_id,
            "price_amount": price_amount,
            "currency": currency,
            "billing_cycle": billing_cycle,
            "iss": self.issuer,
            "iat": iat,
            "exp": iat + self.ttl_seconds,
        }
        signing_input = f"{b64url(jcs_canonical(header))}.{b64url(jcs_canonical(payload))}"
        sig = self._sk.sign(signing_input.encode("ascii"), encoder=RawEncoder).signature
        return f"{signing_input}.{b64url(sig)}"

    def verify(
        self,
        plan_id: str,
        price_amount: float,
        currency: str,
        billing_cycle: str,
        credential: str,
    ) -> bool:
        try:
            return self._verify(plan_id, price_amount, currency, billing_cycle, credential)
        except Exception as e:  # noqa: BLE001 - verification never raises
            logging.debug("Pricing credential rejected as malformed: %s", e)
            return False

    def _verify(self, plan_id, price_amount, currency, billing_cycle, credential) -> bool:
        if not isinstance(credential, str):
            return False
        parts = credential.split(".")
        if len(parts) != 3:
            return False
        header_b64, payload_b64, sig_b64 = parts
        header = json.loads(b64url_decode(header_b64))
        if not isinstance(header, dict):
            return False
        # Algorithm pinning: "none", HS256 and friends are refused before any crypto
        if header.get("alg") != CREDENTIAL_ALG or header.get("typ") != CREDENTIAL_TYP:
            return False
        if header.get("kid") != self.key_id:
            logging.debug("Pricing credential key id %r does not match active key", header.get("kid"))
            return False
        try:
            self._vk.verify(
                f"{header_b64}.{payload_b64}".encode("ascii"),
                b64url_decode(sig_b64),
                encoder=RawEncoder,
            )
        except (BadSignatureError, ValueError, binascii.Error):
            return False
        claims = json.loads(b64url_decode(payload_b64))
        if not isinstance(claims, dict):
            return False
        iat, exp = claims.get("iat"), claims.get("exp")
        if not isinstance(iat, int) or not isinstance(exp, int) or isinstance(iat, bool) or isinstance(exp, bool):
            return False
        now = self._clock()
        if now >= exp:
            return False
        if iat > now + self.future_skew_seconds or now - iat > self.freshness_seconds:
            return False
        if claims.get("iss") != self.issuer:
            return False
        return (
            claims.get("plan_id") == plan_id
            and claims.get("currency") == currency
            and claims.get("billing_cycle") == billing_cycle
            and _same_amount(claims.get("price_amount"), price_amount)
        )


# --- Receipts (business audit trail) ---

_RECEIPT_SIG_FIELDS = ("payload_hash_b64", "receipt_sig_b64", "sig_alg")


def sign_receipt_ed25519(receipt: dict[str, Any], sk_bytes: bytes) -> dict[str, Any]:
    """Return a new dict with 'payload_hash_b64' and 'receipt_sig_b64'."""
    payload = jcs_canonical(receipt)
    sig = SigningKey(sk_bytes).sign(payload, encoder=RawEncoder).signature
    return {
        **receipt,
        "payload_hash_b64": sha256_b64(payload),
        "receipt_sig_b64": base64.b64encode(sig).decode(),
        "sig_alg": "ed25519",
    }


def verify_receipt_ed25519(signed: dict[str, Any], vk_bytes: bytes) -> bool:
    expected_hash = signed.get("payload_hash_b64")
    sig_b64 = signed.get("receipt_sig_b64")
    if not expected_hash or not sig_b64 or signed.get("sig_alg") != "ed25519":
        return False
    core = {k: v for k, v in signed.items() if k not in _RECEIPT_SIG_FIELDS}
    try:
        payload = jcs_canonical(core)
        if sha256_b64(payload) != expected_hash:
            return False
        VerifyKey(vk_bytes).verify(payload, base64.b64decode(sig_b64), encoder=RawEncoder)
        return True
    except Exception:  # noqa: BLE001
        return False
