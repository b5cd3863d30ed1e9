from __future__ import annotations

import base64
import binascii
from pathlib import Path

from nacl.signing import SigningKey

from .sign import gen_ed25519_keypair

SK_NAME = "pricing_signing_ed25519.b64"
VK_NAME = "pricing_verify_ed25519.b64"


def load_keys(key_dir: Path, seed_b64: str = "") -> tuple[bytes, bytes]:
    """Return the (signing, verify) Ed25519 key bytes.

    A configured seed wins. Otherwise the keypair lives under ``key_dir`` and is
    generated on first use; a data dir wiped after startup gets a fresh pair
    instead of failing, which invalidates every outstanding credential.
    """
    if seed_b64:
        try:
            sk = SigningKey(base64.b64decode(seed_b64, validate=True))
        except (binascii.Error, ValueError) as e:
            raise ValueError("signing_key_b64 is not a base64 Ed25519 seed") from e
        return bytes(sk), bytes(sk.verify_key)
    sk_file = key_dir / SK_NAME
    vk_file = key_dir / VK_NAME
    key_dir.mkdir(parents=True, exist_ok=True)
    if not sk_file.exists() or not vk_file.exists():
        sk_new, vk_new = gen_ed25519_keypair()
        sk_file.write_text(base64.b64encode(sk_new).decode())
        vk_file.write_text(base64.b64encode(vk_new).decode())
        sk_file.chmod(0o600)
    sk = base64.b64decode(sk_file.read_text().strip())
    vk = base64.b64decode(vk_file.read_text().strip())
    return sk, vk
