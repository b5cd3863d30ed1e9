from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable

from ..api.models import PurchaseAttemptReceipt
from ..credentials.sign import sign_receipt_ed25519, verify_receipt_ed25519

purchase_log = logging.getLogger("pricing_integrity.purchase_audit")


class PurchaseReceiptLog:
    """Hash-chained, Ed25519-signed receipts for every purchase attempt.

    Receipts are numbered so that file name order is chain order; each one
    carries the payload hash of its predecessor in ``prev_receipt_hash_b64``.
    """

    def __init__(
        self,
        receipts_dir: Path,
        sk_bytes: bytes,
        vk_bytes: bytes,
        clock: Callable[[], float] = time.time,
    ):
        self.receipts_dir = receipts_dir
        self.receipts_dir.mkdir(parents=True, exist_ok=True)
        self._sk = sk_bytes
        self._vk = vk_bytes
        self._clock = clock
        self._lock = threading.Lock()
        files = self._files()
        self._seq = len(files)
        self._prev_hash = self._read_prev_hash(files)

    def _files(self) -> list[Path]:
        return sorted(self.receipts_dir.glob("purchase_*.json"))

    @staticmethod
    def _read_prev_hash(files: list[Path]) -> str | None:
        for p in reversed(files):
            try:
                obj = json.loads(p.read_text())
            except (OSError, ValueError):
                logging.exception("Failed to parse receipt file %s", p)
                continue
            if isinstance(obj, dict) and "payload_hash_b64" in obj:
                return obj["payload_hash_b64"]
        return None

    def record(
        self,
        *,
        plan_id: str,
        amount: float | None,
        currency: str,
        outcome: str,
        actor_id: str | None = None,
        tenant_id: str | None = None,
        error_code: str | None = None,
        validated_amount: float | None = None,
        current_tier: str | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            rec = PurchaseAttemptReceipt(
                ts_ms=int(self._clock() * 1000),
                actor_id=actor_id,
                tenant_id=tenant_id,
                plan_id=plan_id,
                amount=amount,
                currency=currency,
                outcome=outcome,
                error_code=error_code,
                validated_amount=validated_amount,
                current_tier=current_tier,
                prev_receipt_hash_b64=self._prev_hash,
            )
            signed = sign_receipt_ed25519(rec.model_dump(mode="json"), self._sk)
            hash_prefix = signed["payload_hash_b64"][:8].replace("/", "_").replace("+", "-")
            path = self.receipts_dir / f"purchase_{self._seq:08d}_{hash_prefix}.json"
            path.write_text(json.dumps(signed, indent=2))
            self._seq += 1
            self._prev_hash = signed["payload_hash_b64"]
        purchase_log.info(
            "purchase attempt plan=%s actor=%s tenant=%s amount=%s %s outcome=%s code=%s",
            plan_id,
            actor_id,
            tenant_id,
            amount,
            currency,
            outcome,
            error_code,
        )
        return signed

    def verify_chain(self) -> dict[str, Any]:
        """Check every receipt's signature and its link to the one before it."""
        prev: str | None = None
        files = self._files()
        for p in files:
            try:
                signed = json.loads(p.read_text())
            except (OSError, ValueError):
                return {"ok": False, "count": len(files), "broken_at": p.name, "reason": "unreadable"}
            if not verify_receipt_ed25519(signed, self._vk):
                return {"ok": False, "count": len(files), "broken_at": p.name, "reason": "bad_signature"}
            if signed.get("prev_receipt_hash_b64") != prev:
                return {"ok": False, "count": len(files), "broken_at": p.name, "reason": "broken_link"}
            prev = signed["payload_hash_b64"]
        return {"ok": True, "count": len(files), "broken_at": None, "reason": None}
