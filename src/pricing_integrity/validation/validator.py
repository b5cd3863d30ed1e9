from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from ..api.models import CatalogSnapshot, ErrorCode, PricingPlan, TamperingEvent, ValidationResult
from ..audit.tamper_log import TamperAuditLog
from ..cache.catalog_cache import CatalogCache
from ..catalog.provider import CatalogProvider
from ..credentials.sign import CredentialSigner
from ..errors import CatalogUnavailableError, PricingIntegrityError

security_log = logging.getLogger("pricing_integrity.security")


class PricingValidator:
    """Re-derive the canonical price for a client quote and classify mismatches.

    The catalog snapshot is rebuilt from the provider on a cache miss: every plan
    is signed and immediately verified, so a snapshot only ever holds plans whose
    credential round-trips under the active key. ``validate`` always answers with
    the server-side amount and currency, never the submitted ones.
    """

    def __init__(
        self,
        provider: CatalogProvider,
        signer: CredentialSigner,
        cache: CatalogCache,
        audit: TamperAuditLog,
        *,
        tolerance: float = 0.01,
        tolerance_overrides: dict[str, float] | None = None,
        display_rates: dict[str, float] | None = None,
        provider_timeout_seconds: float = 5.0,
        provider_workers: int = 4,
        degrade_to_stale: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.provider = provider
        self.signer = signer
        self.cache = cache
        self.audit = audit
        self.tolerance = Decimal(str(tolerance))
        self.tolerance_overrides = {k.upper(): Decimal(str(v)) for k, v in (tolerance_overrides or {}).items()}
        self.display_rates = {k.upper(): float(v) for k, v in (display_rates or {}).items()}
        self.provider_timeout_seconds = provider_timeout_seconds
        self.degrade_to_stale = degrade_to_stale
        self._clock = clock
        # A timed-out call keeps its worker until the provider returns; once every
        # slot is held by such a call, rebuilds fail fast instead of queueing.
        self._executor = ThreadPoolExecutor(max_workers=provider_workers, thread_name_prefix="catalog-provider")
        self._slots = threading.BoundedSemaphore(provider_workers)

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def tolerance_for(self, currency: str) -> Decimal:
        return self.tolerance_overrides.get(currency.upper(), self.tolerance)

    # --- snapshot construction ---

    def _fetch_plans(self) -> list[PricingPlan]:
        if not self._slots.acquire(blocking=False):
            raise CatalogUnavailableError("all catalog provider workers are busy with unfinished calls")
        future = self._executor.submit(self.provider.list_plans)
        future.add_done_callback(lambda _: self._slots.release())
        try:
            return future.result(timeout=self.provider_timeout_seconds)
        except FutureTimeout as e:
            raise CatalogUnavailableError(
                f"catalog provider timed out after {self.provider_timeout_seconds}s"
            ) from e
        except CatalogUnavailableError:
            raise
        except Exception as e:  # noqa: BLE001 - any provider failure is an outage
            logging.exception("Catalog provider call failed")
            raise CatalogUnavailableError(f"catalog provider failed: {e}") from e

    def _display_prices(self, plan: PricingPlan) -> dict[str, float]:
        out = {}
        for code, rate in self.display_rates.items():
            if code == plan.currency or rate <= 0:
                continue
            out[code] = round(plan.price_amount / rate, 2)
        return out

    def _rebuild(self) -> list[PricingPlan]:
        signed: list[PricingPlan] = []
        for plan in self._fetch_plans():
            cred = self.signer.sign(plan.id, plan.price_amount, plan.currency, plan.billing_cycle)
            if not self.signer.verify(plan.id, plan.price_amount, plan.currency, plan.billing_cycle, cred):
                security_log.error("Freshly issued credential for plan %s failed verification; plan skipped", plan.id)
                continue
            signed.append(plan.model_copy(update={"credential": cred, "display_prices": self._display_prices(plan)}))
        logging.info("Rebuilt pricing catalog snapshot with %d plans", len(signed))
        return signed

    def load_snapshot(self) -> CatalogSnapshot:
        return self.cache.get_or_build(self._rebuild)

    def refresh(self) -> CatalogSnapshot:
        """Rebuild and publish a new snapshot; on failure the current one stays in place."""
        return self.cache.put(self._rebuild())

    def _display_snapshot(self) -> CatalogSnapshot:
        try:
            return self.load_snapshot()
        except PricingIntegrityError:
            stale = self.cache.last_known_good
            if not self.degrade_to_stale or stale is None:
                raise
            logging.warning(
                "Catalog unavailable; serving last-known-good snapshot %s for display", stale.version
            )
            return stale

    # --- caller-facing reads ---

    def get_validated_plans(self) -> list[PricingPlan]:
        """Active plans for display. May serve a stale snapshot when degraded."""
        return [p for p in self._display_snapshot().plans if p.is_active]

    def get_validated_plan(self, plan_id: str) -> Optional[PricingPlan]:
        plan = self._display_snapshot().find(plan_id)
        if plan is None or not plan.is_active:
            return None
        return plan

    # --- validation ---

    @staticmethod
    def _as_decimal(amount) -> Decimal | None:
        if isinstance(amount, bool) or not isinstance(amount, (int, float, Decimal)):
            return None
        if isinstance(amount, float) and not math.isfinite(amount):
            return None
        try:
            value = Decimal(str(amount))
        except InvalidOperation:
            return None
        return value if value.is_finite() else None

    def validate(
        self,
        plan_id: str,
        amount,
        currency: str,
        actor_id: str | None = None,
        tenant_id: str | None = None,
        *,
        billing_cycle: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ValidationResult:
        try:
            snap = self.load_snapshot()
        except PricingIntegrityError as e:
            logging.error("Pricing validation unavailable: %s", e)
            return ValidationResult.reject(
                ErrorCode.VALIDATION_SERVICE_ERROR, "Pricing validation is temporarily unavailable"
            )

        plan = snap.find(plan_id)
        if plan is None:
            return ValidationResult.reject(ErrorCode.PLAN_NOT_FOUND, f"Plan {plan_id} not found")
        if not plan.is_active:
            return ValidationResult.reject(ErrorCode.PLAN_INACTIVE, f"Plan {plan_id} is not available")

        if not isinstance(currency, str) or currency.strip().upper() != plan.currency:
            return ValidationResult.reject(
                ErrorCode.INVALID_CURRENCY, f"Plan {plan_id} is priced in {plan.currency}"
            )
        if billing_cycle is not None and billing_cycle != plan.billing_cycle:
            return ValidationResult.reject(
                ErrorCode.INVALID_BILLING_CYCLE, f"Plan {plan_id} is billed {plan.billing_cycle}"
            )

        submitted = self._as_decimal(amount)
        if submitted is None:
            security_log.warning("Non-numeric amount %r submitted for plan %s by actor %s", amount, plan_id, actor_id)
            return ValidationResult.reject(ErrorCode.INVALID_AMOUNT, "Amount must be a finite number")

        expected = Decimal(str(plan.price_amount))
        delta = abs(submitted - expected)
        if delta > self.tolerance_for(plan.currency):
            self.audit.record(
                TamperingEvent(
                    actor_id=actor_id,
                    tenant_id=tenant_id,
                    plan_id=plan.id,
                    attempted_amount=float(submitted),
                    canonical_amount=plan.price_amount,
                    delta=float(delta),
                    currency=plan.currency,
                    ts_ms=int(self._clock() * 1000),
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )
            return ValidationResult.reject(
                ErrorCode.INVALID_AMOUNT, "Submitted amount does not match the plan price"
            )

        if not plan.credential or not self.signer.verify(
            plan.id, plan.price_amount, plan.currency, plan.billing_cycle, plan.credential
        ):
            security_log.error(
                "Credential check failed for cached plan %s in snapshot %s; invalidating catalog cache",
                plan.id,
                snap.version,
            )
            self.cache.invalidate()
            return ValidationResult.reject(
                ErrorCode.SECURITY_VALIDATION_FAILED, "Pricing data failed integrity verification"
            )

        return ValidationResult(
            is_valid=True,
            validated_amount=plan.price_amount,
            validated_currency=plan.currency,
            plan=plan,
        )
