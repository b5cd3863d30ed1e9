from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Optional

from .api.models import CacheStatistics, PricingPlan, TamperingStatistics, ValidationResult
from .audit.purchase_receipts import PurchaseReceiptLog
from .audit.store import create_audit_engine
from .audit.tamper_log import TamperAuditLog
from .cache.catalog_cache import CatalogCache
from .cache.refresher import CatalogRefresher
from .cache.store import CacheStore, build_cache_store
from .catalog.provider import CatalogProvider, FileCatalogProvider
from .catalog.subscriptions import FileSubscriptionStateProvider, SubscriptionStateProvider
from .credentials.keys import load_keys
from .credentials.sign import CredentialSigner
from .settings import Settings
from .validation.purchase import PurchaseGuard
from .validation.validator import PricingValidator


class PricingIntegrityService:
    """Caller-facing operations over one explicitly composed set of components."""

    def __init__(
        self,
        validator: PricingValidator,
        guard: PurchaseGuard,
        audit: TamperAuditLog,
        receipts: PurchaseReceiptLog,
        refresher: CatalogRefresher | None = None,
        top_targeted_plans: int = 5,
        retention_days: int = 90,
    ):
        self.validator = validator
        self.guard = guard
        self.audit = audit
        self.receipts = receipts
        self.refresher = refresher
        self.top_targeted_plans = top_targeted_plans
        self.retention_days = retention_days

    @property
    def cache(self) -> CatalogCache:
        return self.validator.cache

    def start(self) -> None:
        if self.refresher is not None:
            self.refresher.start()

    def stop(self) -> None:
        if self.refresher is not None:
            self.refresher.stop()
        self.validator.close()

    def get_validated_plans(self) -> list[PricingPlan]:
        return self.validator.get_validated_plans()

    def get_validated_plan(self, plan_id: str) -> Optional[PricingPlan]:
        return self.validator.get_validated_plan(plan_id)

    def validate(self, plan_id: str, amount, currency: str, actor_id=None, tenant_id=None, **context) -> ValidationResult:
        return self.validator.validate(plan_id, amount, currency, actor_id, tenant_id, **context)

    def validate_purchase(self, plan_id: str, amount, currency: str, actor_id, tenant_id, **context) -> ValidationResult:
        return self.guard.validate_purchase(plan_id, amount, currency, actor_id, tenant_id, **context)

    def refresh_cache(self) -> CacheStatistics:
        self.validator.refresh()
        return self.cache.statistics()

    def get_cache_statistics(self) -> CacheStatistics:
        return self.cache.statistics()

    def get_tampering_statistics(
        self,
        timeframe: str | None = "day",
        *,
        since_ms: int | None = None,
        until_ms: int | None = None,
        top_n: int | None = None,
    ) -> TamperingStatistics:
        return self.audit.statistics(
            timeframe,
            since_ms=since_ms,
            until_ms=until_ms,
            top_n=self.top_targeted_plans if top_n is None else top_n,
        )

    def cleanup(self, older_than_days: int | None = None) -> int:
        return self.audit.cleanup(self.retention_days if older_than_days is None else older_than_days)

    def replay_spool(self) -> int:
        return self.audit.replay_spool()

    def verify_receipts(self) -> dict[str, Any]:
        return self.receipts.verify_chain()


def build_service(
    cfg: Settings,
    *,
    provider: CatalogProvider | None = None,
    subscriptions: SubscriptionStateProvider | None = None,
    cache_store: CacheStore | None = None,
    clock: Callable[[], float] = time.time,
) -> PricingIntegrityService:
    """Wire the components from settings; collaborators may be injected."""
    data: Path = cfg.pricing_data_dir
    data.mkdir(parents=True, exist_ok=True)
    sk, vk = load_keys(data / "keys", cfg.signing_key_b64)
    if cfg.catalog_cache_ttl_seconds >= cfg.credential_ttl_seconds:
        logging.warning(
            "catalog_cache_ttl_seconds (%d) should be shorter than credential_ttl_seconds (%d); "
            "cached plans may outlive their credentials",
            cfg.catalog_cache_ttl_seconds,
            cfg.credential_ttl_seconds,
        )
    signer = CredentialSigner(
        sk,
        ttl_seconds=cfg.credential_ttl_seconds,
        freshness_seconds=cfg.credential_freshness_seconds,
        future_skew_seconds=cfg.credential_future_skew_seconds,
        issuer=cfg.credential_issuer,
        clock=clock,
    )
    cache = CatalogCache(
        cache_store or build_cache_store(cfg.cache_backend, cfg.redis_url),
        ttl_seconds=cfg.catalog_cache_ttl_seconds,
        key=cfg.catalog_cache_key,
        clock=clock,
    )
    audit = TamperAuditLog(
        create_audit_engine(cfg.resolved_audit_database_url()),
        data / "tamper_spool.jsonl",
        write_attempts=cfg.audit_write_attempts,
        clock=clock,
    )
    validator = PricingValidator(
        provider or FileCatalogProvider(cfg.catalog_file),
        signer,
        cache,
        audit,
        tolerance=cfg.amount_tolerance,
        tolerance_overrides=cfg.tolerance_overrides(),
        display_rates=cfg.display_rates,
        provider_timeout_seconds=cfg.catalog_provider_timeout_seconds,
        provider_workers=cfg.catalog_provider_workers,
        degrade_to_stale=cfg.display_degrade_to_stale,
        clock=clock,
    )
    receipts = PurchaseReceiptLog(data / "receipts", sk, vk, clock=clock)
    guard = PurchaseGuard(validator, subscriptions or FileSubscriptionStateProvider(cfg.subscriptions_file), receipts)
    refresher = None
    if cfg.catalog_refresh_interval_seconds > 0:
        refresher = CatalogRefresher(validator.refresh, cfg.catalog_refresh_interval_seconds)
    return PricingIntegrityService(
        validator,
        guard,
        audit,
        receipts,
        refresher=refresher,
        top_targeted_plans=cfg.top_targeted_plans,
        retention_days=cfg.audit_retention_days,
    )
