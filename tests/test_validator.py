import threading
import time

import pytest

from pricing_integrity.api.models import ErrorCode
from pricing_integrity.catalog.provider import DEFAULT_PLANS, CatalogProvider
from pricing_integrity.credentials.sign import CredentialSigner, gen_ed25519_keypair
from pricing_integrity.errors import CatalogUnavailableError


class FlakyProvider(CatalogProvider):
    def __init__(self, plans, delay=0.0):
        self.plans = plans
        self.delay = delay
        self.fail = False
        self.calls = 0

    def list_plans(self):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise ConnectionError("catalog db unreachable")
        return list(self.plans)


def _total(service):
    return service.get_tampering_statistics("day").total_attempts


def test_free_tier_scenarios(service):
    ok = service.validate("free-tier", 0, "INR")
    assert ok.is_valid and ok.validated_amount == 0 and ok.validated_currency == "INR"
    assert ok.plan.id == "free-tier"

    bad_currency = service.validate("free-tier", 0, "USD")
    assert bad_currency.error_code == ErrorCode.INVALID_CURRENCY
    assert _total(service) == 0

    tampered = service.validate("free-tier", 100, "INR", "user-1", "tenant-1")
    assert tampered.error_code == ErrorCode.INVALID_AMOUNT
    stats = service.get_tampering_statistics("day")
    assert stats.total_attempts == 1
    assert stats.average_delta == 100
    assert stats.unique_users == 1
    assert stats.top_targeted_plans[0].plan_id == "free-tier"


def test_within_tolerance_returns_canonical_amount(service):
    for amount in (58.99, 59, 59.005, 59.01):
        r = service.validate("paid-standard-tier", amount, "INR")
        assert r.is_valid, amount
        assert r.validated_amount == 59
    assert _total(service) == 0


def test_outside_tolerance_records_exact_delta(service):
    r = service.validate("paid-standard-tier", 58.98, "INR")
    assert r.error_code == ErrorCode.INVALID_AMOUNT
    assert service.get_tampering_statistics("day").average_delta == pytest.approx(0.02)


def test_currency_is_case_insensitive(service):
    assert service.validate("premium-tier", 649, "inr").is_valid


def test_unknown_and_inactive_plans(make_service):
    retired = DEFAULT_PLANS[2].model_copy(update={"is_active": False})
    service = make_service(plans=[DEFAULT_PLANS[0], retired])
    assert service.validate("nope", 0, "INR").error_code == ErrorCode.PLAN_NOT_FOUND
    assert service.validate("premium-tier", 649, "INR").error_code == ErrorCode.PLAN_INACTIVE
    # Inactive plans are hidden from display paths as well
    assert [p.id for p in service.get_validated_plans()] == ["free-tier"]
    assert service.get_validated_plan("premium-tier") is None


def test_billing_cycle_mismatch(service):
    r = service.validate("paid-standard-tier", 59, "INR", billing_cycle="yearly")
    assert r.error_code == ErrorCode.INVALID_BILLING_CYCLE
    assert service.validate("paid-standard-tier", 59, "INR", billing_cycle="monthly").is_valid


def test_non_finite_amount_rejected_without_event(service):
    for amount in (float("nan"), float("inf"), "59", None, True):
        assert service.validate("paid-standard-tier", amount, "INR").error_code == ErrorCode.INVALID_AMOUNT
    assert _total(service) == 0


def test_currency_specific_tolerance(make_service):
    jpy = DEFAULT_PLANS[1].model_copy(update={"id": "jpy-plan", "price_amount": 980.0, "currency": "JPY"})
    service = make_service(plans=[jpy], amount_tolerance_overrides="JPY=1")
    assert service.validate("jpy-plan", 979, "JPY").is_valid
    assert service.validate("jpy-plan", 978, "JPY").error_code == ErrorCode.INVALID_AMOUNT


def test_key_rotation_is_security_failure_not_tampering(service):
    assert service.validate("premium-tier", 649, "INR").is_valid
    version = service.get_cache_statistics().version
    sk, _ = gen_ed25519_keypair()
    service.validator.signer = CredentialSigner(sk, clock=service.validator.signer._clock)

    r = service.validate("premium-tier", 649, "INR")
    assert r.error_code == ErrorCode.SECURITY_VALIDATION_FAILED
    assert _total(service) == 0
    # The whole snapshot was dropped; the next call re-signs under the new key
    assert service.get_cache_statistics().is_cached is False
    assert service.validate("premium-tier", 649, "INR").is_valid
    assert service.get_cache_statistics().version != version


def test_snapshot_plans_carry_credentials_and_display_prices(service):
    plans = {p.id: p for p in service.get_validated_plans()}
    assert set(plans) == {"free-tier", "paid-standard-tier", "premium-tier", "enterprise-tier"}
    assert all(p.credential for p in plans.values())
    assert plans["premium-tier"].display_prices == {"USD": 7.82}
    # Derived prices are never accepted for validation
    assert service.validate("premium-tier", 7.82, "USD").error_code == ErrorCode.INVALID_CURRENCY


def test_provider_outage_fails_closed(make_service):
    provider = FlakyProvider(DEFAULT_PLANS)
    provider.fail = True
    service = make_service(provider=provider)
    assert service.validate("free-tier", 0, "INR").error_code == ErrorCode.VALIDATION_SERVICE_ERROR


def test_provider_timeout_is_service_error(make_service):
    service = make_service(provider=FlakyProvider(DEFAULT_PLANS, delay=1.0), catalog_provider_timeout_seconds=0.1)
    assert service.validate("free-tier", 0, "INR").error_code == ErrorCode.VALIDATION_SERVICE_ERROR


def test_display_degrades_to_last_known_good(make_service, clock):
    provider = FlakyProvider(DEFAULT_PLANS)
    service = make_service(provider=provider)
    assert len(service.get_validated_plans()) == 4
    clock.advance(301)
    provider.fail = True
    assert len(service.get_validated_plans()) == 4
    assert service.get_validated_plan("free-tier") is not None
    # Purchase-sensitive path never uses the stale snapshot
    assert service.validate("free-tier", 0, "INR").error_code == ErrorCode.VALIDATION_SERVICE_ERROR


def test_display_without_degrade_raises(make_service, clock):
    provider = FlakyProvider(DEFAULT_PLANS)
    service = make_service(provider=provider, display_degrade_to_stale=False)
    service.get_validated_plans()
    clock.advance(301)
    provider.fail = True
    with pytest.raises(CatalogUnavailableError):
        service.get_validated_plans()


def test_snapshot_is_reused_within_ttl(make_service, clock):
    provider = FlakyProvider(DEFAULT_PLANS)
    service = make_service(provider=provider)
    for _ in range(5):
        service.validate("free-tier", 0, "INR")
    assert provider.calls == 1
    clock.advance(300)
    service.validate("free-tier", 0, "INR")
    assert provider.calls == 2


def test_refresh_changes_version(service):
    first = service.refresh_cache()
    second = service.refresh_cache()
    assert first.is_cached and second.is_cached
    assert first.version != second.version


def test_failed_refresh_keeps_current_snapshot(make_service):
    provider = FlakyProvider(DEFAULT_PLANS)
    service = make_service(provider=provider)
    assert service.validate("paid-standard-tier", 59, "INR").is_valid
    before = service.get_cache_statistics()

    provider.fail = True
    with pytest.raises(CatalogUnavailableError):
        service.refresh_cache()

    after = service.get_cache_statistics()
    assert after.is_cached and after.version == before.version
    assert service.validate("paid-standard-tier", 59, "INR").is_valid
    assert len(service.get_validated_plans()) == 4
    assert provider.calls == 2


def test_failed_refresh_keeps_last_known_good_for_display(make_service, clock):
    provider = FlakyProvider(DEFAULT_PLANS)
    service = make_service(provider=provider)
    version = service.refresh_cache().version
    clock.advance(301)
    provider.fail = True
    with pytest.raises(CatalogUnavailableError):
        service.validator.refresh()
    assert service.validator.cache.last_known_good.version == version
    assert service.get_validated_plan("premium-tier") is not None
    assert service.validate("premium-tier", 649, "INR").error_code == ErrorCode.VALIDATION_SERVICE_ERROR


class BlockingProvider(CatalogProvider):
    def __init__(self, plans):
        self.plans = plans
        self.gate = threading.Event()
        self.calls = 0

    def list_plans(self):
        self.calls += 1
        self.gate.wait(5)
        return list(self.plans)


def test_hung_provider_calls_do_not_queue(make_service):
    provider = BlockingProvider(DEFAULT_PLANS)
    service = make_service(
        provider=provider, catalog_provider_timeout_seconds=0.5, catalog_provider_workers=1
    )
    assert service.validate("free-tier", 0, "INR").error_code == ErrorCode.VALIDATION_SERVICE_ERROR
    # the only worker is still held by the timed-out call
    started = time.monotonic()
    assert service.validate("free-tier", 0, "INR").error_code == ErrorCode.VALIDATION_SERVICE_ERROR
    assert time.monotonic() - started < 0.25
    assert provider.calls == 1

    provider.gate.set()
    deadline = time.monotonic() + 2
    while not service.validate("free-tier", 0, "INR").is_valid:
        assert time.monotonic() < deadline
        time.sleep(0.01)
    assert provider.calls == 2
