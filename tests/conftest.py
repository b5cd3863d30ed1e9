import pytest

from pricing_integrity.api.models import SubscriptionTier
from pricing_integrity.cache.store import MemoryCacheStore
from pricing_integrity.catalog.provider import DEFAULT_PLANS, StaticCatalogProvider
from pricing_integrity.catalog.subscriptions import StaticSubscriptionStateProvider
from pricing_integrity.service import build_service
from pricing_integrity.settings import Settings

T0 = 1_760_000_000.0


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def subscriptions():
    return StaticSubscriptionStateProvider({"tenant-std": SubscriptionTier.PAID_STANDARD})


@pytest.fixture
def make_service(tmp_path, clock, subscriptions):
    """Factory for an isolated service rooted in tmp_path with injected collaborators."""
    built = []

    def _make(plans=None, provider=None, **overrides):
        cfg = Settings(pricing_data_dir=tmp_path / "data", **overrides)
        svc = build_service(
            cfg,
            provider=provider or StaticCatalogProvider(plans if plans is not None else DEFAULT_PLANS),
            subscriptions=subscriptions,
            cache_store=MemoryCacheStore(clock=clock),
            clock=clock,
        )
        built.append(svc)
        return svc

    yield _make
    for svc in built:
        svc.stop()


@pytest.fixture
def service(make_service):
    return make_service()
