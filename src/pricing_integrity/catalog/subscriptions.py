from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Optional

from ..api.models import SubscriptionTier
from ..errors import SubscriptionStateError


class SubscriptionStateProvider:
    def current_tier(self, tenant_id: str) -> Optional[SubscriptionTier]:
        """Return the tenant's current tier, or None when it has no subscription."""
        raise NotImplementedError


class StaticSubscriptionStateProvider(SubscriptionStateProvider):
    def __init__(self, tiers: dict[str, SubscriptionTier] | None = None):
        self._tiers = dict(tiers or {})

    def current_tier(self, tenant_id: str) -> Optional[SubscriptionTier]:
        return self._tiers.get(tenant_id)

    def set_tier(self, tenant_id: str, tier: SubscriptionTier | None) -> None:
        if tier is None:
            self._tiers.pop(tenant_id, None)
        else:
            self._tiers[tenant_id] = tier


class FileSubscriptionStateProvider(SubscriptionStateProvider):
    """``{"<tenant_id>": "<tier>"}`` JSON file; a missing file means no subscriptions."""

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise SubscriptionStateError(f"subscription state unreadable: {self.path}") from e
        if not isinstance(data, dict):
            raise SubscriptionStateError("subscription state must be a JSON object")
        return data

    def current_tier(self, tenant_id: str) -> Optional[SubscriptionTier]:
        raw = self._load().get(tenant_id)
        if raw is None:
            return None
        try:
            return SubscriptionTier(raw)
        except ValueError as e:
            raise SubscriptionStateError(f"unknown tier {raw!r} for tenant {tenant_id}") from e

    def set_tier(self, tenant_id: str, tier: SubscriptionTier | None) -> None:
        with self._lock:
            data = self._load()
            if tier is None:
                data.pop(tenant_id, None)
            else:
                data[tenant_id] = tier.value
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data, indent=2, sort_keys=True))
