from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    pricing_data_dir: Path = Path("./data")
    # Signing key: base64 Ed25519 seed; generated under <data>/keys when empty
    signing_key_b64: str = ""
    # Credential lifetimes (minutes, not hours)
    credential_ttl_seconds: int = 600
    credential_freshness_seconds: int = 600  # replay window; equal to expiry unless tightened
    credential_future_skew_seconds: int = 30
    credential_issuer: str = "pricing-integrity"
    # Catalog cache
    catalog_cache_ttl_seconds: int = 300
    catalog_cache_key: str = "pricing:validated_plans"
    cache_backend: str = "memory"  # memory | redis
    redis_url: str = "redis://localhost:6379/0"
    catalog_refresh_interval_seconds: int = 0  # 0 disables the background refresher
    catalog_provider_timeout_seconds: float = 5.0
    catalog_provider_workers: int = 4
    catalog_file: Path | None = None
    subscriptions_file: Path | None = None
    # Amount validation
    amount_tolerance: float = 0.01
    amount_tolerance_overrides: str = ""  # e.g. "JPY=1,KWD=0.001"
    display_rates: dict[str, float] = {"USD": 83.0}  # base units per display unit
    display_degrade_to_stale: bool = True
    # Tamper audit log
    audit_database_url: str = ""
    audit_write_attempts: int = 3
    audit_retention_days: int = 90
    top_targeted_plans: int = 5

    def tolerance_overrides(self) -> dict[str, float]:
        out: dict[str, float] = {}
        for pair in self.amount_tolerance_overrides.split(","):
            if "=" not in pair:
                continue
            code, value = pair.split("=", 1)
            out[code.strip().upper()] = float(value)
        return out

    def resolved_audit_database_url(self) -> str:
        if self.audit_database_url:
            return self.audit_database_url
        return f"sqlite:///{self.pricing_data_dir / 'pricing_audit.db'}"

    def model_post_init(self, __context):  # type: ignore[override]
        # Collaborator files default to the data dir unless pinned via env
        if self.catalog_file is None:
            self.catalog_file = self.pricing_data_dir / "catalog.json"
        if self.subscriptions_file is None:
            self.subscriptions_file = self.pricing_data_dir / "subscriptions.json"

settings = Settings()
settings.pricing_data_dir.mkdir(parents=True, exist_ok=True)
