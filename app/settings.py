from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # database_url: str = "postgresql+psycopg://zyra@/zyra?host=/var/run/postgresql&port=5432"
    database_url: str = "sqlite:///./zyra_change_control.db"
    db_echo: bool = False
    db_auto_create_tables: bool = False  # create tables on startup instead of running Alembic

    # Shopify Admin API (store platform)
    shopify_shop_domain: str = ""  # e.g. my-store.myshopify.com
    shopify_access_token: str = ""
    shopify_api_version: str = "2024-10"
    shopify_timeout_seconds: float = 30.0
    shopify_connect_timeout_seconds: float = 10.0

    # Merchant used when the dashboard does not send X-Merchant-Id
    default_merchant_id: str = "default"

    # Risk tiers: abs(expected_revenue) above these is medium / high
    risk_medium_threshold: float = 100.0
    risk_high_threshold: float = 500.0

    # Autopilot
    autopilot_window_hours: int = 24
    autopilot_tick_batch_size: int = 50

    # An execute/rollback claim older than this is considered abandoned
    claim_timeout_seconds: int = 600

    # Aggregate counts cache
    stats_cache_ttl: int = 30  # seconds

    @field_validator("database_url")
    @classmethod
    def validate_db_url(cls, v: str) -> str:
        if not v.startswith(("postgresql", "sqlite")):
            raise ValueError("database_url must start with 'postgresql' or 'sqlite'")
        return v

    @field_validator("shopify_shop_domain")
    @classmethod
    def validate_shop_domain(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if v.startswith(("http://", "https://")):
            raise ValueError("shopify_shop_domain must be a bare domain without a scheme")
        return v

    @field_validator("shopify_timeout_seconds", "shopify_connect_timeout_seconds")
    @classmethod
    def validate_positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be greater than 0")
        return v

    @field_validator("autopilot_window_hours", "autopilot_tick_batch_size", "claim_timeout_seconds")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_risk_thresholds(self) -> "Settings":
        if self.risk_medium_threshold < 0 or self.risk_high_threshold < self.risk_medium_threshold:
            raise ValueError("risk thresholds must satisfy 0 <= medium <= high")
        return self

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=False)


settings = Settings()
