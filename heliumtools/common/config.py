"""Central environment-driven settings for the DC purchase service.

The API process and the operator scripts load this once at startup. Behavior is
controlled by environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "dc-purchase"
    log_level: str = "INFO"
    database_dsn: str
    api_key: str
    redis_url: str = "redis://redis:6379/0"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    tracing_enabled: bool = True

    solana_rpc_url: str = "https://api.mainnet-beta.solana.com"
    solana_commitment: str = "confirmed"
    treasury_private_key: str = ""
    treasury_public_key: str = ""
    submit_max_attempts: int = 3
    confirm_timeout_seconds: float = 60.0
    confirm_poll_interval_seconds: float = 1.0

    jupiter_quote_url: str = "https://api.jup.ag/swap/v1/quote"
    jupiter_swap_url: str = "https://api.jup.ag/swap/v1/swap"
    jupiter_api_key: str = ""
    swap_slippage_bps: int = 100
    swap_max_attempts: int = 3
    swap_retry_delay_seconds: float = 2.0

    processor_max_iterations: int = 10
    processor_step_delay_seconds: float = 1.0
    processing_lease_seconds: int = 300
    verify_treasury_usdc: bool = False
    reconciliation_interval_seconds: int = 3 * 60 * 60

    dc_purchase_min_usd: float = 5
    dc_purchase_max_usd: float = 1000

    coinbase_cdp_api_key: str = ""
    coinbase_cdp_api_secret: str = ""
    coinbase_onramp_project_id: str = ""
    coinbase_onramp_url: str = "https://api.coinbase.com/onramp/v2/sessions"
    coinbase_webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300
    onramp_redirect_base_url: str = "https://heliumtools.org/dc-purchase/order"

    oui_api_url: str = "https://entities.nft.helium.io/v2/oui/all"
    rate_limit_per_minute: int = 30
    balance_cache_ttl_seconds: int = 60
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
