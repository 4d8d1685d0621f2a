"""Startup summary of the effective settings, with credentials masked."""

from heliumtools.common.config import Settings
from heliumtools.common.logging import logger


# Field-name fragments whose values never reach the logs.
SECRET_FIELD_MARKERS = ("private_key", "api_key", "secret", "dsn", "redis_url")


def masked(field: str, value) -> str:
    if value in (None, ""):
        return "<unset>"
    if any(marker in field for marker in SECRET_FIELD_MARKERS):
        return "<redacted>"
    return str(value)


def startup_summary(config: Settings, fields: list[str]) -> dict:
    """Selected settings plus which optional integrations are switched on."""

    summary = {field: masked(field, getattr(config, field)) for field in fields}
    summary["treasury_configured"] = bool(config.treasury_private_key)
    summary["onramp_configured"] = bool(config.coinbase_cdp_api_key and config.coinbase_cdp_api_secret)
    summary["webhook_secret_configured"] = bool(config.coinbase_webhook_secret)
    return summary


def log_startup_config(config: Settings, fields: list[str]) -> None:
    logger.info("startup_config service=%s config=%s", config.service_name, startup_summary(config, fields))
