"""Startup-time helpers for safe config logging."""

import os

from qikaopay.common.config import CommonSettings
from qikaopay.common.logging import logger


def _safe_env(name: str) -> str:
    """Return env value with simple redaction for secret-like variable names."""

    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if any(secret in name for secret in ["KEY", "SECRET", "PASSWORD", "TOKEN", "PASSKEY"]):
        return "<redacted>"
    return value


def log_startup_config(service_name: str, keys: list[str]) -> None:
    """Log selected startup config keys for quick troubleshooting."""

    config = {"service": service_name}
    for key in keys:
        config[key] = _safe_env(key)
    logger.info("startup_config=%s", config)


def warn_missing_gateway_config(config: CommonSettings) -> list[str]:
    """Warn once when STK pushes will fail until the gateway is configured."""

    missing = config.missing_gateway_settings()
    if missing:
        logger.warning("gateway_config_incomplete missing=%s initiate will fail until configured", missing)
    return missing
