from __future__ import annotations

import logging
from typing import Iterable, Tuple

from .config import Settings
from .payments.mpesa import MPESA_HOSTS

logger = logging.getLogger(__name__)

MPESA_REQUIRED: list[Tuple[str, str]] = [
    ("mpesa_consumer_key", "MPESA_CONSUMER_KEY"),
    ("mpesa_consumer_secret", "MPESA_CONSUMER_SECRET"),
    ("mpesa_business_short_code", "MPESA_BUSINESS_SHORT_CODE"),
    ("mpesa_passkey", "MPESA_PASSKEY"),
    ("mpesa_callback_url", "MPESA_CALLBACK_URL"),
]


def _collect_missing(settings: Settings, pairs: Iterable[Tuple[str, str]]) -> list[str]:
    missing: list[str] = []
    for attr, label in pairs:
        value = getattr(settings, attr, None)
        if value in (None, "", [], {}):
            missing.append(label)
    return missing


def validate_settings(settings: Settings) -> None:
    """Fail fast when mandatory secrets/config values are missing for non-dev envs."""
    environment = (settings.environment or "dev").lower()

    if settings.mpesa_environment not in MPESA_HOSTS:
        raise RuntimeError(
            f"MPESA_ENVIRONMENT must be one of {', '.join(sorted(MPESA_HOSTS))}, "
            f"got '{settings.mpesa_environment}'"
        )

    dev_missing = _collect_missing(settings, [("database_url", "DATABASE_URL"), *MPESA_REQUIRED])
    if environment == "dev":
        if dev_missing:
            logger.warning(
                "Running in dev without recommended secrets; M-Pesa flows may fail",
                extra={"missing": dev_missing},
            )
        return

    required_pairs: list[Tuple[str, str]] = [
        ("database_url", "DATABASE_URL"),
        ("redis_url", "REDIS_URL"),
        *MPESA_REQUIRED,
    ]
    if not settings.auth_disable_verification:
        required_pairs.extend(
            [
                ("clerk_issuer", "CLERK_ISSUER"),
                ("clerk_audience", "CLERK_AUDIENCE"),
            ]
        )

    missing = _collect_missing(settings, required_pairs)
    if missing:
        raise RuntimeError(
            f"Missing required configuration for environment '{environment}': {', '.join(sorted(missing))}"
        )
    if environment == "prod" and settings.mpesa_environment != "production":
        logger.warning("Production deployment is pointed at the M-Pesa sandbox")
