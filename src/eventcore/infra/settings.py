"""Environment-driven settings.

Values are read from ``os.environ`` at call time so tests can patch them.
"""

import os

PRODUCTION = "production"
DEVELOPMENT = "development"


def app_env() -> str:
    """Deployment environment (APP_ENV, falling back to NODE_ENV)."""
    value = os.environ.get("APP_ENV") or os.environ.get("NODE_ENV") or DEVELOPMENT
    return value.strip().lower()


def is_production() -> bool:
    return app_env() == PRODUCTION


def is_development() -> bool:
    return app_env() == DEVELOPMENT


def env_seconds(name: str, default_ms: int) -> float:
    """Read a millisecond duration from the environment, returned in seconds.

    Raises:
        ValueError: If the variable is set but not a positive integer.
    """
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default_ms / 1000
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer number of milliseconds") from e
    if value <= 0:
        raise ValueError(f"{name} must be positive")
    return value / 1000


def env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer") from e
    if value <= 0:
        raise ValueError(f"{name} must be positive")
    return value


def payment_webhook_secret() -> str | None:
    """Shared HMAC secret for payment-service webhooks, if configured."""
    return os.environ.get("PAYMENT_WEBHOOK_SECRET") or None
