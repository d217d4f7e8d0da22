"""
Runtime settings for TheRawKing order service.

Everything comes from the environment so the same build runs locally, in CI and
behind the production process manager.
"""

import logging
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
PORT = int(os.getenv("PORT", 8000))

RESERVATION_TTL_MINUTES = int(os.getenv("RESERVATION_TTL_MINUTES", 15))
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", 300))
SWEEPER_ENABLED = _env_bool("SWEEPER_ENABLED", True)
ORDER_CURRENCY = os.getenv("ORDER_CURRENCY", "usd")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Pricing
TAX_RATE = 0.085
FREE_SHIPPING_THRESHOLD = 50
SHIPPING_RATES = {
    "standard": 5.99,
    "express": 12.99,
    "overnight": 24.99,
    "pickup": 0.0,
}
DELIVERY_DAYS = {
    "standard": 5,
    "express": 2,
    "overnight": 1,
    "pickup": 0,
}


def configure_logging(level: str | None = None) -> None:
    """Install the root handler once; later calls only adjust the level."""
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger().setLevel((level or LOG_LEVEL).upper())
