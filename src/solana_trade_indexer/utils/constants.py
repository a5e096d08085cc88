"""Shared constants for the trade indexer."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


# Q64.64 fixed point used by constant-product pools for sqrt prices.
SQRT_PRICE_SCALE = 2 ** 64

# Curve configs select the swap-quote time reference with this flag.
ACTIVATION_TYPE_SLOT = 0
ACTIVATION_TYPE_TIMESTAMP = 1

# Rolling windows reported with token metrics, in seconds.
VOLUME_WINDOWS: dict[str, int] = {
    "5m": 5 * 60,
    "1h": 60 * 60,
    "6h": 6 * 60 * 60,
    "24h": 24 * 60 * 60,
}

__all__ = [
    "utc_now",
    "SQRT_PRICE_SCALE",
    "ACTIVATION_TYPE_SLOT",
    "ACTIVATION_TYPE_TIMESTAMP",
    "VOLUME_WINDOWS",
]
