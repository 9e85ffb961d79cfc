"""
Payment provider codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001


# Provider status -> (finished, failed)
PROVIDER_TERMINAL_STATUSES = {
    "yookassa": {
        "pending": (False, False),
        "waiting_for_capture": (False, False),
        "succeeded": (True, False),
        "canceled": (True, True),
    },
}


def map_provider_status(provider: str, status: str) -> tuple[bool, bool]:
    """Return (finished, failed) for a raw provider status; unknown statuses are in-flight."""
    mapping = PROVIDER_TERMINAL_STATUSES.get(provider, {})
    return mapping.get(status, (False, False))
