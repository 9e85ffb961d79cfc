"""
Order ledger codes (7xxxx).

Rejections raised by the ledger, the status machine and the online
transaction lifecycle. HTTP mapping lives in core.exceptions.
"""
from __future__ import annotations

from enum import IntEnum


class LedgerCode(IntEnum):
    # Lookups (700xx)
    ORDER_NOT_FOUND = 70001
    EVENT_NOT_FOUND = 70002

    # Amount guards (701xx)
    AMOUNT_GUARD_VIOLATION = 70101
    ORDER_ALREADY_PAID = 70102
    ORDER_NOT_FULLY_PAID = 70103
    ORDER_AMOUNT_BELOW_MINIMUM = 70104
    NOTHING_TO_REFUND = 70105

    # Status machine (702xx)
    ILLEGAL_STATUS_TRANSITION = 70201
    ORDER_NOT_ACTIVE = 70202

    # Event lifecycle (703xx)
    EVENT_ALREADY_VOIDED = 70301
    EVENT_NOT_VOIDABLE = 70302

    # Online transactions (704xx)
    ONLINE_TRANSACTION_IN_PROGRESS = 70401
    PROVIDER_NOT_CONFIGURED = 70402

    # Persistence (705xx)
    CONCURRENT_MODIFICATION = 70501


__all__ = ["LedgerCode"]
