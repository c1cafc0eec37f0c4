"""
Points Ledger

This module provides:
- Immutable, signed point entries keyed by idempotency key
- Atomic batch appends serialized per driver
- Balances as rebuildable projections of the entry stream
"""

from .models import (
    EntryKind,
    LedgerEntry,
    NewLedgerEntry,
    PointsBalance,
)
from .service import LedgerService

__all__ = [
    "EntryKind",
    "LedgerEntry",
    "NewLedgerEntry",
    "PointsBalance",
    "LedgerService",
]
