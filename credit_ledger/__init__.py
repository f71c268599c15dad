"""
Credit Ledger for storefront loyalty and referral accounting

This module provides:
- One balance record per account, mutated only by atomic read-modify-write
- Signup, referral, purchase and admin awards; credit payments with overdraft protection
- Exactly-once referral bonuses keyed by (referrer, referred account)
- Append-only transaction log with per-account history and referral statistics
- Exact Decimal credit/dollar conversion, display formatting and tiers
"""

from .config import CreditRates, Settings, load_settings
from .models import (
    AccountCreditRecord,
    CreditResult,
    CreditSource,
    CreditTransaction,
    ErrorCode,
    TransactionType,
)
from .service import CreditLedgerService
from .store import InMemoryLedgerStore, LedgerStore

__all__ = [
    "CreditRates",
    "Settings",
    "load_settings",
    "AccountCreditRecord",
    "CreditResult",
    "CreditSource",
    "CreditTransaction",
    "ErrorCode",
    "TransactionType",
    "CreditLedgerService",
    "InMemoryLedgerStore",
    "LedgerStore",
]
