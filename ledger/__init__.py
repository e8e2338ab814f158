"""
Credit Ledger for Referral Rewards

This module provides:
- Append-only credit records (earned, used, expired)
- FIFO-by-expiry debits inside one transaction
- Expiry sweeps that never touch a record twice
- A cached balance rebuilt from the records
"""

from .models import (
    CreditType,
    CreditSource,
    CreditRecord,
    CreditUsage,
    UserCreditBalance,
    CreditStats,
)
from .service import CreditLedger

__all__ = [
    "CreditType",
    "CreditSource",
    "CreditRecord",
    "CreditUsage",
    "UserCreditBalance",
    "CreditStats",
    "CreditLedger",
]
