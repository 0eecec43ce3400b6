"""
Points ledger for a reward app.

This package provides:
- Idempotent crediting of earning actions (one reward per user and action)
- Reward multipliers: streak, happy hour and lifetime level
- An append-only transaction log that reconciles with stored balances
- Withdrawals: pending -> completed / rejected with exact refunds
- Signed offerwall postbacks and missions
"""

from .models import (
    TransactionSource,
    TransactionType,
    Transaction,
    User,
    UserBalance,
    Withdrawal,
    WithdrawalStatus,
)
from .service import LedgerService
from .withdrawals import WithdrawalService

__all__ = [
    "TransactionSource",
    "TransactionType",
    "Transaction",
    "User",
    "UserBalance",
    "Withdrawal",
    "WithdrawalStatus",
    "LedgerService",
    "WithdrawalService",
]
