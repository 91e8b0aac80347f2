"""
Survey reward crediting and completion ledger

This package provides:
- Wallet and completion-record storage with a row-locked unit of work
- Idempotent crediting keyed on the partner transaction id
- Completion and reversal flows: unseen → completed → cancelled
- The CPX Research postback endpoint with its plaintext 1/0 contract
- The in-app start/complete flow for internally hosted surveys
"""

from .models import (
    CompletionStatus,
    Outcome,
    OutcomeKind,
    PostbackStatus,
    WalletSnapshot,
)
from .service import CompletionProcessor

__all__ = [
    "CompletionStatus",
    "Outcome",
    "OutcomeKind",
    "PostbackStatus",
    "WalletSnapshot",
    "CompletionProcessor",
]
