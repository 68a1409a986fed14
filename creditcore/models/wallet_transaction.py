from datetime import datetime
from enum import Enum

from beanie import Document, Indexed
from pydantic import Field


class TransactionKind(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    REFUND = "refund"


class WalletTransaction(Document):
    """Ledger entry written alongside every balance change."""
    user_id: str
    amount: int  # positive = credit/refund, negative = debit
    balance_after: int
    kind: TransactionKind
    description: str = ""
    order_id: str | None = None
    idempotency_key: Indexed(str, unique=True)  # debit:<order_id>, refund:<order_id>, ...
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "wallet_transactions"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("order_id", 1)],
        ]
