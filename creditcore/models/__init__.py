from creditcore.models.wallet import AccountType, PlanType, Wallet
from creditcore.models.wallet_transaction import TransactionKind, WalletTransaction
from creditcore.models.order import Order, OrderStatus
from creditcore.models.audit_log import AuditLog
from creditcore.models.failed_job import FailedJob

__all__ = [
    "AccountType",
    "PlanType",
    "Wallet",
    "TransactionKind",
    "WalletTransaction",
    "Order",
    "OrderStatus",
    "AuditLog",
    "FailedJob",
]
