from datetime import datetime
from enum import Enum

from beanie import Document, Indexed
from pydantic import Field


class AccountType(str, Enum):
    TRIAL = "trial"
    PAID = "paid"


class PlanType(str, Enum):
    BASIC = "basic"
    PRO = "pro"
    ELITE = "elite"


class Wallet(Document):
    """
    Point balance and usage counters for one user.
    Balance changes only through WalletLedger, as conditional $inc on `version`.
    """
    user_id: Indexed(str, unique=True)
    email: str
    display_name: str | None = None
    avatar_ref: str | None = None
    balance: int = 0
    account_type: AccountType = AccountType.TRIAL
    plan_type: PlanType | None = None
    is_admin: bool = False
    is_disabled: bool = False

    # Usage policy counters
    daily_usage_count: int = 0
    last_reset_date: str | None = None  # YYYY-MM-DD (UTC)
    last_usage_at: datetime | None = None
    custom_daily_limit: int | None = None

    version: int = 0
    last_login_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "wallets"
        indexes = [[("account_type", 1)]]

    @property
    def plan_key(self) -> str:
        """Key into the usage limits table."""
        if self.account_type != AccountType.PAID:
            return "trial"
        return self.plan_type.value if self.plan_type else PlanType.BASIC.value
