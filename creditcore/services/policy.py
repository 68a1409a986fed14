"""Usage policy: daily generation caps and cooldown between generations."""

from dataclasses import dataclass
from datetime import datetime, timedelta

from creditcore.core.config import PlanLimits
from creditcore.core.exceptions import CooldownError, DailyLimitError
from creditcore.models.wallet import Wallet


@dataclass(frozen=True)
class UsageUpdate:
    """Counters to write with a successful deduction."""
    daily_usage_count: int
    last_reset_date: str
    last_usage_at: datetime


def day_key(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


def next_reset(now: datetime) -> datetime:
    """Start of the next UTC day."""
    return datetime(now.year, now.month, now.day) + timedelta(days=1)


def limits_for(wallet: Wallet, table: dict[str, PlanLimits]) -> PlanLimits:
    base = table.get(wallet.plan_key) or PlanLimits()
    if wallet.custom_daily_limit is not None:
        return PlanLimits(max_daily=wallet.custom_daily_limit, cooldown_minutes=base.cooldown_minutes)
    return base


def used_today(wallet: Wallet, now: datetime) -> int:
    if wallet.last_reset_date != day_key(now):
        return 0
    return wallet.daily_usage_count


def check_usage(wallet: Wallet, count: int, now: datetime, limits: PlanLimits) -> UsageUpdate:
    """
    Validate a generation of `count` items against the wallet's limits.
    Raises DailyLimitError or CooldownError; otherwise returns the new counters.
    """
    used = used_today(wallet, now)
    if limits.max_daily is not None and used + count > limits.max_daily:
        raise DailyLimitError(limits.max_daily, used, next_reset(now))
    if limits.cooldown_minutes > 0 and wallet.last_usage_at is not None:
        retry_at = wallet.last_usage_at + timedelta(minutes=limits.cooldown_minutes)
        if now < retry_at:
            raise CooldownError(limits.cooldown_minutes, retry_at)
    return UsageUpdate(
        daily_usage_count=used + count,
        last_reset_date=day_key(now),
        last_usage_at=now,
    )
