"""Daily caps and cooldowns, directly and through the ledger."""

from datetime import datetime, timedelta

import pytest

from creditcore.core.config import PlanLimits
from creditcore.core.exceptions import CooldownError, DailyLimitError, DeductionErrorKind
from creditcore.models.wallet import AccountType, PlanType, Wallet
from creditcore.services.policy import check_usage, limits_for, next_reset

NOW = datetime(2026, 3, 10, 12, 0, 0)


def _wallet(**kw) -> Wallet:
    # model_construct skips beanie's collection binding
    base = {
        "user_id": "u1",
        "email": "u1@example.com",
        "balance": 100,
        "account_type": AccountType.TRIAL,
        "plan_type": None,
        "custom_daily_limit": None,
        "daily_usage_count": 0,
        "last_reset_date": None,
        "last_usage_at": None,
    }
    base.update(kw)
    return Wallet.model_construct(**base)


def test_first_use_of_the_day_counts_from_zero():
    w = _wallet(daily_usage_count=4, last_reset_date="2026-03-09")
    usage = check_usage(w, 2, NOW, PlanLimits(max_daily=5))
    assert usage.daily_usage_count == 2
    assert usage.last_reset_date == "2026-03-10"
    assert usage.last_usage_at == NOW


def test_daily_limit_exceeded():
    w = _wallet(daily_usage_count=4, last_reset_date="2026-03-10")
    with pytest.raises(DailyLimitError) as exc:
        check_usage(w, 2, NOW, PlanLimits(max_daily=5))
    assert exc.value.kind == DeductionErrorKind.DAILY_LIMIT
    assert exc.value.limit == 5
    assert exc.value.used == 4
    assert exc.value.resets_at == datetime(2026, 3, 11)


def test_unlimited_plan():
    w = _wallet(daily_usage_count=9000, last_reset_date="2026-03-10")
    assert check_usage(w, 1, NOW, PlanLimits()).daily_usage_count == 9001


def test_cooldown_blocks_until_retry_at():
    last = NOW - timedelta(seconds=30)
    w = _wallet(last_usage_at=last, last_reset_date="2026-03-10", daily_usage_count=1)
    with pytest.raises(CooldownError) as exc:
        check_usage(w, 1, NOW, PlanLimits(cooldown_minutes=1))
    assert exc.value.retry_at == last + timedelta(minutes=1)
    assert exc.value.details["cooldown_minutes"] == 1
    assert check_usage(w, 1, last + timedelta(minutes=1), PlanLimits(cooldown_minutes=1))


def test_limits_for_plans_and_override():
    table = {
        "trial": PlanLimits(max_daily=5, cooldown_minutes=1),
        "basic": PlanLimits(max_daily=20),
        "pro": PlanLimits(max_daily=30),
    }
    assert limits_for(_wallet(), table).max_daily == 5
    assert limits_for(_wallet(account_type=AccountType.PAID), table).max_daily == 20
    assert limits_for(_wallet(account_type=AccountType.PAID, plan_type=PlanType.PRO), table).max_daily == 30
    custom = limits_for(_wallet(custom_daily_limit=2), table)
    assert custom.max_daily == 2
    assert custom.cooldown_minutes == 1
    assert limits_for(_wallet(account_type=AccountType.PAID, plan_type=PlanType.ELITE), table).max_daily is None


def test_next_reset_is_next_utc_midnight():
    assert next_reset(datetime(2026, 12, 31, 23, 59)) == datetime(2027, 1, 1)


@pytest.fixture
def limited_ledger(db, clock, make_settings):
    from creditcore.services.wallets import WalletLedger
    limits = {
        "trial": PlanLimits(max_daily=3, cooldown_minutes=2),
        "basic": PlanLimits(max_daily=20),
        "pro": PlanLimits(max_daily=30),
        "elite": PlanLimits(),
    }
    return WalletLedger(settings=make_settings(usage_limits=limits), clock=clock)


@pytest.mark.asyncio
async def test_ledger_cooldown_leaves_balance(limited_ledger, clock):
    await limited_ledger.initialize_wallet("u1", "u1@example.com")
    await limited_ledger.credit_points("u1", 100, "seed")
    await limited_ledger.deduct_points("u1", 10, "x", "order-a")
    clock.advance(seconds=30)
    with pytest.raises(CooldownError):
        await limited_ledger.deduct_points("u1", 10, "x", "order-b")
    assert await limited_ledger.get_balance("u1") == 90
    clock.advance(minutes=2)
    await limited_ledger.deduct_points("u1", 10, "x", "order-b")
    assert await limited_ledger.get_balance("u1") == 80


@pytest.mark.asyncio
async def test_ledger_daily_limit_and_reset(limited_ledger, clock):
    await limited_ledger.initialize_wallet("u1", "u1@example.com")
    await limited_ledger.credit_points("u1", 100, "seed")
    await limited_ledger.deduct_points("u1", 5, "x", "order-a", count=3)
    clock.advance(minutes=5)
    with pytest.raises(DailyLimitError) as exc:
        await limited_ledger.deduct_points("u1", 5, "x", "order-b")
    assert exc.value.used == 3
    wallet = await limited_ledger.get_profile("u1")
    assert wallet.balance == 95
    assert wallet.daily_usage_count == 3
    clock.advance(days=1)
    await limited_ledger.deduct_points("u1", 5, "x", "order-b")
    wallet = await limited_ledger.get_profile("u1")
    assert wallet.daily_usage_count == 1
    assert wallet.balance == 90


@pytest.mark.asyncio
async def test_insufficient_funds_reported_before_policy(limited_ledger, clock):
    from creditcore.core.exceptions import InsufficientFundsError
    await limited_ledger.initialize_wallet("u1", "u1@example.com")
    await limited_ledger.credit_points("u1", 10, "seed")
    await limited_ledger.deduct_points("u1", 5, "x", "order-a")
    with pytest.raises(InsufficientFundsError):
        await limited_ledger.deduct_points("u1", 50, "x", "order-b")
