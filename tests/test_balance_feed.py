"""Balance subscriptions: fan-out, teardown, resilience."""

import pytest

from creditcore.services.balance_feed import BalanceHub, ChangeStreamRelay

pytestmark = pytest.mark.asyncio


async def test_publish_fans_out_to_user_only():
    hub = BalanceHub()
    seen_a, seen_b = [], []
    hub.subscribe("a", seen_a.append)
    hub.subscribe("b", seen_b.append)
    await hub.publish("a", 10)
    assert seen_a == [10]
    assert seen_b == []


async def test_unchanged_balance_not_redelivered():
    hub = BalanceHub()
    seen = []
    hub.subscribe("a", seen.append)
    await hub.publish("a", 10)
    await hub.publish("a", 10)
    await hub.publish("a", 7)
    assert seen == [10, 7]


async def test_close_stops_delivery():
    hub = BalanceHub()
    seen = []
    with hub.subscribe("a", seen.append) as sub:
        await hub.publish("a", 1)
    await hub.publish("a", 2)
    sub.close()
    assert seen == [1]
    assert hub.subscriber_count("a") == 0


async def test_failing_handler_keeps_subscription():
    hub = BalanceHub()
    calls = []

    def broken(balance):
        calls.append(balance)
        raise RuntimeError("render failed")

    hub.subscribe("a", broken)
    await hub.publish("a", 1)
    await hub.publish("a", 2)
    assert calls == [1, 2]
    assert hub.subscriber_count("a") == 1


async def test_async_handler():
    hub = BalanceHub()
    seen = []

    async def handler(balance):
        seen.append(balance)

    hub.subscribe("a", handler)
    await hub.publish("a", 3)
    assert seen == [3]


async def test_ledger_notifies_subscribers(ledger, funded_wallet):
    await funded_wallet("u1", 50)
    seen = []
    sub = await ledger.subscribe_to_balance("u1", seen.append)
    await ledger.deduct_points("u1", 30, "x", "order-a")
    await ledger.credit_points("u1", 5, "bonus")
    sub.close()
    await ledger.deduct_points("u1", 5, "x", "order-b")
    assert seen == [50, 20, 25]


async def test_other_tab_sees_spend(ledger, funded_wallet):
    await funded_wallet("u1", 50)
    tab_one, tab_two = [], []
    await ledger.subscribe_to_balance("u1", tab_one.append)
    await ledger.subscribe_to_balance("u1", tab_two.append)
    await ledger.deduct_points("u1", 10, "x", "order-a")
    assert tab_one == [50, 40]
    assert tab_two == [50, 40]


async def test_failed_deduction_does_not_notify(ledger, funded_wallet):
    from creditcore.core.exceptions import InsufficientFundsError
    await funded_wallet("u1", 5)
    seen = []
    await ledger.subscribe_to_balance("u1", seen.append)
    with pytest.raises(InsufficientFundsError):
        await ledger.deduct_points("u1", 10, "x", "order-a")
    assert seen == [5]


async def test_change_stream_dispatch_publishes():
    hub = BalanceHub()
    relay = ChangeStreamRelay(hub)
    seen = []
    hub.subscribe("u1", seen.append)
    await relay.dispatch({"operationType": "update", "fullDocument": {"user_id": "u1", "balance": 42}})
    await relay.dispatch({"operationType": "delete"})
    assert seen == [42]


async def test_subscription_released_when_store_unreachable(ledger, monkeypatch):
    from pymongo.errors import ServerSelectionTimeoutError

    from creditcore.core.exceptions import StorageUnavailableError
    from creditcore.models.wallet import Wallet

    def down(cls, *args, **kwargs):
        raise ServerSelectionTimeoutError("no servers")

    monkeypatch.setattr(Wallet, "find_one", classmethod(down))
    with pytest.raises(StorageUnavailableError):
        await ledger.subscribe_to_balance("u1", lambda balance: None)
    assert ledger.hub.subscriber_count("u1") == 0
