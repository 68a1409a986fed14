"""
Balance change channel.

`BalanceHub` is an explicit observer registry keyed by user id. The ledger
publishes every balance it writes; `ChangeStreamRelay` additionally feeds
balances written by other processes (via a MongoDB change stream on the
wallets collection). Subscriptions are owned resources: close them.
"""

import asyncio
import inspect
import itertools
from typing import Any, Awaitable, Callable, Union

from pymongo.errors import PyMongoError

from creditcore.core.logging import get_logger
from creditcore.models.wallet import Wallet

log = get_logger(__name__)

BalanceHandler = Callable[[int], Union[None, Awaitable[None]]]


class BalanceSubscription:
    """Handle returned by BalanceHub.subscribe. Only changed values are delivered."""

    def __init__(self, hub: "BalanceHub", key: int, user_id: str, handler: BalanceHandler):
        self._hub = hub
        self._key = key
        self.user_id = user_id
        self.handler = handler
        self.last_balance: int | None = None
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._hub._remove(self)

    def __enter__(self) -> "BalanceSubscription":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class BalanceHub:
    def __init__(self) -> None:
        self._subscribers: dict[str, dict[int, BalanceSubscription]] = {}
        self._keys = itertools.count()

    def subscribe(self, user_id: str, handler: BalanceHandler) -> BalanceSubscription:
        sub = BalanceSubscription(self, next(self._keys), user_id, handler)
        self._subscribers.setdefault(user_id, {})[sub._key] = sub
        log.debug("balance_subscribed", user_id=user_id, subscribers=len(self._subscribers[user_id]))
        return sub

    def _remove(self, sub: BalanceSubscription) -> None:
        subs = self._subscribers.get(sub.user_id)
        if not subs:
            return
        subs.pop(sub._key, None)
        if not subs:
            del self._subscribers[sub.user_id]

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscribers.get(user_id, {}))

    async def publish(self, user_id: str, balance: int) -> None:
        """Fan out a balance to every open subscription of user_id."""
        for sub in list(self._subscribers.get(user_id, {}).values()):
            await self.deliver(sub, balance)

    async def deliver(self, sub: BalanceSubscription, balance: int) -> None:
        if sub.closed or sub.last_balance == balance:
            return
        sub.last_balance = balance
        try:
            result = sub.handler(balance)
            if inspect.isawaitable(result):
                await result
        except Exception:
            # A failing observer must not tear down the subscription.
            log.exception("balance_delivery_failed", user_id=sub.user_id, balance=balance)


class ChangeStreamRelay:
    """Publish wallet balances from a MongoDB change stream into a BalanceHub."""

    def __init__(self, hub: BalanceHub) -> None:
        self.hub = hub
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        pipeline = [{"$match": {"operationType": {"$in": ["insert", "update", "replace"]}}}]
        try:
            async with Wallet.get_motor_collection().watch(pipeline, full_document="updateLookup") as stream:
                log.info("balance_change_stream_started")
                async for change in stream:
                    await self.dispatch(change)
        except PyMongoError as e:
            # Standalone servers have no change streams; in-process publishing still works.
            log.warning("balance_change_stream_unavailable", reason=str(e))

    async def dispatch(self, change: dict[str, Any]) -> None:
        doc = change.get("fullDocument") or {}
        user_id = doc.get("user_id")
        balance = doc.get("balance")
        if user_id is None or balance is None:
            return
        await self.hub.publish(user_id, int(balance))
