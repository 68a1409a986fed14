"""Order tracker lifecycle."""

from datetime import timedelta

import pytest

from creditcore.core.exceptions import BadRequestError, InvalidOrderTransitionError, NotFoundError
from creditcore.models.order import OrderStatus

pytestmark = pytest.mark.asyncio


async def test_create_order_is_pending(tracker, clock):
    order_id = await tracker.create_order("u1", "social-media", {"description": "post", "count": 1}, 30)
    order = await tracker.get_order_by_id(order_id)
    assert order.status == OrderStatus.PENDING
    assert order.cost == 30
    assert order.input_data == {"description": "post", "count": 1}
    assert order.created_at == clock.now
    assert order.updated_at == clock.now


async def test_complete_order_keeps_output(tracker, clock):
    order_id = await tracker.create_order("u1", "ad-creative", {}, 30)
    clock.advance(seconds=3)
    await tracker.update_order_status(order_id, OrderStatus.COMPLETED, {"resultCode": "SUCCESS"})
    order = await tracker.get_order_by_id(order_id)
    assert order.status == OrderStatus.COMPLETED
    assert order.output_data == {"resultCode": "SUCCESS"}
    assert order.cost == 30
    assert order.updated_at > order.created_at


async def test_failed_order_records_error(tracker):
    order_id = await tracker.create_order("u1", "landing-page", {}, 10)
    updated = await tracker.update_order_status(order_id, "failed", error_message="Insufficient points")
    assert updated.status == OrderStatus.FAILED
    assert updated.error_message == "Insufficient points"


async def test_terminal_order_cannot_transition_again(tracker):
    order_id = await tracker.create_order("u1", "ad-creative", {}, 10)
    await tracker.update_order_status(order_id, OrderStatus.FAILED, error_message="boom")
    with pytest.raises(InvalidOrderTransitionError) as exc:
        await tracker.update_order_status(order_id, OrderStatus.COMPLETED, {"resultCode": "SUCCESS"})
    assert exc.value.details["status"] == "failed"
    order = await tracker.get_order_by_id(order_id)
    assert order.status == OrderStatus.FAILED


async def test_pending_is_not_a_target(tracker):
    order_id = await tracker.create_order("u1", "ad-creative", {}, 10)
    with pytest.raises(BadRequestError):
        await tracker.update_order_status(order_id, OrderStatus.PENDING)


async def test_unknown_orders(tracker):
    with pytest.raises(NotFoundError):
        await tracker.get_order_by_id("not-an-object-id")
    with pytest.raises(NotFoundError):
        await tracker.get_order_by_id("65f0c0ffee0000000000beef")
    with pytest.raises(NotFoundError):
        await tracker.update_order_status("65f0c0ffee0000000000beef", OrderStatus.COMPLETED)


async def test_negative_cost_rejected(tracker):
    with pytest.raises(BadRequestError):
        await tracker.create_order("u1", "ad-creative", {}, -1)


async def test_user_orders_newest_first(tracker, clock):
    ids = []
    for tool in ("social-media", "ad-creative", "landing-page"):
        ids.append(await tracker.create_order("u1", tool, {}, 5))
        clock.advance(seconds=1)
    await tracker.create_order("u2", "ad-creative", {}, 5)
    orders = await tracker.get_user_orders("u1")
    assert [str(o.id) for o in orders] == list(reversed(ids))
    page = await tracker.get_user_orders("u1", limit=1, offset=1)
    assert [str(o.id) for o in page] == [ids[1]]


async def test_find_stale_pending(tracker, clock):
    old_id = await tracker.create_order("u1", "ad-creative", {}, 5)
    done_id = await tracker.create_order("u1", "ad-creative", {}, 5)
    await tracker.update_order_status(done_id, OrderStatus.COMPLETED)
    clock.advance(minutes=30)
    await tracker.create_order("u1", "ad-creative", {}, 5)
    stale = await tracker.find_stale_pending(clock.now - timedelta(minutes=15))
    assert [str(o.id) for o in stale] == [old_id]


async def test_get_all_orders_across_users(tracker, clock):
    await tracker.create_order("u1", "ad-creative", {}, 5)
    clock.advance(seconds=1)
    second = await tracker.create_order("u2", "landing-page", {}, 10)
    await tracker.update_order_status(second, OrderStatus.FAILED, None, "boom")
    assert [o.user_id for o in await tracker.get_all_orders()] == ["u2", "u1"]
    assert [o.user_id for o in await tracker.get_all_orders(status=OrderStatus.PENDING)] == ["u1"]
