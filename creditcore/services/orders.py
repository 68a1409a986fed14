"""Order tracker: durable record of generation attempts and their status."""

from datetime import datetime
from typing import Any, Callable

from beanie import PydanticObjectId, UpdateResponse
from beanie.operators import Set

from creditcore.core.exceptions import BadRequestError, InvalidOrderTransitionError, NotFoundError
from creditcore.core.logging import get_logger
from creditcore.db.init import storage_guard
from creditcore.models.order import TERMINAL_STATUSES, Order, OrderStatus

log = get_logger(__name__)


def _parse_order_id(order_id: str) -> PydanticObjectId | None:
    if not PydanticObjectId.is_valid(order_id):
        return None
    return PydanticObjectId(order_id)


class OrderTracker:
    """
    Creates orders as `pending` and moves them once to `completed` or `failed`.
    Knows nothing about balances; affordability is the ledger's concern.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.utcnow):
        self.clock = clock

    @storage_guard
    async def create_order(
        self,
        user_id: str,
        tool_type: str,
        input_data: dict[str, Any] | None,
        cost: int,
    ) -> str:
        if cost < 0:
            raise BadRequestError("Order cost must be non-negative")
        now = self.clock()
        order = Order(
            user_id=user_id,
            tool_type=tool_type,
            status=OrderStatus.PENDING,
            input_data=input_data or {},
            cost=cost,
            created_at=now,
            updated_at=now,
        )
        await order.insert()
        log.info("order_created", order_id=str(order.id), user_id=user_id, tool_type=tool_type, cost=cost)
        return str(order.id)

    @storage_guard
    async def update_order_status(
        self,
        order_id: str,
        status: OrderStatus,
        output_data: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> Order:
        """
        Move a pending order to a terminal status. The update is conditioned on
        the order still being pending, so a second transition is refused.
        """
        status = OrderStatus(status)
        if status not in TERMINAL_STATUSES:
            raise BadRequestError(f"Cannot move an order to {status.value}")
        oid = _parse_order_id(order_id)
        if oid is None:
            raise NotFoundError("Order not found")
        fields: dict[Any, Any] = {Order.status: status, Order.updated_at: self.clock()}
        if output_data is not None:
            fields[Order.output_data] = output_data
        if error_message is not None:
            fields[Order.error_message] = error_message
        updated = await Order.find_one(
            Order.id == oid,
            Order.status == OrderStatus.PENDING,
        ).update(Set(fields), response_type=UpdateResponse.NEW_DOCUMENT)
        if updated is None:
            current = await Order.get(oid)
            if current is None:
                raise NotFoundError("Order not found")
            raise InvalidOrderTransitionError(order_id, current.status.value, status.value)
        log.info("order_status_updated", order_id=order_id, status=status.value)
        return updated

    @storage_guard
    async def get_user_orders(self, user_id: str, limit: int = 50, offset: int = 0) -> list[Order]:
        """Orders of user_id, newest first."""
        return (
            await Order.find(Order.user_id == user_id)
            .sort(-Order.created_at)
            .skip(offset)
            .limit(limit)
            .to_list()
        )

    @storage_guard
    async def get_order_by_id(self, order_id: str) -> Order:
        oid = _parse_order_id(order_id)
        order = await Order.get(oid) if oid is not None else None
        if order is None:
            raise NotFoundError("Order not found")
        return order

    @storage_guard
    async def find_stale_pending(self, older_than: datetime, limit: int = 200) -> list[Order]:
        """Pending orders created before `older_than`, oldest first."""
        return (
            await Order.find(
                Order.status == OrderStatus.PENDING,
                Order.created_at < older_than,
            )
            .sort(+Order.created_at)
            .limit(limit)
            .to_list()
        )

    @storage_guard
    async def get_all_orders(
        self,
        limit: int = 50,
        offset: int = 0,
        status: OrderStatus | None = None,
    ) -> list[Order]:
        """Orders of every user, newest first. Admin view."""
        query = Order.find(Order.status == OrderStatus(status)) if status is not None else Order.find_all()
        return await query.sort(-Order.created_at).skip(offset).limit(limit).to_list()
