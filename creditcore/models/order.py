from datetime import datetime
from enum import Enum
from typing import Any

from beanie import Document
from pydantic import Field


class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (OrderStatus.COMPLETED, OrderStatus.FAILED)


class Order(Document):
    """One generation attempt. `cost` is fixed at creation."""
    user_id: str
    tool_type: str  # social-media, ad-creative, landing-page, ...
    status: OrderStatus = OrderStatus.PENDING
    input_data: dict[str, Any] = Field(default_factory=dict)
    output_data: dict[str, Any] | None = None
    cost: int
    error_message: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "orders"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("status", 1), ("created_at", 1)],
        ]
