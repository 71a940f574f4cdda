"""Pydantic schemas for the orders API.

Request schemas validate incoming JSON before anything reaches the domain
layer; read schemas shape domain objects into response bodies.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator

from .domain import OrderSnapshot, OrderStatus

MAX_LINES = 50


class CartLineIn(BaseModel):
    """A single cart line.

    Attributes:
        item_id: Item UUID.
        quantity: Positive number of units requested.
    """

    item_id: UUID
    quantity: int = Field(gt=0, le=99)


class CheckoutDTO(BaseModel):
    """Schema for starting a checkout.

    Attributes:
        shop_id: Shop the cart belongs to.
        lines: Cart lines; repeated items are merged by the coordinator.
        pickup_time: Optional requested pickup time (timezone-aware).
    """

    shop_id: UUID
    lines: list[CartLineIn] = Field(max_length=MAX_LINES)
    pickup_time: Optional[datetime] = None

    @field_validator("pickup_time")
    @classmethod
    def validate_pickup_time(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            raise ValueError("pickup_time must include a timezone")
        return v


class TransitionDTO(BaseModel):
    status: OrderStatus
    note: str = Field(default="", max_length=500)


class OnboardDTO(BaseModel):
    email: str = Field(min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+$")
    refresh_url: HttpUrl
    return_url: str = Field(min_length=1, max_length=500)


class OrderLineOut(BaseModel):
    item_id: str
    name: str
    unit_price: Decimal
    quantity: int


class OrderReadDTO(BaseModel):
    """Read schema for a single order (detail, history and queue views)."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    shop_id: str
    customer_id: str
    status: OrderStatus
    total: Decimal
    currency: str
    pickup_time: Optional[datetime] = None
    lines: list[OrderLineOut]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_snapshot(cls, snap: OrderSnapshot) -> "OrderReadDTO":
        return cls(
            id=snap.order_id,
            shop_id=snap.shop_id,
            customer_id=snap.customer_id,
            status=snap.status,
            total=snap.total,
            currency=snap.currency,
            pickup_time=snap.pickup_time,
            lines=[OrderLineOut(**vars(line)) for line in snap.lines],
            created_at=snap.created_at,
            updated_at=snap.updated_at,
        )


class CheckoutReadDTO(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    order_id: str
    status: OrderStatus
    authorization_id: str
    client_secret: Optional[str] = None
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    currency: str
    amount_minor: int
    expires_at: datetime
