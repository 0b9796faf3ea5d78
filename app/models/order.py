from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import Column, JSON
from typing import List, Optional, TYPE_CHECKING
from datetime import datetime
from decimal import Decimal

from app.constants.order_status import OrderStatus, PaymentStatus
from app.models.base import ZERO, new_id, utcnow

if TYPE_CHECKING:
    from app.models.order_item import OrderItem
    from app.models.order_tracking import OrderTracking


class Order(SQLModel, table=True):
    __tablename__ = "orders"

    id: str = Field(default_factory=new_id, primary_key=True)
    order_number: str = Field(max_length=20, unique=True, index=True)

    user_id: str = Field(index=True)
    merchant_id: str = Field(index=True)
    cart_id: Optional[str] = None

    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    merchant_name: Optional[str] = None
    notes: Optional[str] = None

    subtotal: Decimal = Field(max_digits=12, decimal_places=2)
    tax_amount: Decimal = Field(default=ZERO, max_digits=12, decimal_places=2)
    delivery_fee: Decimal = Field(default=ZERO, max_digits=12, decimal_places=2)
    discount_amount: Decimal = Field(default=ZERO, max_digits=12, decimal_places=2)
    processing_fee: Decimal = Field(default=ZERO, max_digits=12, decimal_places=2)
    total_amount: Decimal = Field(max_digits=12, decimal_places=2)

    currency_code: str = Field(max_length=3)
    country_code: str = Field(max_length=2)

    # encoded DeliveryAddress, see OrderStore
    delivery_address: dict = Field(default_factory=dict, sa_column=Column(JSON))

    status: str = Field(default=OrderStatus.PENDING.value, index=True)

    payment_id: Optional[str] = None
    payment_status: str = Field(default=PaymentStatus.PENDING.value)
    refund_id: Optional[str] = None

    cancel_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    items: List["OrderItem"] = Relationship(back_populates="order")
    tracking: List["OrderTracking"] = Relationship(
        back_populates="order",
        sa_relationship_kwargs={"order_by": "OrderTracking.created_at"},
    )
