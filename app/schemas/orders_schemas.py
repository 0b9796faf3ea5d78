from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Request bodies arrive camelCased from the gateway; snake_case also accepted."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------- REQUEST ----------

class DeliveryAddress(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    instructions: Optional[str] = None


class CartItemIn(CamelModel):
    menu_item_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("menuItemId", "menu_item_id", "productId"),
    )
    name: str = Field(validation_alias=AliasChoices("name", "itemName", "item_name"))
    quantity: int = Field(default=1, gt=0)
    unit_price: Decimal = Field(
        validation_alias=AliasChoices("price", "unitPrice", "unit_price"),
    )
    customizations: Dict[str, Any] = Field(default_factory=dict)
    special_instructions: str = ""


class CartData(CamelModel):
    merchant_id: str
    cart_id: Optional[str] = None
    items: List[CartItemIn] = Field(min_length=1)

    subtotal: Decimal
    tax_amount: Decimal = Decimal("0")
    delivery_fee: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")

    delivery_address: DeliveryAddress = Field(default_factory=DeliveryAddress)
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    merchant_name: Optional[str] = None

    country_code: str = Field(min_length=2, max_length=2)
    currency_code: Optional[str] = Field(default=None, min_length=3, max_length=3)
    notes: Optional[str] = None

    @field_validator("country_code", "currency_code")
    @classmethod
    def upper(cls, value):
        return value.upper() if value else value


class PaymentMethodIn(CamelModel):
    type: str
    fingerprint: Optional[str] = None
    token: Optional[str] = None
    brand: Optional[str] = None
    last_four: Optional[str] = None

    @property
    def reference(self) -> Optional[str]:
        return self.fingerprint or self.token

    @property
    def last_four_digits(self) -> Optional[str]:
        if self.last_four:
            return self.last_four
        ref = self.reference
        return ref[-4:] if ref else None

    def masked(self) -> Dict[str, Any]:
        """Safe to persist or echo: never the full fingerprint or token."""
        return {
            "type": self.type,
            "brand": self.brand,
            "last_four": self.last_four_digits,
        }


class CreateOrderRequest(CamelModel):
    cart_data: CartData
    payment_method: PaymentMethodIn


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = None  # full remaining amount when omitted
    reason: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: str
    note: Optional[str] = None


# ---------- RESPONSE ----------

class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    menu_item_id: str
    item_name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    customizations: Dict[str, Any] = Field(default_factory=dict)
    special_instructions: str = ""


class TrackingRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: str
    note: Optional[str] = None
    created_by: str
    created_at: datetime


class OrderRead(BaseModel):
    id: str
    order_number: str
    user_id: str
    merchant_id: str
    cart_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    merchant_name: Optional[str] = None
    notes: Optional[str] = None

    subtotal: Decimal
    tax_amount: Decimal
    delivery_fee: Decimal
    discount_amount: Decimal
    processing_fee: Decimal
    total_amount: Decimal
    currency_code: str
    country_code: str

    delivery_address: DeliveryAddress

    status: str
    payment_id: Optional[str] = None
    payment_status: str
    refund_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    items: List[OrderItemRead] = Field(default_factory=list)
    tracking: List[TrackingRead] = Field(default_factory=list)


class TransactionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    user_id: str
    transaction_type: str
    provider_transaction_id: Optional[str] = None
    status: str
    amount: Decimal
    currency: str
    country_code: Optional[str] = None
    fees: Decimal
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class RefundOutcome(BaseModel):
    success: bool
    amount: Decimal
    refund_id: Optional[str] = None
    transaction: Optional[TransactionRead] = None
    error: Optional[Dict[str, Any]] = None


class CreateOrderResponse(BaseModel):
    order: OrderRead
    payment: TransactionRead


class CancelOrderResponse(BaseModel):
    message: str
    order: OrderRead
    refund: Optional[RefundOutcome] = None
    refund_error: Optional[Dict[str, Any]] = None
