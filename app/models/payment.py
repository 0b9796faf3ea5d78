from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON
from typing import Optional
from datetime import datetime
from decimal import Decimal

from app.constants.order_status import TransactionStatus, TransactionType
from app.models.base import ZERO, new_id, utcnow


class PaymentTransaction(SQLModel, table=True):
    # owned by the payment side, so no foreign key into orders: failed
    # charges are kept for audit under an order id that was never committed
    __tablename__ = "payment_transactions"

    id: str = Field(default_factory=new_id, primary_key=True)

    order_id: str = Field(index=True)
    user_id: str = Field(index=True)

    transaction_type: str = Field(default=TransactionType.PAYMENT.value)
    provider_transaction_id: Optional[str] = Field(default=None, index=True)
    status: str = Field(default=TransactionStatus.PENDING.value)  # pending | completed | failed | refunded

    amount: Decimal = Field(max_digits=12, decimal_places=2)
    currency: str = Field(max_length=3)
    country_code: Optional[str] = Field(default=None, max_length=2)
    fees: Decimal = Field(default=ZERO, max_digits=12, decimal_places=2)

    details: dict = Field(default_factory=dict, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
