from datetime import datetime
from typing import Optional, TYPE_CHECKING

from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import Column, JSON

from app.models.base import new_id, utcnow

if TYPE_CHECKING:
    from app.models.order import Order


class OrderTracking(SQLModel, table=True):
    """Append-only status history of an order."""

    __tablename__ = "order_tracking"
    id: str = Field(default_factory=new_id, primary_key=True)

    order_id: str = Field(foreign_key="orders.id", index=True)
    status: str = Field(index=True)

    note: Optional[str] = None
    meta: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=utcnow)
    created_by: str = Field(default="system")

    order: Optional["Order"] = Relationship(back_populates="tracking")
