from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import Column, JSON
from typing import Optional, TYPE_CHECKING
from decimal import Decimal

if TYPE_CHECKING:
    from app.models.order import Order


class OrderItem(SQLModel, table=True):
    __tablename__ = "order_items"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: str = Field(foreign_key="orders.id", index=True)
    menu_item_id: str

    # snapshots, unaffected by later menu edits
    item_name: str
    unit_price: Decimal = Field(max_digits=12, decimal_places=2)
    quantity: int
    total_price: Decimal = Field(max_digits=12, decimal_places=2)

    customizations: dict = Field(default_factory=dict, sa_column=Column(JSON))
    special_instructions: str = Field(default="")

    order: Optional["Order"] = Relationship(back_populates="items")
