import logging
import secrets
import string
import time
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional
from uuid import uuid4

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from app.constants.order_status import OrderStatus, PaymentStatus, can_transition
from app.database import transaction_scope, use_session
from app.exceptions import InvalidTransition, NotFound
from app.models.base import utcnow
from app.models.order import Order
from app.models.order_item import OrderItem
from app.models.order_tracking import OrderTracking
from app.schemas.orders_schemas import (
    CartItemIn,
    DeliveryAddress,
    OrderItemRead,
    OrderRead,
    TrackingRead,
)
from app.services.fee_calculator import line_total, money, to_decimal
from app.utils.pagination import paginate

logger = logging.getLogger(__name__)

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number() -> str:
    """ORD + last 8 digits of the ms timestamp + 4 random chars (15 chars)."""
    timestamp = str(int(time.time() * 1000))[-8:]
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(4))
    return f"ORD{timestamp}{suffix}"


def encode_address(address) -> dict:
    if address is None:
        return {}
    if isinstance(address, dict):
        address = DeliveryAddress.model_validate(address)
    return address.model_dump(mode="json")


def decode_address(raw: Optional[dict]) -> DeliveryAddress:
    return DeliveryAddress.model_validate(raw or {})


def to_order_read(order: Order) -> OrderRead:
    data = order.model_dump()
    data["delivery_address"] = decode_address(order.delivery_address)
    data["items"] = [OrderItemRead.model_validate(item) for item in order.items]
    data["tracking"] = [
        TrackingRead.model_validate(entry)
        for entry in sorted(order.tracking, key=lambda entry: entry.created_at)
    ]
    return OrderRead.model_validate(data)


class OrderStore:
    """Orders, their line items and status history.

    Every write accepts an optional ``session`` so the coordinator can run
    several of them inside one ``transaction()``.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with transaction_scope(self.engine) as session:
            yield session

    # ---------- writes ----------

    def create_order(self, order_data: dict, session: Optional[Session] = None) -> OrderRead:
        data = dict(order_data)
        address = encode_address(data.pop("delivery_address", None))

        with use_session(self.engine, session, write=True) as s:
            order = Order(
                **data,
                order_number=generate_order_number(),
                delivery_address=address,
                status=OrderStatus.PENDING.value,
                payment_status=PaymentStatus.PENDING.value,
            )
            order.tracking.append(OrderTracking(status=OrderStatus.PENDING.value, note="Order created"))
            s.add(order)
            s.flush()

            logger.info(f"Order {order.order_number} ({order.id}) created as pending")
            return to_order_read(order)

    def add_order_items(
        self, order_id: str, items: Iterable[CartItemIn], session: Optional[Session] = None
    ) -> List[OrderItemRead]:
        with use_session(self.engine, session, write=True) as s:
            order = s.get(Order, order_id)
            if not order:
                raise NotFound("Order not found", {"order_id": order_id})

            rows = []
            for item in items:
                row = OrderItem(
                    order_id=order_id,
                    menu_item_id=item.menu_item_id or f"item_{uuid4().hex[:8]}",
                    item_name=item.name,
                    quantity=item.quantity,
                    unit_price=money(to_decimal(item.unit_price, "unit_price")),
                    total_price=line_total(item.quantity, item.unit_price),
                    customizations=dict(item.customizations or {}),
                    special_instructions=item.special_instructions or "",
                )
                order.items.append(row)
                rows.append(row)
            s.flush()
            return [OrderItemRead.model_validate(row) for row in rows]

    def update_status(
        self,
        order_id: str,
        status,
        note: Optional[str] = None,
        session: Optional[Session] = None,
        created_by: str = "system",
        meta: Optional[dict] = None,
    ) -> OrderRead:
        """Move an order along a legal edge and append a history entry.

        Re-applying the current status is a no-op: no second history row.
        """
        status = OrderStatus(status)
        with use_session(self.engine, session, write=True) as s:
            order = s.get(Order, order_id, with_for_update=True)
            if not order:
                raise NotFound("Order not found", {"order_id": order_id})

            if order.status == status.value:
                return to_order_read(order)

            if not can_transition(order.status, status):
                raise InvalidTransition(
                    f"Order cannot move from '{order.status}' to '{status.value}'",
                    {"order_id": order_id, "current_status": order.status, "requested_status": status.value},
                )

            order.status = status.value
            order.updated_at = utcnow()
            if status == OrderStatus.CANCELLED:
                order.cancelled_at = order.updated_at
                order.cancel_reason = note
            order.tracking.append(
                OrderTracking(status=status.value, note=note, meta=meta, created_by=created_by)
            )
            s.add(order)
            s.flush()

            logger.info(f"Order {order_id} -> {status.value}")
            return to_order_read(order)

    def update_payment(
        self,
        order_id: str,
        payment_status,
        payment_id: Optional[str] = None,
        refund_id: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> OrderRead:
        with use_session(self.engine, session, write=True) as s:
            order = s.get(Order, order_id, with_for_update=True)
            if not order:
                raise NotFound("Order not found", {"order_id": order_id})

            order.payment_status = PaymentStatus(payment_status).value
            if payment_id is not None:
                order.payment_id = payment_id
            if refund_id is not None:
                order.refund_id = refund_id
            order.updated_at = utcnow()
            s.add(order)
            s.flush()
            return to_order_read(order)

    # ---------- reads ----------

    def get_by_id(
        self, order_id: str, session: Optional[Session] = None, lock: bool = False
    ) -> Optional[OrderRead]:
        with use_session(self.engine, session) as s:
            order = s.get(Order, order_id, with_for_update=lock)
            return to_order_read(order) if order else None

    def list_by_user(self, user_id: str, page: int = 1, limit: int = 10, status: Optional[str] = None) -> dict:
        query = select(Order).where(Order.user_id == user_id)
        if status:
            query = query.where(Order.status == status)
        return self._page(query, page, limit)

    def find_by_status(self, status: str, page: int = 1, limit: int = 100) -> dict:
        return self._page(select(Order).where(Order.status == OrderStatus(status).value), page, limit)

    def _page(self, query, page: int, limit: int) -> dict:
        query = query.order_by(Order.created_at.desc())

        with Session(self.engine) as s:
            return paginate(session=s, query=query, page=page, limit=limit, transform=to_order_read)
