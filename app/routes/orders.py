from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlalchemy.engine import Engine

from app.config import settings
from app.constants.order_status import OrderStatus
from app.database import get_engine
from app.dependencies.admin import require_admin, require_roles
from app.exceptions import Forbidden, NotFound
from app.schemas.orders_schemas import (
    CancelOrderRequest,
    CancelOrderResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    OrderRead,
    RefundOutcome,
    RefundRequest,
    StatusUpdateRequest,
)
from app.services.order_payment_coordinator import OrderPaymentCoordinator
from app.services.order_store import OrderStore
from app.services.payment_store import PaymentStore
from app.utils.token import Principal, get_current_principal

router = APIRouter()


def get_order_store(engine: Engine = Depends(get_engine)) -> OrderStore:
    return OrderStore(engine)


def get_payment_store(engine: Engine = Depends(get_engine)) -> PaymentStore:
    return PaymentStore(engine)


def get_coordinator(
    background_tasks: BackgroundTasks,
    order_store: OrderStore = Depends(get_order_store),
    payment_store: PaymentStore = Depends(get_payment_store),
) -> OrderPaymentCoordinator:
    return OrderPaymentCoordinator(
        order_store,
        payment_store,
        settings=settings,
        schedule=background_tasks.add_task,
    )


def _readable_order(order_store: OrderStore, order_id: str, principal: Principal) -> OrderRead:
    order = order_store.get_by_id(order_id)
    if not order:
        raise NotFound("Order not found", {"order_id": order_id})
    if order.user_id != principal.user_id and not principal.is_admin:
        raise Forbidden("You can only view your own orders", {"order_id": order_id})
    return order


# ---------- checkout ----------

@router.post("", response_model=CreateOrderResponse, status_code=status.HTTP_201_CREATED)
def create_order(
    data: CreateOrderRequest,
    principal: Principal = Depends(get_current_principal),
    coordinator: OrderPaymentCoordinator = Depends(get_coordinator),
):
    return coordinator.create_order_with_payment(data.cart_data, data.payment_method, principal.user_id)


@router.post("/{order_id}/cancel", response_model=CancelOrderResponse)
def cancel_order(
    order_id: str,
    data: Optional[CancelOrderRequest] = None,
    principal: Principal = Depends(get_current_principal),
    coordinator: OrderPaymentCoordinator = Depends(get_coordinator),
):
    reason = data.reason if data else None
    return coordinator.cancel_order(order_id, reason, principal.user_id)


# ---------- reads ----------

@router.get("")
def list_orders(
    user_id: Optional[str] = Query(None, alias="userId"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    order_status: Optional[OrderStatus] = Query(None, alias="status"),
    principal: Principal = Depends(get_current_principal),
    order_store: OrderStore = Depends(get_order_store),
):
    user_id = user_id or principal.user_id
    if user_id != principal.user_id and not principal.is_admin:
        raise HTTPException(403, "You can only list your own orders")

    return order_store.list_by_user(user_id, page=page, limit=limit, status=order_status.value if order_status else None)


@router.get("/status/{order_status}")
def orders_by_status(
    order_status: OrderStatus,
    page: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=500),
    admin: Principal = Depends(require_admin),
    order_store: OrderStore = Depends(get_order_store),
):
    return order_store.find_by_status(order_status.value, page=page, limit=limit)


@router.get("/{order_id}", response_model=OrderRead)
def get_order(
    order_id: str,
    principal: Principal = Depends(get_current_principal),
    order_store: OrderStore = Depends(get_order_store),
):
    return _readable_order(order_store, order_id, principal)


@router.get("/{order_id}/transactions")
def order_transactions(
    order_id: str,
    principal: Principal = Depends(get_current_principal),
    order_store: OrderStore = Depends(get_order_store),
    payment_store: PaymentStore = Depends(get_payment_store),
):
    _readable_order(order_store, order_id, principal)
    return {"order_id": order_id, "transactions": payment_store.get_transactions_by_order(order_id)}


# ---------- back office ----------

@router.put("/{order_id}/status", response_model=OrderRead)
def update_order_status(
    order_id: str,
    data: StatusUpdateRequest,
    principal: Principal = Depends(require_roles("admin", "merchant")),
    coordinator: OrderPaymentCoordinator = Depends(get_coordinator),
):
    return coordinator.advance_status(
        order_id,
        data.status,
        note=data.note,
        actor=f"{principal.role}:{principal.user_id}",
        merchant_id=None if principal.is_admin else principal.user_id,
    )


@router.post("/{order_id}/refund", response_model=RefundOutcome)
def refund_order(
    order_id: str,
    data: Optional[RefundRequest] = None,
    admin: Principal = Depends(require_admin),
    coordinator: OrderPaymentCoordinator = Depends(get_coordinator),
):
    data = data or RefundRequest()
    return coordinator.process_refund(order_id, amount=data.amount, reason=data.reason)
