"""Order creation, cancellation and refunds against a payment gateway.

Creation is a saga over one database transaction: the order and its items
are written (uncommitted), the gateway is charged, and only a successful
charge commits. Any failure rolls the whole scope back, so a crash or a
decline never leaves a visible order. Cancellation is committed first and
the refund attempted afterwards; a failed refund never un-cancels an order.
"""
import logging
import threading
from decimal import Decimal
from typing import Callable, Optional, Union

from app.config import Settings, settings as default_settings
from app.constants.order_status import (
    CANCELLABLE_STATUSES,
    FULFILMENT_STATUSES,
    REFUNDABLE_PAYMENT_STATUSES,
    OrderStatus,
    PaymentStatus,
    TransactionStatus,
    TransactionType,
    can_transition,
)
from app.exceptions import (
    Forbidden,
    GatewayUnavailable,
    InvalidState,
    InvalidTransition,
    NotFound,
    OrderCreationFailed,
    OrderServiceError,
    PaymentError,
    RefundExceedsOriginal,
    ValidationError,
    payment_error_for,
)
from app.notifications import OrderEvent, dispatch_order_event
from app.schemas.orders_schemas import (
    CancelOrderResponse,
    CartData,
    CreateOrderResponse,
    OrderRead,
    PaymentMethodIn,
    RefundOutcome,
)
from app.services.fee_calculator import compute_total, line_total, money, to_decimal
from app.services.order_store import OrderStore
from app.services.payment_gateway import (
    ChargeResult,
    GatewayKind,
    GatewayRoute,
    PaymentGateway,
    RefundResult,
    build_gateway,
    call_with_timeout,
    resolve_gateway,
    select_gateway,
)
from app.services.payment_store import PaymentStore

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[Union[GatewayRoute, GatewayKind]], PaymentGateway]


def run_in_background(fn, **kwargs):
    threading.Thread(target=fn, kwargs=kwargs, daemon=True).start()


class OrderPaymentCoordinator:
    def __init__(
        self,
        order_store: OrderStore,
        payment_store: PaymentStore,
        settings: Settings = default_settings,
        gateway_factory: Optional[GatewayFactory] = None,
        schedule: Optional[Callable] = None,
    ):
        self.order_store = order_store
        self.payment_store = payment_store
        self.settings = settings
        self._gateway_factory = gateway_factory
        # fire-and-forget hook; routes pass BackgroundTasks.add_task
        self._schedule = schedule or run_in_background

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------

    def create_order_with_payment(
        self, cart_data: CartData, payment_method: PaymentMethodIn, user_id: str
    ) -> CreateOrderResponse:
        logger.info(f"Creating order with payment for user {user_id}")

        breakdown = self._price(cart_data)
        currency = cart_data.currency_code or breakdown.currency

        route = select_gateway(self.settings.env, cart_data.country_code, payment_method.type)
        gateway = self._gateway_for(route)

        validation = call_with_timeout(gateway.validate_method, self.settings.gateway_timeout_seconds, payment_method)
        if not validation.valid:
            raise ValidationError(
                validation.reason or "Payment method is not valid",
                {"payment_method": payment_method.masked()},
            )

        order_id = None
        try:
            with self.order_store.transaction() as session:
                try:
                    order = self.order_store.create_order(
                        {
                            "user_id": user_id,
                            "merchant_id": cart_data.merchant_id,
                            "cart_id": cart_data.cart_id,
                            "customer_name": cart_data.customer_name,
                            "customer_email": cart_data.customer_email,
                            "merchant_name": cart_data.merchant_name,
                            "notes": cart_data.notes,
                            "subtotal": money(to_decimal(cart_data.subtotal)),
                            "tax_amount": money(to_decimal(cart_data.tax_amount)),
                            "delivery_fee": money(to_decimal(cart_data.delivery_fee)),
                            "discount_amount": money(to_decimal(cart_data.discount_amount)),
                            "processing_fee": breakdown.processing_fee,
                            "total_amount": breakdown.total_amount,
                            "currency_code": currency,
                            "country_code": cart_data.country_code,
                            "delivery_address": cart_data.delivery_address,
                        },
                        session=session,
                    )
                    order_id = order.id
                    self.order_store.add_order_items(order.id, cart_data.items, session=session)
                except Exception as exc:
                    raise OrderCreationFailed("Failed to create order", cause=exc) from exc

                self._check_chargeable(order, currency)

                pending = self.payment_store.create_transaction(
                    {
                        "order_id": order.id,
                        "user_id": user_id,
                        "transaction_type": TransactionType.PAYMENT.value,
                        "status": TransactionStatus.PENDING.value,
                        "amount": order.total_amount,
                        "currency": currency,
                        "country_code": order.country_code,
                        "details": {
                            "gateway": gateway.kind.value,
                            "payment_method": payment_method.masked(),
                        },
                    },
                    session=session,
                )

                # the order exists, uncommitted, before money moves
                logger.info(f"Charging {order.total_amount} {currency} for order {order.id} via {gateway.kind.value}")
                charge = self._charge(gateway, order.total_amount, currency, payment_method)

                if not charge.success:
                    raise payment_error_for(
                        charge.failure_code,
                        charge.failure_reason or "Payment processing failed",
                        {"gateway": gateway.kind.value, "reason": charge.failure_code},
                    )

                payment = self.payment_store.update_transaction_status(
                    pending.id,
                    TransactionStatus.COMPLETED,
                    provider_transaction_id=charge.provider_tx_id,
                    fees=charge.fees,
                    details={"gateway_response": charge.raw},
                    session=session,
                )
                self.order_store.update_status(order.id, OrderStatus.CONFIRMED, note="Payment received", session=session)
                confirmed = self.order_store.update_payment(
                    order.id, PaymentStatus.PAID, payment_id=payment.id, session=session
                )
        except (PaymentError, GatewayUnavailable) as exc:
            logger.warning(f"Payment failed for order {order_id}: {exc.code} {exc.message}")
            if order_id:
                self._record_failed_charge(order_id, user_id, breakdown.total_amount, currency, cart_data,
                                           gateway, payment_method, exc)
            raise
        except OrderServiceError:
            raise
        except Exception as exc:
            logger.exception(f"Order creation failed for user {user_id}")
            raise OrderCreationFailed("Order creation failed", cause=exc) from exc

        logger.info(f"Order {confirmed.id} confirmed with payment {payment.id}")

        self._notify(OrderEvent.NEW_ORDER, confirmed)
        self._notify(OrderEvent.ORDER_CONFIRMED, confirmed)

        return CreateOrderResponse(order=confirmed, payment=payment)

    def _price(self, cart_data: CartData):
        for item in cart_data.items:
            line_total(item.quantity, item.unit_price)

        breakdown = compute_total(
            cart_data.subtotal,
            cart_data.tax_amount,
            cart_data.delivery_fee,
            cart_data.discount_amount,
            cart_data.country_code,
        )
        if to_decimal(cart_data.subtotal) <= 0:
            raise ValidationError("Valid subtotal is required", {"field": "subtotal"})
        if breakdown.total_amount <= 0:
            raise ValidationError("Discount cannot exceed the order amount", {"field": "discount_amount"})

        items_total = sum((line_total(i.quantity, i.unit_price) for i in cart_data.items), Decimal("0"))
        if items_total != money(to_decimal(cart_data.subtotal)):
            logger.warning(f"Cart subtotal {cart_data.subtotal} differs from item total {items_total}")

        return breakdown

    def _check_chargeable(self, order: OrderRead, currency: str):
        if order.total_amount <= 0:
            raise ValidationError("Payment amount must be positive", {"amount": str(order.total_amount)})
        if currency != order.currency_code:
            raise ValidationError(
                "Payment currency does not match order currency",
                {"currency": currency, "order_currency": order.currency_code},
            )

    def _charge(self, gateway: PaymentGateway, amount: Decimal, currency: str,
                payment_method: PaymentMethodIn) -> ChargeResult:
        return call_with_timeout(
            gateway.charge, self.settings.gateway_timeout_seconds, amount, currency, payment_method
        )

    def _record_failed_charge(self, order_ref, user_id, amount, currency, cart_data, gateway, payment_method, exc):
        # keyed by the rolled-back order id, which no reader will ever see
        try:
            self.payment_store.create_transaction(
                {
                    "order_id": order_ref,
                    "user_id": user_id,
                    "transaction_type": TransactionType.PAYMENT.value,
                    "status": TransactionStatus.FAILED.value,
                    "amount": amount,
                    "currency": currency,
                    "country_code": cart_data.country_code,
                    "details": {
                        "gateway": gateway.kind.value,
                        "ephemeral_order": True,
                        "error": exc.to_dict(),
                        "payment_method": payment_method.masked(),
                    },
                }
            )
        except Exception:
            logger.exception(f"Could not record failed charge for order reference {order_ref}")

    # ------------------------------------------------------------------
    # cancellation
    # ------------------------------------------------------------------

    def cancel_order(self, order_id: str, reason: Optional[str], requesting_user_id: str) -> CancelOrderResponse:
        reason = reason or "Cancelled by customer"

        with self.order_store.transaction() as session:
            order = self.order_store.get_by_id(order_id, session=session, lock=True)
            if not order:
                raise NotFound("Order not found", {"order_id": order_id})

            if order.user_id != requesting_user_id:
                raise Forbidden("You can only cancel your own orders", {"order_id": order_id})

            if OrderStatus(order.status) not in CANCELLABLE_STATUSES:
                raise InvalidTransition(
                    f"Orders with status '{order.status}' cannot be cancelled",
                    {"order_id": order_id, "current_status": order.status},
                )

            logger.info(f"Cancelling order {order_id} for user {requesting_user_id}")
            self.order_store.update_status(
                order_id, OrderStatus.CANCELLED, note=reason, session=session,
                created_by=f"user:{requesting_user_id}",
            )

        refund = None
        refund_error = None
        if order.payment_status == PaymentStatus.PAID.value:
            logger.info(f"Processing refund for cancelled order {order_id}")
            try:
                outcome = self.process_refund(order_id, order.total_amount, reason)
            except OrderServiceError as exc:
                refund_error = exc.to_dict()
            except Exception as exc:
                logger.exception(f"Refund for cancelled order {order_id} failed")
                refund_error = {"code": "RefundFailed", "message": str(exc), "details": {}}
            else:
                if outcome.success:
                    refund = outcome
                else:
                    refund_error = outcome.error

        cancelled = self.order_store.get_by_id(order_id)
        self._notify(OrderEvent.ORDER_CANCELLED, cancelled)

        if refund_error:
            refund_error = {**refund_error, "manual_follow_up": True}
            message = "Order cancelled, but refund processing failed. Support will follow up."
        elif refund:
            message = "Order cancelled and refund processed"
        else:
            message = "Order cancelled successfully"

        return CancelOrderResponse(message=message, order=cancelled, refund=refund, refund_error=refund_error)

    # ------------------------------------------------------------------
    # refunds
    # ------------------------------------------------------------------

    def process_refund(self, order_id: str, amount=None, reason: Optional[str] = None) -> RefundOutcome:
        """Refund (part of) an order's completed payment.

        The refund is reserved first: with the payment row locked, a pending
        refund row is committed that counts against the original amount.
        The gateway is called outside any transaction, and a second scope
        settles the reservation. Gateway declines and timeouts come back as
        ``success=False``; the order and payment are left as they were.
        """
        reason = reason or "Order refund"
        logger.info(f"Processing refund for order {order_id}")

        order, original, pending = self._reserve_refund(order_id, amount, reason)
        amount = pending.amount

        gateway = self._gateway_for(GatewayKind(pending.details["gateway"]))
        # anything but a timeout propagates and leaves the row pending for reconciliation
        try:
            result = call_with_timeout(
                gateway.refund, self.settings.gateway_timeout_seconds,
                original.provider_transaction_id, amount, reason,
            )
        except GatewayUnavailable as exc:
            result = RefundResult(
                success=False, refund_id=None, amount=amount,
                failure_code=exc.details.get("reason", "gateway_unreachable"), failure_reason=exc.message,
            )

        if not result.success:
            return self._refund_failed(order, pending, result)

        with self.order_store.transaction() as session:
            original = self.payment_store.lock_transaction(original.id, session)
            refund_txn = self.payment_store.update_transaction_status(
                pending.id,
                TransactionStatus.COMPLETED,
                provider_transaction_id=result.refund_id,
                details={"gateway_response": result.raw},
                session=session,
            )
            fully_refunded = self.payment_store.refunded_total(original, session=session) >= original.amount
            if fully_refunded:
                self.payment_store.update_transaction_status(original.id, TransactionStatus.REFUNDED, session=session)

            current = self.order_store.get_by_id(order_id, session=session, lock=True)
            # a cancelled order is terminal, the refund shows on its payment status
            if current.status not in {OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value}:
                self.order_store.update_status(order_id, OrderStatus.REFUNDED, note=reason, session=session)
            refunded = self.order_store.update_payment(
                order_id,
                PaymentStatus.REFUNDED if fully_refunded else PaymentStatus.PARTIALLY_REFUNDED,
                refund_id=refund_txn.id,
                session=session,
            )

        logger.info(f"Refund {refund_txn.id} of {amount} {original.currency} processed for order {order_id}")
        self._notify(OrderEvent.REFUND_PROCESSED, refunded)

        return RefundOutcome(success=True, amount=amount, refund_id=refund_txn.id, transaction=refund_txn)

    def _reserve_refund(self, order_id: str, amount, reason: str):
        with self.order_store.transaction() as session:
            original = self.payment_store.get_active_payment(order_id, session=session)
            if original:
                # first write of the scope, concurrent refunds queue here
                original = self.payment_store.lock_transaction(original.id, session)

            order = self.order_store.get_by_id(order_id, session=session, lock=True)
            if not order:
                raise NotFound("Order not found", {"order_id": order_id})

            if order.payment_status not in {s.value for s in REFUNDABLE_PAYMENT_STATUSES}:
                raise InvalidState(
                    "No completed payment found for this order",
                    {"order_id": order_id, "payment_status": order.payment_status},
                )

            settled = {OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value}
            if order.status not in settled and not can_transition(order.status, OrderStatus.REFUNDED):
                raise InvalidTransition(
                    f"Orders with status '{order.status}' cannot be refunded",
                    {"order_id": order_id, "current_status": order.status},
                )

            if not original:
                raise NotFound("Payment transaction not found", {"order_id": order_id})
            if original.status != TransactionStatus.COMPLETED.value:
                raise InvalidState(
                    "Payment has already been fully refunded",
                    {"order_id": order_id, "transaction_id": original.id},
                )

            already_refunded = self.payment_store.refunded_total(original, session=session, include_pending=True)
            remaining = original.amount - already_refunded
            amount = remaining if amount is None else money(to_decimal(amount))

            if amount <= 0 and remaining > 0:
                raise ValidationError("Refund amount must be positive", {"amount": str(amount)})
            if amount <= 0 or amount > remaining:
                raise RefundExceedsOriginal(
                    "Refund amount cannot exceed original transaction amount",
                    {
                        "requested": str(amount),
                        "original_amount": str(original.amount),
                        "already_refunded": str(already_refunded),
                    },
                )

            pending = self.payment_store.create_transaction(
                {
                    "order_id": order_id,
                    "user_id": original.user_id,
                    "transaction_type": TransactionType.REFUND.value,
                    "status": TransactionStatus.PENDING.value,
                    "amount": amount,
                    "currency": original.currency,
                    "country_code": original.country_code,
                    "details": {
                        "gateway": original.details.get("gateway", GatewayKind.SIMULATOR.value),
                        "original_transaction_id": original.id,
                        "reason": reason,
                    },
                },
                session=session,
            )

        return order, original, pending

    def _refund_failed(self, order: OrderRead, pending, result: RefundResult) -> RefundOutcome:
        logger.warning(f"Refund failed for order {order.id}: {result.failure_code} {result.failure_reason}")
        error = {
            "code": result.failure_code or "refund_failed",
            "message": result.failure_reason or "Refund processing failed",
        }

        failed_txn = pending
        try:
            failed_txn = self.payment_store.update_transaction_status(
                pending.id, TransactionStatus.FAILED, details={"error": error}
            )
        except Exception:
            logger.exception(f"Could not release refund reservation {pending.id} for order {order.id}")

        self._notify(OrderEvent.REFUND_FAILED, order)
        return RefundOutcome(success=False, amount=pending.amount, transaction=failed_txn, error=error)

    # ------------------------------------------------------------------
    # fulfilment
    # ------------------------------------------------------------------

    def advance_status(
        self,
        order_id: str,
        status: str,
        note: Optional[str] = None,
        actor: str = "merchant",
        merchant_id: Optional[str] = None,
    ) -> OrderRead:
        """Merchant-driven progress of a paid order: preparing, then completed.

        With ``merchant_id`` set, only that merchant's orders can be moved.
        """
        try:
            status = OrderStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown order status '{status}'", {"status": status})

        if status not in FULFILMENT_STATUSES:
            raise ValidationError(
                f"Status '{status.value}' cannot be set directly",
                {"allowed": sorted(s.value for s in FULFILMENT_STATUSES)},
            )

        with self.order_store.transaction() as session:
            order = self.order_store.get_by_id(order_id, session=session, lock=True)
            if not order:
                raise NotFound("Order not found", {"order_id": order_id})
            if merchant_id is not None and order.merchant_id != merchant_id:
                raise Forbidden("You can only update your own orders", {"order_id": order_id})
            return self.order_store.update_status(order_id, status, note=note, session=session, created_by=actor)

    # ------------------------------------------------------------------

    def _gateway_for(self, target: Union[GatewayRoute, GatewayKind]) -> PaymentGateway:
        if self._gateway_factory:
            return self._gateway_factory(target)
        if isinstance(target, GatewayRoute):
            return resolve_gateway(target, self.settings)
        return build_gateway(target, self.settings)

    def _notify(self, event: OrderEvent, order: OrderRead):
        try:
            self._schedule(dispatch_order_event, event=event, order=order, bind=self.order_store.engine)
        except Exception:
            logger.warning(f"Could not schedule {event.value} notification for order {order.id}", exc_info=True)
