from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class TransactionType(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: [OrderStatus.CONFIRMED, OrderStatus.CANCELLED],
    OrderStatus.CONFIRMED: [
        OrderStatus.PREPARING,
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
    ],
    OrderStatus.PREPARING: [
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
    ],
    OrderStatus.COMPLETED: [],
    OrderStatus.CANCELLED: [],
    OrderStatus.REFUNDED: [],
}

TERMINAL_STATUSES = {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}

CANCELLABLE_STATUSES = set(OrderStatus) - TERMINAL_STATUSES

# statuses a merchant or admin may push an order into after payment
FULFILMENT_STATUSES = {OrderStatus.PREPARING, OrderStatus.COMPLETED}

REFUNDABLE_PAYMENT_STATUSES = {PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED}


def can_transition(current, new) -> bool:
    return OrderStatus(new) in ALLOWED_TRANSITIONS.get(OrderStatus(current), [])
