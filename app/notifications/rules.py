from app.notifications.events import OrderEvent
from app.notifications.channels import Channel


NOTIFICATION_RULES = {

    OrderEvent.NEW_ORDER: {
        Channel.INAPP_MERCHANT: True,
    },

    OrderEvent.ORDER_CONFIRMED: {
        Channel.INAPP_CUSTOMER: True,
    },

    OrderEvent.ORDER_CANCELLED: {
        Channel.INAPP_CUSTOMER: True,
        Channel.INAPP_MERCHANT: True,
    },

    OrderEvent.REFUND_PROCESSED: {
        Channel.INAPP_CUSTOMER: True,
    },

    OrderEvent.REFUND_FAILED: {
        Channel.INAPP_CUSTOMER: True,
    },

}


MESSAGES = {
    OrderEvent.NEW_ORDER: ("New order", "Order {order_number} was placed for {total} {currency}."),
    OrderEvent.ORDER_CONFIRMED: ("Order confirmed", "Your order {order_number} is confirmed."),
    OrderEvent.ORDER_CANCELLED: ("Order cancelled", "Order {order_number} has been cancelled."),
    OrderEvent.REFUND_PROCESSED: ("Refund processed", "A refund for order {order_number} has been issued."),
    OrderEvent.REFUND_FAILED: (
        "Refund pending",
        "We could not refund order {order_number} automatically. Support will follow up.",
    ),
}
