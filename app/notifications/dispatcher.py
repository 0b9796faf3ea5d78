import logging

from sqlalchemy.engine import Engine
from sqlmodel import Session

from app.models.notifications import RecipientRole
from app.notifications.channels import Channel
from app.notifications.events import OrderEvent
from app.notifications.rules import MESSAGES, NOTIFICATION_RULES
from app.schemas.orders_schemas import OrderRead
from app.services.notification_service import create_notification

logger = logging.getLogger(__name__)


def dispatch_order_event(
    *,
    event: OrderEvent,
    order: OrderRead,
    bind: Engine,
    extra: dict | None = None,
):
    """
    Central notification dispatcher.

    Best effort: runs after the order is committed and never raises, a
    failed notification is logged and dropped.
    """

    rules = NOTIFICATION_RULES.get(event, {})
    title, template = MESSAGES[event]
    content = template.format(
        order_number=order.order_number,
        total=order.total_amount,
        currency=order.currency_code,
        **(extra or {}),
    )

    try:
        with Session(bind) as session:
            # -------------------------
            # MERCHANT IN-APP
            # -------------------------
            if rules.get(Channel.INAPP_MERCHANT):
                create_notification(
                    session=session,
                    recipient_role=RecipientRole.merchant,
                    recipient_id=order.merchant_id,
                    event=event.value,
                    order_id=order.id,
                    title=title,
                    content=content,
                )

            # -------------------------
            # CUSTOMER IN-APP
            # -------------------------
            if rules.get(Channel.INAPP_CUSTOMER):
                create_notification(
                    session=session,
                    recipient_role=RecipientRole.customer,
                    recipient_id=order.user_id,
                    event=event.value,
                    order_id=order.id,
                    title=title,
                    content=content,
                )

            session.commit()
    except Exception:
        logger.exception(f"Notification {event.value} for order {order.id} failed")
