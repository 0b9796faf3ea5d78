from sqlmodel import Session
from app.models.notifications import (
    Notification,
    NotificationStatus,
    RecipientRole,
)


def create_notification(
    *,
    session: Session,
    recipient_role: RecipientRole,
    recipient_id: str | None,
    event: str,
    order_id: str,
    title: str,
    content: str,
):
    notification = Notification(
        recipient_role=recipient_role,
        recipient_id=recipient_id,
        event=event,
        order_id=order_id,
        title=title,
        content=content,
        status=NotificationStatus.sent,
    )
    session.add(notification)
    session.flush()
    return notification
