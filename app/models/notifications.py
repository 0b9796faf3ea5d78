from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import SQLModel, Field

from app.models.base import utcnow


# ---------- ENUMS (SAFE FOR SQLMODEL) ----------

class RecipientRole(str, Enum):
    customer = "customer"
    merchant = "merchant"


class NotificationStatus(str, Enum):
    sent = "sent"
    failed = "failed"


# ---------- MODEL ----------

class Notification(SQLModel, table=True):
    __tablename__ = "notifications"

    id: Optional[int] = Field(default=None, primary_key=True)

    recipient_role: RecipientRole
    recipient_id: Optional[str] = None

    event: str            # new_order / order_confirmed / order_cancelled ...
    order_id: str = Field(index=True)

    title: str
    content: str

    status: NotificationStatus = NotificationStatus.sent

    created_at: datetime = Field(default_factory=utcnow)
