# app/models/base.py
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

ZERO = Decimal("0.00")


def utcnow() -> datetime:
    # naive UTC, matching TIMESTAMP WITHOUT TIME ZONE columns
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())
