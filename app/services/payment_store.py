import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from app.constants.order_status import TransactionStatus, TransactionType
from app.database import use_session
from app.exceptions import NotFound
from app.models.base import utcnow
from app.models.payment import PaymentTransaction
from app.schemas.orders_schemas import TransactionRead

logger = logging.getLogger(__name__)


class PaymentStore:
    """Append-only ledger of charges and refunds.

    Rows are only ever inserted or have their status moved forward;
    nothing is deleted.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def create_transaction(self, data: dict, session: Optional[Session] = None) -> TransactionRead:
        with use_session(self.engine, session, write=True) as s:
            txn = PaymentTransaction(**data)
            s.add(txn)
            s.flush()
            logger.info(
                f"Recorded {txn.transaction_type} transaction {txn.id} for order {txn.order_id}: "
                f"{txn.status} {txn.amount} {txn.currency}"
            )
            return TransactionRead.model_validate(txn)

    def get_transaction_by_id(self, transaction_id: str, session: Optional[Session] = None) -> Optional[TransactionRead]:
        with use_session(self.engine, session) as s:
            txn = s.get(PaymentTransaction, transaction_id)
            return TransactionRead.model_validate(txn) if txn else None

    def get_transactions_by_order(self, order_id: str, session: Optional[Session] = None) -> List[TransactionRead]:
        with use_session(self.engine, session) as s:
            rows = s.exec(
                select(PaymentTransaction)
                .where(PaymentTransaction.order_id == order_id)
                .order_by(PaymentTransaction.created_at)
            ).all()
            return [TransactionRead.model_validate(row) for row in rows]

    def update_transaction_status(
        self,
        transaction_id: str,
        status,
        provider_transaction_id: Optional[str] = None,
        fees: Optional[Decimal] = None,
        details: Optional[dict] = None,
        session: Optional[Session] = None,
    ) -> TransactionRead:
        with use_session(self.engine, session, write=True) as s:
            txn = s.get(PaymentTransaction, transaction_id, with_for_update=True)
            if not txn:
                raise NotFound("Transaction not found", {"transaction_id": transaction_id})

            txn.status = TransactionStatus(status).value
            if provider_transaction_id is not None:
                txn.provider_transaction_id = provider_transaction_id
            if fees is not None:
                txn.fees = fees
            if details:
                # reassign so the JSON column is flagged dirty
                txn.details = {**(txn.details or {}), **details}
            txn.updated_at = utcnow()
            s.add(txn)
            s.flush()
            return TransactionRead.model_validate(txn)

    def get_active_payment(self, order_id: str, session: Optional[Session] = None) -> Optional[TransactionRead]:
        """The order's completed charge, if any."""
        with use_session(self.engine, session) as s:
            txn = s.exec(
                select(PaymentTransaction)
                .where(PaymentTransaction.order_id == order_id)
                .where(PaymentTransaction.transaction_type == TransactionType.PAYMENT.value)
                .where(PaymentTransaction.status == TransactionStatus.COMPLETED.value)
            ).first()
            return TransactionRead.model_validate(txn) if txn else None

    def lock_transaction(self, transaction_id: str, session: Session) -> TransactionRead:
        """Row-lock a transaction until the caller's scope ends.

        The row is also touched, so engines without ``SELECT ... FOR UPDATE``
        (sqlite) still serialize writers on it.
        """
        txn = session.get(PaymentTransaction, transaction_id, with_for_update=True, populate_existing=True)
        if not txn:
            raise NotFound("Transaction not found", {"transaction_id": transaction_id})

        txn.updated_at = utcnow()
        session.add(txn)
        session.flush()
        return TransactionRead.model_validate(txn)

    def refunded_total(
        self, original: TransactionRead, session: Optional[Session] = None, include_pending: bool = False
    ) -> Decimal:
        """Sum of refunds issued against ``original``.

        Completed refunds only, unless ``include_pending``: a pending refund
        may already have reached the gateway.
        """
        statuses = {TransactionStatus.COMPLETED.value}
        if include_pending:
            statuses.add(TransactionStatus.PENDING.value)

        total = Decimal("0.00")
        for txn in self.get_transactions_by_order(original.order_id, session=session):
            if (
                txn.transaction_type == TransactionType.REFUND.value
                and txn.status in statuses
                and txn.details.get("original_transaction_id") == original.id
            ):
                total += txn.amount
        return total
