"""
Payment persistence.

The database is the only synchronization point between concurrent
requests. Idempotency keys, gateway event ids and the one-active-payment-
per-order rule are unique constraints; this module turns their
``IntegrityError`` into typed exceptions the lifecycle code reconciles.
Every status change is a compare-and-swap committed together with its
transaction row.
"""
from typing import Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payments.models import Payment, PaymentStatus, PaymentTransaction, utcnow

logger = structlog.get_logger(__name__)


class StoreConflict(Exception):
    pass


class DuplicateIdempotencyKey(StoreConflict):
    def __init__(self, existing: Payment):
        super().__init__(f"idempotency key already used by payment {existing.id}")
        self.existing = existing


class ActivePaymentExists(StoreConflict):
    pass


class DuplicateGatewayEvent(StoreConflict):
    pass


class PaymentStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, payment_id: str) -> Optional[Payment]:
        return self.db.get(Payment, payment_id)

    def by_idempotency_key(self, key: str) -> Optional[Payment]:
        return self.db.scalars(select(Payment).where(Payment.idempotency_key == key)).first()

    def by_session_id(self, session_id: str) -> Optional[Payment]:
        return self.db.scalars(select(Payment).where(Payment.gateway_session_id == session_id)).first()

    def latest_for_order(self, order_id: str) -> Optional[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.order_id == order_id)
            .order_by(Payment.created_at.desc())
        )
        return self.db.scalars(stmt).first()

    def active_for_order(self, order_id: str, active: Iterable[PaymentStatus]) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.order_id == order_id, Payment.status.in_(list(active)))
        return self.db.scalars(stmt).first()

    def for_user(self, user_id: str, offset: int, limit: int) -> Tuple[List[Payment], int]:
        stmt = (
            select(Payment)
            .where(Payment.user_id == user_id)
            .order_by(Payment.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        total = self.db.scalar(select(func.count()).select_from(Payment).where(Payment.user_id == user_id))
        return list(self.db.scalars(stmt)), total or 0

    def event_seen(self, gateway_event_id: str) -> bool:
        stmt = select(PaymentTransaction.id).where(PaymentTransaction.gateway_event_id == gateway_event_id)
        return self.db.scalars(stmt).first() is not None

    def insert_payment(self, payment: Payment, genesis: PaymentTransaction) -> Payment:
        """Insert a new payment with its first transaction in one commit."""
        payment.transactions.append(genesis)
        self.db.add(payment)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.by_idempotency_key(payment.idempotency_key)
            if existing is not None:
                raise DuplicateIdempotencyKey(existing)
            raise ActivePaymentExists(payment.order_id)
        self.db.refresh(payment)
        return payment

    def transition(
        self,
        payment: Payment,
        allowed_from: Iterable[PaymentStatus],
        to_status: PaymentStatus,
        txn: PaymentTransaction,
        **values,
    ) -> bool:
        """
        Move ``payment`` to ``to_status`` if it is still in one of
        ``allowed_from`` and append ``txn``, atomically.

        Returns False (and changes nothing) when another request moved the
        payment first. Raises DuplicateGatewayEvent when ``txn`` carries an
        event id that is already recorded.
        """
        stmt = (
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.in_(list(allowed_from)))
            .values(status=to_status, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            self.db.rollback()
            return False

        txn.payment_id = payment.id
        self.db.add(txn)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise DuplicateGatewayEvent(txn.gateway_event_id)

        self.db.refresh(payment)
        return True
