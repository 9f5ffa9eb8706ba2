import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from payments.database import Base


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"  # reserved for gateways with a separate authorization step
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


ACTIVE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.SUCCEEDED)
TERMINAL_STATUSES = (PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED)


class TransactionType(str, enum.Enum):
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_COMPLETED = "SESSION_COMPLETED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    INTENT_FAILED = "INTENT_FAILED"
    REFUND_CREATED = "REFUND_CREATED"


class TransactionStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


def _uuid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


_active_sql = "status IN ({})".format(", ".join("'%s'" % s.value for s in ACTIVE_STATUSES))


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(255), nullable=False, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    gateway_session_id = Column(String(255), unique=True, nullable=False)
    gateway_payment_intent_id = Column(String(255), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)        # major units, never mutated
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(Enum(PaymentStatus, native_enum=False, length=20), nullable=False,
                    default=PaymentStatus.PENDING)
    idempotency_key = Column(String(255), unique=True, nullable=False)
    metadata_ = Column("metadata", JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    transactions = relationship(
        "PaymentTransaction",
        back_populates="payment",
        order_by="PaymentTransaction.created_at",
        lazy="selectin",
    )

    __table_args__ = (
        # at most one active payment per order
        Index(
            "uq_payments_active_order",
            "order_id",
            unique=True,
            sqlite_where=text(_active_sql),
            postgresql_where=text(_active_sql),
        ),
    )

    def __repr__(self):
        return f"<Payment id={self.id} order_id={self.order_id} status={self.status}>"


class PaymentTransaction(Base):
    """Append-only audit row; one per accepted lifecycle event."""

    __tablename__ = "payment_transactions"

    id = Column(String(36), primary_key=True, default=_uuid)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, index=True)
    type = Column(Enum(TransactionType, native_enum=False, length=32), nullable=False)
    status = Column(Enum(TransactionStatus, native_enum=False, length=16), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    gateway_event_id = Column(String(255), unique=True, nullable=True)  # webhook dedup token
    gateway_event_type = Column(String(100), nullable=True)
    raw_payload = Column(JSON, nullable=True)
    error_details = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    payment = relationship("Payment", back_populates="transactions")
