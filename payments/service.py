"""
Payment lifecycle manager.

Owns the payment state machine::

    PENDING -> SUCCEEDED | FAILED | CANCELLED
    SUCCEEDED -> REFUNDED

PROCESSING is accepted as a predecessor of SUCCEEDED/FAILED but nothing
moves a payment into it yet. Gateway calls are made outside any open
database transaction; every state change is a compare-and-swap in
``PaymentStore.transition`` so concurrent requests and redelivered webhooks
apply at most once.
"""
import uuid
from collections import namedtuple
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from payments import events
from payments.events import EventPublisher
from payments.exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from payments.gateway import CheckoutSessionParams, LineItem, PaymentGateway
from payments.models import (
    ACTIVE_STATUSES,
    Payment,
    PaymentStatus,
    PaymentTransaction,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from payments.schemas import (
    CreatePaymentRequest,
    CreatePaymentResponse,
    PaymentResponse,
    RefundRequest,
    UserPaymentsResponse,
)
from payments.store import (
    ActivePaymentExists,
    DuplicateGatewayEvent,
    DuplicateIdempotencyKey,
    PaymentStore,
)

logger = structlog.get_logger(__name__)

Transition = namedtuple("Transition", "allowed_from to_status txn_status event_name gateway_event_type")

WEBHOOK_TRANSITIONS = {
    TransactionType.SESSION_COMPLETED: Transition(
        (PaymentStatus.PENDING, PaymentStatus.PROCESSING),
        PaymentStatus.SUCCEEDED,
        TransactionStatus.SUCCESS,
        events.PAYMENT_SUCCEEDED,
        "checkout.session.completed",
    ),
    TransactionType.INTENT_FAILED: Transition(
        (PaymentStatus.PENDING, PaymentStatus.PROCESSING),
        PaymentStatus.FAILED,
        TransactionStatus.FAILED,
        events.PAYMENT_FAILED,
        "payment_intent.payment_failed",
    ),
    TransactionType.SESSION_EXPIRED: Transition(
        (PaymentStatus.PENDING,),
        PaymentStatus.CANCELLED,
        TransactionStatus.FAILED,
        events.PAYMENT_EXPIRED,
        "checkout.session.expired",
    ),
}


def _base_payload(payment: Payment) -> Dict[str, Any]:
    return {
        "payment_id": payment.id,
        "order_id": payment.order_id,
        "user_id": payment.user_id,
    }


class PaymentService:
    def __init__(self, session_factory, gateway: PaymentGateway, publisher: EventPublisher):
        self.session_factory = session_factory
        self.gateway = gateway
        self.publisher = publisher

    # -- creation ---------------------------------------------------------

    def create_payment(self, user_id: str, request: CreatePaymentRequest) -> CreatePaymentResponse:
        """
        Create a payment and its hosted checkout session.

        Replaying an idempotency key returns the original session while the
        payment is still pending and the session open; any other replay is a
        conflict. No row is written unless the gateway call succeeds.
        """
        log = logger.bind(order_id=request.order_id, idempotency_key=request.idempotency_key)
        log.info("creating_payment", amount=str(request.amount), currency=request.currency)

        with self.session_factory() as db:
            store = PaymentStore(db)
            existing = store.by_idempotency_key(request.idempotency_key)
            if existing is not None:
                log.warning("idempotency_key_reused", payment_id=existing.id)
                return self._resume(existing, request)
            if store.active_for_order(request.order_id, ACTIVE_STATUSES) is not None:
                log.warning("order_has_active_payment")
                raise ConflictError("Order already has an active payment")

        session = self.gateway.create_checkout_session(
            CheckoutSessionParams(
                order_id=request.order_id,
                user_id=user_id,
                customer_email=request.customer_email,
                amount=request.amount,
                currency=request.currency,
                idempotency_key=request.idempotency_key,
                line_items=[
                    LineItem(
                        name=item.product_name,
                        quantity=item.quantity,
                        unit_price=item.unit_price,
                        description=item.description,
                    )
                    for item in request.items
                ],
                metadata=dict(request.metadata or {}),
                success_url=str(request.success_url) if request.success_url else None,
                cancel_url=str(request.cancel_url) if request.cancel_url else None,
            )
        )

        payment = Payment(
            order_id=request.order_id,
            user_id=user_id,
            gateway_session_id=session.session_id,
            amount=request.amount,
            currency=request.currency,
            status=PaymentStatus.PENDING,
            idempotency_key=request.idempotency_key,
            metadata_=request.metadata,
        )
        genesis = PaymentTransaction(
            type=TransactionType.SESSION_CREATED,
            status=TransactionStatus.SUCCESS,
            amount=request.amount,
            currency=request.currency,
            raw_payload={"session_id": session.session_id},
        )

        with self.session_factory() as db:
            store = PaymentStore(db)
            try:
                payment = store.insert_payment(payment, genesis)
            except DuplicateIdempotencyKey as e:
                # a concurrent request with the same key committed first
                log.warning("idempotency_race_lost", orphaned_session_id=session.session_id)
                return self._resume(e.existing, request)
            except ActivePaymentExists:
                log.warning("active_payment_race_lost", orphaned_session_id=session.session_id)
                raise ConflictError("Order already has an active payment")
            except SQLAlchemyError:
                # the gateway session is left to expire on its own
                log.exception("payment_persist_failed", orphaned_session_id=session.session_id)
                raise

            response = CreatePaymentResponse(
                payment_id=payment.id,
                order_id=payment.order_id,
                status=payment.status,
                amount=payment.amount,
                currency=payment.currency,
                checkout_url=session.url,
            )
            payload = {
                **_base_payload(payment),
                "amount": str(payment.amount),
                "currency": payment.currency,
                "session_id": session.session_id,
            }

        log.info("payment_created", payment_id=response.payment_id, session_id=session.session_id)
        self.publisher.publish(events.PAYMENT_CREATED, payload)
        return response

    def _resume(self, existing: Payment, request: CreatePaymentRequest) -> CreatePaymentResponse:
        if existing.order_id != request.order_id:
            raise ConflictError("Idempotency key was already used for a different order")
        if existing.status != PaymentStatus.PENDING:
            raise ConflictError("Payment already processed for this idempotency key")

        try:
            detail = self.gateway.get_checkout_session(existing.gateway_session_id)
        except NotFoundError:
            raise ConflictError("Checkout session for this idempotency key is gone")

        now = datetime.now(timezone.utc)
        if not detail.is_open or (detail.expires_at is not None and detail.expires_at <= now):
            raise ConflictError("Checkout session for this idempotency key has expired")

        return CreatePaymentResponse(
            payment_id=existing.id,
            order_id=existing.order_id,
            status=existing.status,
            amount=existing.amount,
            currency=existing.currency,
            checkout_url=detail.url,
        )

    # -- reads ------------------------------------------------------------

    def get_payment(self, payment_id: str) -> PaymentResponse:
        with self.session_factory() as db:
            payment = PaymentStore(db).get(payment_id)
            if payment is None:
                raise NotFoundError("Payment not found")
            return PaymentResponse.model_validate(payment)

    def get_payment_by_order(self, order_id: str) -> PaymentResponse:
        with self.session_factory() as db:
            payment = PaymentStore(db).latest_for_order(order_id)
            if payment is None:
                raise NotFoundError("Payment not found for this order")
            return PaymentResponse.model_validate(payment)

    def list_user_payments(self, user_id: str, page: int = 1, limit: int = 10) -> UserPaymentsResponse:
        with self.session_factory() as db:
            payments, total = PaymentStore(db).for_user(user_id, (page - 1) * limit, limit)
            return UserPaymentsResponse(
                payments=[PaymentResponse.model_validate(p) for p in payments],
                total=total,
                page=page,
                limit=limit,
            )

    @staticmethod
    def generate_idempotency_key() -> str:
        return str(uuid.uuid4())

    # -- webhook transitions ----------------------------------------------

    def process_webhook_event(
        self,
        kind: TransactionType,
        session_id: str,
        gateway_event_id: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Apply one gateway lifecycle event to the payment owning ``session_id``.

        Returns True when the event changed the payment. Replayed event ids
        and events that arrive after the payment already left the source
        state are no-ops. Raises NotFoundError for unknown sessions.
        """
        rule = WEBHOOK_TRANSITIONS[kind]
        extra = extra or {}
        log = logger.bind(event_id=gateway_event_id, session_id=session_id, kind=kind.value)

        with self.session_factory() as db:
            store = PaymentStore(db)
            if store.event_seen(gateway_event_id):
                log.info("webhook_event_already_processed")
                return False

            payment = store.by_session_id(session_id)
            if payment is None:
                log.error("payment_not_found_for_session")
                raise NotFoundError("Payment not found")

            values = {}
            error_message = None
            if kind == TransactionType.SESSION_COMPLETED:
                values["processed_at"] = utcnow()
                values["gateway_payment_intent_id"] = extra.get("payment_intent_id")
            elif kind == TransactionType.INTENT_FAILED:
                error_message = extra.get("error_message") or "Payment failed"
                values["error_message"] = error_message

            txn = PaymentTransaction(
                type=kind,
                status=rule.txn_status,
                amount=payment.amount,
                currency=payment.currency,
                gateway_event_id=gateway_event_id,
                gateway_event_type=extra.get("event_type", rule.gateway_event_type),
                raw_payload=extra.get("raw_payload"),
                error_details=error_message,
            )

            previous = payment.status
            try:
                applied = store.transition(payment, rule.allowed_from, rule.to_status, txn, **values)
            except DuplicateGatewayEvent:
                log.info("webhook_event_already_processed", race=True)
                return False

            if not applied:
                log.warning(
                    "webhook_transition_rejected",
                    payment_id=payment.id,
                    current_status=payment.status.value,
                    target_status=rule.to_status.value,
                )
                return False

            payload = _base_payload(payment)
            if kind == TransactionType.SESSION_COMPLETED:
                payload["amount"] = str(payment.amount)
                payload["currency"] = payment.currency
                payload["payment_intent_id"] = payment.gateway_payment_intent_id
            elif kind == TransactionType.INTENT_FAILED:
                payload["error_message"] = error_message

            log.info(
                "payment_transitioned",
                payment_id=payment.id,
                from_status=previous.value,
                to_status=rule.to_status.value,
            )

        self.publisher.publish(rule.event_name, payload)
        return True

    # -- refunds ----------------------------------------------------------

    def create_refund(self, payment_id: str, request: RefundRequest) -> PaymentResponse:
        """
        Refund a succeeded payment through the gateway.

        A partial amount is recorded on the refund transaction but the
        payment still moves to REFUNDED.
        """
        log = logger.bind(payment_id=payment_id)

        with self.session_factory() as db:
            payment = PaymentStore(db).get(payment_id)
            if payment is None:
                raise NotFoundError("Payment not found")
            if payment.status != PaymentStatus.SUCCEEDED:
                raise InvalidStateError("Can only refund successful payments")
            if not payment.gateway_payment_intent_id:
                raise InvalidStateError("Payment has no gateway payment intent")
            if request.amount is not None and request.amount > payment.amount:
                raise ValidationError("Refund amount exceeds payment amount")

            intent_id = payment.gateway_payment_intent_id
            currency = payment.currency
            refund_amount: Decimal = request.amount if request.amount is not None else payment.amount

        log.info("refunding_payment", amount=str(refund_amount), reason=request.reason)
        refund = self.gateway.create_refund(
            intent_id,
            currency,
            amount=request.amount,
            reason=request.reason,
            idempotency_key=f"refund-{payment_id}",
        )

        with self.session_factory() as db:
            store = PaymentStore(db)
            payment = store.get(payment_id)
            txn = PaymentTransaction(
                type=TransactionType.REFUND_CREATED,
                status=TransactionStatus.SUCCESS,
                amount=refund_amount,
                currency=currency,
                gateway_event_id=refund.refund_id,
                gateway_event_type="refund.created",
                raw_payload={
                    "refund_id": refund.refund_id,
                    "refund_status": refund.status,
                    "reason": request.reason,
                },
            )
            try:
                applied = store.transition(payment, (PaymentStatus.SUCCEEDED,), PaymentStatus.REFUNDED, txn)
            except DuplicateGatewayEvent:
                applied = False

            if not applied:
                payment = store.get(payment_id)
                if payment.status != PaymentStatus.REFUNDED:
                    raise InvalidStateError("Payment is no longer refundable")
                # a concurrent request already recorded this refund
                log.warning("refund_already_recorded", refund_id=refund.refund_id)
                return PaymentResponse.model_validate(payment)

            view = PaymentResponse.model_validate(payment)
            payload = {
                **_base_payload(payment),
                "refund_amount": str(refund_amount),
                "currency": currency,
                "refund_id": refund.refund_id,
            }

        log.info("payment_refunded", refund_id=refund.refund_id)
        self.publisher.publish(events.PAYMENT_REFUNDED, payload)
        return view
