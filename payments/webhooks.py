"""
Inbound gateway callbacks.

Signature first, then classification: unknown event types are acknowledged
and dropped so the gateway stops redelivering them. Anything that goes wrong
after a valid signature is re-raised as ``WebhookProcessingError`` (HTTP 500)
so the gateway's own retry redelivers the event; replays are safe because the
lifecycle manager deduplicates on the gateway event id.

Every recognized event is also published as an informational ``webhook.*``
event for external listeners. Those never change a payment.
"""
from typing import Optional

import structlog

from payments import events
from payments.events import EventPublisher
from payments.exceptions import BadSignatureError, NotFoundError, WebhookProcessingError
from payments.gateway import GatewayEvent, PaymentGateway, from_minor_units, object_id
from payments.models import TransactionType
from payments.service import PaymentService

logger = structlog.get_logger(__name__)

# fields kept from the event object for the audit trail
AUDIT_FIELDS = (
    "id",
    "object",
    "status",
    "payment_status",
    "amount",
    "amount_total",
    "currency",
    "client_reference_id",
)


def _audit_payload(event: GatewayEvent) -> dict:
    data = event.data
    payload = {field: data.get(field) for field in AUDIT_FIELDS if field in data}
    if "payment_intent" in data:
        payload["payment_intent"] = object_id(data.get("payment_intent"))
    payload["event_id"] = event.id
    return payload


class WebhookProcessor:
    def __init__(self, gateway: PaymentGateway, service: PaymentService, publisher: EventPublisher):
        self.gateway = gateway
        self.service = service
        self.publisher = publisher
        self.handlers = {
            "checkout.session.completed": self.handle_session_completed,
            "checkout.session.expired": self.handle_session_expired,
            "payment_intent.succeeded": self.handle_intent_succeeded,
            "payment_intent.payment_failed": self.handle_intent_failed,
            "charge.refunded": self.handle_charge_refunded,
        }

    def handle(self, payload: bytes, signature: Optional[str]) -> None:
        if not signature:
            logger.warning("webhook_signature_missing")
            raise BadSignatureError("Missing stripe-signature header")

        event = self.gateway.verify_webhook_signature(payload, signature)
        log = logger.bind(event_id=event.id, event_type=event.type)
        log.info("webhook_received")

        handler = self.handlers.get(event.type)
        if handler is None:
            log.info("webhook_event_ignored")
            return

        try:
            handler(event)
        except Exception as e:
            log.error("webhook_processing_failed", error=str(e), error_type=type(e).__name__)
            raise WebhookProcessingError(f"Failed to process event {event.id}") from e

    def handle_session_completed(self, event: GatewayEvent) -> None:
        session = event.data
        payment_intent_id = object_id(session.get("payment_intent"))
        if not payment_intent_id:
            logger.warning("checkout_session_without_payment_intent", session_id=session["id"])
            return

        self.service.process_webhook_event(
            TransactionType.SESSION_COMPLETED,
            session["id"],
            event.id,
            {
                "payment_intent_id": payment_intent_id,
                "event_type": event.type,
                "raw_payload": _audit_payload(event),
            },
        )
        self.publisher.publish(events.WEBHOOK_CHECKOUT_COMPLETED, {
            "event_id": event.id,
            "session_id": session["id"],
            "payment_intent_id": payment_intent_id,
            "metadata": session.get("metadata") or {},
        })

    def handle_session_expired(self, event: GatewayEvent) -> None:
        session = event.data
        try:
            self.service.process_webhook_event(
                TransactionType.SESSION_EXPIRED,
                session["id"],
                event.id,
                {"event_type": event.type, "raw_payload": _audit_payload(event)},
            )
        except NotFoundError:
            # sessions orphaned by a lost creation race or a failed insert
            logger.warning("expired_session_without_payment", session_id=session["id"])

        self.publisher.publish(events.WEBHOOK_CHECKOUT_EXPIRED, {
            "event_id": event.id,
            "session_id": session["id"],
            "metadata": session.get("metadata") or {},
        })

    def handle_intent_succeeded(self, event: GatewayEvent) -> None:
        # informational; checkout.session.completed drives the transition
        intent = event.data
        currency = intent.get("currency") or ""
        self.publisher.publish(events.WEBHOOK_INTENT_SUCCEEDED, {
            "event_id": event.id,
            "payment_intent_id": intent["id"],
            "amount": str(from_minor_units(intent.get("amount") or 0, currency)),
            "currency": currency.upper(),
        })

    def handle_intent_failed(self, event: GatewayEvent) -> None:
        intent = event.data
        last_error = intent.get("last_payment_error") or {}
        error_message = last_error.get("message") or "Payment failed"

        session_id = self.gateway.find_session_for_intent(intent["id"])
        if session_id is None:
            logger.warning("payment_intent_without_checkout_session", payment_intent_id=intent["id"])
        else:
            self.service.process_webhook_event(
                TransactionType.INTENT_FAILED,
                session_id,
                event.id,
                {
                    "error_message": error_message,
                    "event_type": event.type,
                    "raw_payload": _audit_payload(event),
                },
            )

        self.publisher.publish(events.WEBHOOK_INTENT_FAILED, {
            "event_id": event.id,
            "payment_intent_id": intent["id"],
            "error_message": error_message,
        })

    def handle_charge_refunded(self, event: GatewayEvent) -> None:
        # refunds issued from the Stripe dashboard only show up here
        charge = event.data
        currency = charge.get("currency") or ""
        self.publisher.publish(events.WEBHOOK_CHARGE_REFUNDED, {
            "event_id": event.id,
            "charge_id": charge["id"],
            "payment_intent_id": object_id(charge.get("payment_intent")),
            "refunded_amount": str(from_minor_units(charge.get("amount_refunded") or 0, currency)),
            "currency": currency.upper(),
        })
