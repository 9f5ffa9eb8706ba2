import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import stripe
import structlog

from payments import config
from payments.exceptions import BadSignatureError, GatewayError, NotFoundError
from payments.gateway import (
    CheckoutSession,
    CheckoutSessionParams,
    GatewayEvent,
    PaymentGateway,
    Refund,
    SessionDetail,
    from_minor_units,
    object_id,
    to_minor_units,
)

logger = structlog.get_logger(__name__)


def _translate(error: stripe.StripeError, action: str) -> GatewayError:
    """Map an SDK error onto GatewayError; rejected requests are the caller's fault."""
    if isinstance(error, (stripe.InvalidRequestError, stripe.CardError, stripe.IdempotencyError)):
        status_code, retryable = 400, False
    else:
        # connection, timeout, rate limit, auth and gateway-side failures
        status_code, retryable = 502, True

    logger.error(
        "stripe_api_error",
        action=action,
        error_type=type(error).__name__,
        error_code=getattr(error, "code", None),
        error_message=str(error),
    )
    detail = f"Stripe error during {action}"
    if error.user_message:
        detail = f"{detail}: {error.user_message}"
    return GatewayError(detail, status_code=status_code, retryable=retryable)


class StripeGateway(PaymentGateway):
    """Stripe Checkout implementation of the gateway adapter."""

    def __init__(self):
        stripe.api_key = config.stripe_secret_key()
        stripe.api_version = config.stripe_api_version()
        # the service never retries gateway calls on its own
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=config.stripe_timeout_seconds())
        if not stripe.api_key:
            logger.warning("stripe_secret_key_missing")

    def create_checkout_session(self, params: CheckoutSessionParams) -> CheckoutSession:
        currency = params.currency.lower()
        line_items = [
            {
                "price_data": {
                    "currency": currency,
                    "product_data": {
                        "name": item.name,
                        **({"description": item.description} if item.description else {}),
                    },
                    "unit_amount": to_minor_units(item.unit_price, params.currency),
                },
                "quantity": item.quantity,
            }
            for item in params.line_items
        ]
        metadata = {
            **params.metadata,
            "order_id": params.order_id,
            "user_id": params.user_id,
            "idempotency_key": params.idempotency_key,
        }
        base_url = config.frontend_url()
        expires_at = int(time.time()) + config.checkout_session_ttl_minutes() * 60

        logger.info("creating_checkout_session", order_id=params.order_id, currency=currency)
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                customer_email=params.customer_email,
                client_reference_id=params.order_id,
                line_items=line_items,
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
                success_url=params.success_url
                or f"{base_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=params.cancel_url or f"{base_url}/payment/cancel",
                expires_at=expires_at,
            )
        except stripe.StripeError as e:
            raise _translate(e, "create checkout session") from e

        logger.info("checkout_session_created", session_id=session["id"], order_id=params.order_id)
        return CheckoutSession(session_id=session["id"], url=session.get("url") or "")

    def get_checkout_session(self, session_id: str) -> SessionDetail:
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                raise NotFoundError("Checkout session not found") from e
            raise _translate(e, "retrieve checkout session") from e
        except stripe.StripeError as e:
            raise _translate(e, "retrieve checkout session") from e

        expires_at = session.get("expires_at")
        return SessionDetail(
            session_id=session["id"],
            url=session.get("url"),
            status=session.get("status") or "open",
            payment_intent_id=object_id(session.get("payment_intent")),
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc) if expires_at else None,
        )

    def find_session_for_intent(self, payment_intent_id: str) -> Optional[str]:
        try:
            sessions = stripe.checkout.Session.list(payment_intent=payment_intent_id, limit=1)
        except stripe.StripeError as e:
            raise _translate(e, "list checkout sessions") from e

        data = sessions["data"]
        return data[0]["id"] if data else None

    def create_refund(
        self,
        payment_intent_id: str,
        currency: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Refund:
        kwargs = {
            "payment_intent": payment_intent_id,
            "reason": reason or "requested_by_customer",
        }
        if amount is not None:
            kwargs["amount"] = to_minor_units(amount, currency)
        if idempotency_key:
            kwargs["idempotency_key"] = idempotency_key

        logger.info("creating_refund", payment_intent_id=payment_intent_id, amount=str(amount))
        try:
            refund = stripe.Refund.create(**kwargs)
        except stripe.StripeError as e:
            raise _translate(e, "create refund") from e

        refunded = refund.get("amount")
        logger.info("refund_created", refund_id=refund["id"], status=refund.get("status"))
        return Refund(
            refund_id=refund["id"],
            status=refund.get("status") or "pending",
            amount=from_minor_units(refunded, currency) if refunded is not None else None,
        )

    def verify_webhook_signature(self, payload: bytes, signature: str) -> GatewayEvent:
        secret = config.stripe_webhook_secret()
        if not secret:
            logger.error("stripe_webhook_secret_missing")
            raise BadSignatureError("Webhook secret not configured")

        try:
            event = stripe.Webhook.construct_event(payload, signature, secret)
        except ValueError as e:
            logger.warning("webhook_payload_invalid", error=str(e))
            raise BadSignatureError("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            raise BadSignatureError("Invalid signature") from e

        return GatewayEvent(id=event["id"], type=event["type"], data=event["data"]["object"])
