from collections import defaultdict
from typing import Any, Callable, Dict

import structlog

logger = structlog.get_logger(__name__)

PAYMENT_CREATED = "payment.created"
PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
PAYMENT_EXPIRED = "payment.expired"
PAYMENT_REFUNDED = "payment.refunded"

# raw gateway notifications, published as received
WEBHOOK_CHECKOUT_COMPLETED = "webhook.checkout.completed"
WEBHOOK_CHECKOUT_EXPIRED = "webhook.checkout.expired"
WEBHOOK_INTENT_SUCCEEDED = "webhook.payment_intent.succeeded"
WEBHOOK_INTENT_FAILED = "webhook.payment_intent.failed"
WEBHOOK_CHARGE_REFUNDED = "webhook.charge.refunded"

Handler = Callable[[str, Dict[str, Any]], Any]


class EventPublisher:
    """
    Fire-and-forget lifecycle notifications.

    Delivery is at-most-once: a subscriber that raises is logged and skipped,
    and nothing is retried.
    """

    def __init__(self):
        self._subscribers: Dict[str, list] = defaultdict(list)

    def subscribe(self, event_name: str, handler: Handler) -> None:
        self._subscribers[event_name].append(handler)
        logger.info("event_subscriber_registered", event_name=event_name)

    def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        logger.info("event_published", event_name=event_name, payload=payload)
        for handler in self._subscribers.get(event_name, []):
            try:
                handler(event_name, payload)
            except Exception as e:
                logger.error(
                    "event_delivery_failed",
                    event_name=event_name,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                )
