"""
Payment gateway adapter interface.

The lifecycle code only ever talks to a ``PaymentGateway``; gateway SDK
types never leak past an implementation of it. The gateway works in minor
currency units (cents) while the rest of the service uses ``Decimal`` major
units, so both conversions live here.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

# ISO codes Stripe charges without a fractional part
ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
}

_CENT = Decimal("0.01")


def _exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a major-unit amount to gateway minor units, rounding half-up."""
    scaled = Decimal(amount).scaleb(_exponent(currency))
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, currency: str) -> Decimal:
    return (Decimal(amount).scaleb(-_exponent(currency))).quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass
class LineItem:
    name: str
    quantity: int
    unit_price: Decimal
    description: Optional[str] = None


@dataclass
class CheckoutSessionParams:
    order_id: str
    user_id: str
    customer_email: str
    amount: Decimal
    currency: str
    idempotency_key: str
    line_items: List[LineItem]
    metadata: Dict[str, str] = field(default_factory=dict)
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


@dataclass
class CheckoutSession:
    session_id: str
    url: str


@dataclass
class SessionDetail:
    session_id: str
    url: Optional[str]
    status: str  # open | complete | expired
    payment_intent_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == "open"


@dataclass
class Refund:
    refund_id: str
    status: str
    amount: Optional[Decimal] = None


@dataclass
class GatewayEvent:
    """A verified webhook event, detached from the SDK's event type."""

    id: str
    type: str
    data: Dict[str, Any]


class PaymentGateway(ABC):
    """The only component allowed to reach the external gateway."""

    @abstractmethod
    def create_checkout_session(self, params: CheckoutSessionParams) -> CheckoutSession:
        """Raises GatewayError."""

    @abstractmethod
    def get_checkout_session(self, session_id: str) -> SessionDetail:
        """Raises NotFoundError for unknown sessions, GatewayError otherwise."""

    @abstractmethod
    def find_session_for_intent(self, payment_intent_id: str) -> Optional[str]:
        """Checkout session id that owns a payment intent, if any."""

    @abstractmethod
    def create_refund(
        self,
        payment_intent_id: str,
        currency: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Refund:
        """Raises GatewayError."""

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: str) -> GatewayEvent:
        """Raises BadSignatureError."""


def object_id(value) -> Optional[str]:
    """Id of a gateway object reference, whether sent as an id or expanded."""
    if value is None or isinstance(value, str):
        return value
    return value["id"]
