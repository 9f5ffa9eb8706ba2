import json
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_payments.db")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from payments import events
from payments.database import Base
from payments.events import EventPublisher
from payments.exceptions import BadSignatureError, NotFoundError
from payments.gateway import CheckoutSession, GatewayEvent, PaymentGateway, Refund, SessionDetail
from payments.schemas import CreatePaymentRequest
from payments.service import PaymentService

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

ALL_EVENTS = (
    events.PAYMENT_CREATED,
    events.PAYMENT_SUCCEEDED,
    events.PAYMENT_FAILED,
    events.PAYMENT_EXPIRED,
    events.PAYMENT_REFUNDED,
)


class FakeGateway(PaymentGateway):
    """In-memory stand-in for the Stripe adapter."""

    def __init__(self):
        self.sessions = {}
        self.intent_sessions = {}
        self.created = []
        self.refunds = []
        self.fail_create = None
        self.fail_refund = None

    def create_checkout_session(self, params):
        if self.fail_create:
            raise self.fail_create
        self.created.append(params)
        session_id = f"cs_test_{len(self.created)}"
        url = f"https://checkout.example/{session_id}"
        self.sessions[session_id] = SessionDetail(
            session_id=session_id,
            url=url,
            status="open",
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=30),
        )
        return CheckoutSession(session_id=session_id, url=url)

    def get_checkout_session(self, session_id):
        if session_id not in self.sessions:
            raise NotFoundError("Checkout session not found")
        return self.sessions[session_id]

    def find_session_for_intent(self, payment_intent_id):
        return self.intent_sessions.get(payment_intent_id)

    def create_refund(self, payment_intent_id, currency, amount=None, reason=None, idempotency_key=None):
        if self.fail_refund:
            raise self.fail_refund
        self.refunds.append((payment_intent_id, amount, reason, idempotency_key))
        return Refund(refund_id=f"re_test_{len(self.refunds)}", status="succeeded", amount=amount)

    def verify_webhook_signature(self, payload, signature):
        if signature != "valid":
            raise BadSignatureError("Invalid signature")
        event = json.loads(payload)
        return GatewayEvent(id=event["id"], type=event["type"], data=event["data"]["object"])


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def publisher():
    return EventPublisher()


@pytest.fixture
def published(publisher):
    received = []
    for name in ALL_EVENTS:
        publisher.subscribe(name, lambda event_name, payload: received.append((event_name, payload)))
    return received


@pytest.fixture
def service(gateway, publisher):
    return PaymentService(TestingSessionLocal, gateway, publisher)


def make_request(**overrides):
    data = {
        "order_id": "O1",
        "customer_email": "customer@example.com",
        "amount": "99.99",
        "currency": "USD",
        "idempotency_key": "K1",
        "items": [
            {"product_id": "p1", "product_name": "Keyboard", "quantity": 1, "unit_price": "49.99"},
            {"product_id": "p2", "product_name": "Mouse", "quantity": 2, "unit_price": "25.00"},
        ],
    }
    data.update(overrides)
    return CreatePaymentRequest(**data)


def webhook_body(event_id, event_type, obj):
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}})

