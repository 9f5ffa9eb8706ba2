from decimal import Decimal

import pytest

from conftest import TestingSessionLocal, make_request, webhook_body
from payments.exceptions import ConflictError, GatewayError, InvalidStateError, NotFoundError, ValidationError
from payments.models import Payment, PaymentStatus, PaymentTransaction, TransactionType
from payments.schemas import RefundRequest
from payments.store import PaymentStore
from payments.webhooks import WebhookProcessor


def count(model, **filters):
    db = TestingSessionLocal()
    n = db.query(model).filter_by(**filters).count()
    db.close()
    return n


def load(payment_id):
    db = TestingSessionLocal()
    payment = db.get(Payment, payment_id)
    db.expunge(payment)
    db.close()
    return payment


def complete(service, payment_id, event_id="evt_1", intent_id="pi_1"):
    session_id = load(payment_id).gateway_session_id
    return service.process_webhook_event(
        TransactionType.SESSION_COMPLETED, session_id, event_id, {"payment_intent_id": intent_id}
    )


# --- creation ---------------------------------------------------------------

def test_create_payment_writes_payment_and_genesis_transaction(service, gateway, published):
    result = service.create_payment("user-1", make_request())

    assert result.status == PaymentStatus.PENDING
    assert result.amount == Decimal("99.99")
    assert result.checkout_url == "https://checkout.example/cs_test_1"
    assert count(Payment) == 1
    assert count(PaymentTransaction, payment_id=result.payment_id, type=TransactionType.SESSION_CREATED) == 1

    payment = load(result.payment_id)
    assert payment.user_id == "user-1"
    assert payment.gateway_session_id == "cs_test_1"
    assert payment.idempotency_key == "K1"

    assert [name for name, _ in published] == ["payment.created"]
    assert published[0][1]["payment_id"] == result.payment_id
    assert published[0][1]["amount"] == "99.99"


def test_line_items_are_passed_to_gateway(service, gateway):
    service.create_payment("user-1", make_request(metadata={"channel": "web"}))

    params = gateway.created[0]
    assert params.order_id == "O1"
    assert params.metadata == {"channel": "web"}
    assert [(i.name, i.quantity, i.unit_price) for i in params.line_items] == [
        ("Keyboard", 1, Decimal("49.99")),
        ("Mouse", 2, Decimal("25.00")),
    ]


def test_same_idempotency_key_while_pending_returns_existing_session(service, gateway, published):
    first = service.create_payment("user-1", make_request())
    second = service.create_payment("user-1", make_request())

    assert second.payment_id == first.payment_id
    assert second.checkout_url == first.checkout_url
    assert len(gateway.created) == 1
    assert count(Payment) == 1
    assert len(published) == 1


def test_same_idempotency_key_after_success_conflicts(service):
    first = service.create_payment("user-1", make_request())
    complete(service, first.payment_id)

    with pytest.raises(ConflictError):
        service.create_payment("user-1", make_request())
    assert count(Payment) == 1


def test_same_idempotency_key_with_expired_session_conflicts(service, gateway):
    first = service.create_payment("user-1", make_request())
    gateway.sessions["cs_test_1"].status = "expired"

    with pytest.raises(ConflictError):
        service.create_payment("user-1", make_request())
    assert count(Payment) == 1


def test_idempotency_key_reused_for_other_order_conflicts(service):
    service.create_payment("user-1", make_request())

    with pytest.raises(ConflictError):
        service.create_payment("user-1", make_request(order_id="O2"))


def test_active_payment_blocks_new_payment_for_order(service, gateway):
    service.create_payment("user-1", make_request())

    with pytest.raises(ConflictError):
        service.create_payment("user-1", make_request(idempotency_key="K-other"))
    assert len(gateway.created) == 1


@pytest.mark.parametrize("kind", [TransactionType.INTENT_FAILED, TransactionType.SESSION_EXPIRED])
def test_order_with_only_closed_payments_accepts_new_payment(service, kind):
    first = service.create_payment("user-1", make_request())
    service.process_webhook_event(kind, "cs_test_1", "evt_close")

    second = service.create_payment("user-1", make_request(idempotency_key="K-retry"))

    assert second.payment_id != first.payment_id
    assert count(Payment, order_id="O1") == 2


def test_refunded_order_accepts_new_payment(service):
    first = service.create_payment("user-1", make_request())
    complete(service, first.payment_id)
    service.create_refund(first.payment_id, RefundRequest())

    second = service.create_payment("user-1", make_request(idempotency_key="K-again"))
    assert second.status == PaymentStatus.PENDING


def test_gateway_failure_leaves_no_payment(service, gateway, published):
    gateway.fail_create = GatewayError("Stripe error during create checkout session")

    with pytest.raises(GatewayError):
        service.create_payment("user-1", make_request())

    assert count(Payment) == 0
    assert count(PaymentTransaction) == 0
    assert published == []


def test_concurrent_same_key_resolves_to_single_payment(service, gateway, monkeypatch):
    winner = service.create_payment("user-1", make_request(idempotency_key="K2"))

    # the losing request passed both pre-checks before the winner committed
    real_lookup = PaymentStore.by_idempotency_key
    calls = []

    def racing_lookup(self, key):
        calls.append(key)
        return None if len(calls) == 1 else real_lookup(self, key)

    monkeypatch.setattr(PaymentStore, "by_idempotency_key", racing_lookup)
    monkeypatch.setattr(PaymentStore, "active_for_order", lambda self, order_id, active: None)

    loser = service.create_payment("user-1", make_request(idempotency_key="K2"))

    assert loser.payment_id == winner.payment_id
    assert loser.checkout_url == winner.checkout_url
    assert count(Payment, idempotency_key="K2") == 1
    assert len(gateway.created) == 2  # the loser's session is left to expire


def test_expiry_of_race_losers_session_is_acknowledged(service, gateway, publisher, monkeypatch):
    winner = service.create_payment("user-1", make_request(idempotency_key="K2"))

    real_lookup = PaymentStore.by_idempotency_key
    calls = []

    def racing_lookup(self, key):
        calls.append(key)
        return None if len(calls) == 1 else real_lookup(self, key)

    monkeypatch.setattr(PaymentStore, "by_idempotency_key", racing_lookup)
    monkeypatch.setattr(PaymentStore, "active_for_order", lambda self, order_id, active: None)
    service.create_payment("user-1", make_request(idempotency_key="K2"))

    processor = WebhookProcessor(gateway, service, publisher)
    body = webhook_body("evt_orphan", "checkout.session.expired", {"id": "cs_test_2"})
    processor.handle(body.encode(), "valid")

    assert load(winner.payment_id).status == PaymentStatus.PENDING
    assert count(PaymentTransaction, gateway_event_id="evt_orphan") == 0


def test_concurrent_payments_for_same_order_conflict(service, monkeypatch):
    service.create_payment("user-1", make_request(idempotency_key="K3"))
    monkeypatch.setattr(PaymentStore, "active_for_order", lambda self, order_id, active: None)

    with pytest.raises(ConflictError):
        service.create_payment("user-1", make_request(idempotency_key="K4"))
    assert count(Payment, order_id="O1") == 1


# --- reads ------------------------------------------------------------------

def test_get_payment_and_by_order(service):
    created = service.create_payment("user-1", make_request())

    by_id = service.get_payment(created.payment_id)
    by_order = service.get_payment_by_order("O1")

    assert by_id.id == by_order.id == created.payment_id
    assert by_id.status == PaymentStatus.PENDING
    assert [t.type for t in by_id.transactions] == [TransactionType.SESSION_CREATED]


def test_get_payment_not_found(service):
    with pytest.raises(NotFoundError):
        service.get_payment("missing")
    with pytest.raises(NotFoundError):
        service.get_payment_by_order("missing")


def test_list_user_payments_paginates(service):
    for i in range(3):
        service.create_payment("user-1", make_request(order_id=f"O{i}", idempotency_key=f"K{i}"))
    service.create_payment("user-2", make_request(order_id="OX", idempotency_key="KX"))

    page = service.list_user_payments("user-1", page=1, limit=2)

    assert page.total == 3
    assert len(page.payments) == 2
    assert all(p.user_id == "user-1" for p in page.payments)
    assert len(service.list_user_payments("user-1", page=2, limit=2).payments) == 1


# --- webhook transitions ----------------------------------------------------

def test_session_completed_marks_payment_succeeded(service, published):
    created = service.create_payment("user-1", make_request())

    assert complete(service, created.payment_id, "evt_1", "pi_123") is True

    payment = load(created.payment_id)
    assert payment.status == PaymentStatus.SUCCEEDED
    assert payment.processed_at is not None
    assert payment.gateway_payment_intent_id == "pi_123"
    assert count(PaymentTransaction, gateway_event_id="evt_1") == 1
    assert [name for name, _ in published] == ["payment.created", "payment.succeeded"]


def test_replayed_event_is_a_no_op(service, published):
    created = service.create_payment("user-1", make_request())
    complete(service, created.payment_id, "evt_1")

    assert complete(service, created.payment_id, "evt_1") is False

    assert count(PaymentTransaction, payment_id=created.payment_id) == 2
    assert [name for name, _ in published].count("payment.succeeded") == 1


def test_new_completion_event_after_success_is_a_no_op(service, published):
    created = service.create_payment("user-1", make_request())
    complete(service, created.payment_id, "evt_1", "pi_1")

    assert complete(service, created.payment_id, "evt_2", "pi_2") is False

    payment = load(created.payment_id)
    assert payment.gateway_payment_intent_id == "pi_1"
    assert count(PaymentTransaction, gateway_event_id="evt_2") == 0
    assert [name for name, _ in published].count("payment.succeeded") == 1


def test_duplicate_event_race_rolls_back_status_change(service, monkeypatch, published):
    first = service.create_payment("user-1", make_request())
    second = service.create_payment("user-1", make_request(order_id="O2", idempotency_key="K2"))
    complete(service, first.payment_id, "evt_1")

    # both deliveries passed the dedup read before either committed
    monkeypatch.setattr(PaymentStore, "event_seen", lambda self, event_id: False)
    assert complete(service, second.payment_id, "evt_1") is False

    assert load(second.payment_id).status == PaymentStatus.PENDING
    assert count(PaymentTransaction, gateway_event_id="evt_1") == 1
    assert [name for name, _ in published].count("payment.succeeded") == 1


def test_intent_failed_marks_payment_failed(service, published):
    created = service.create_payment("user-1", make_request())

    service.process_webhook_event(
        TransactionType.INTENT_FAILED, "cs_test_1", "evt_f", {"error_message": "Card declined"}
    )

    payment = load(created.payment_id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.error_message == "Card declined"
    assert published[-1] == ("payment.failed", {
        "payment_id": created.payment_id,
        "order_id": "O1",
        "user_id": "user-1",
        "error_message": "Card declined",
    })


def test_session_expired_cancels_payment(service, published):
    created = service.create_payment("user-1", make_request())

    service.process_webhook_event(TransactionType.SESSION_EXPIRED, "cs_test_1", "evt_x")

    assert load(created.payment_id).status == PaymentStatus.CANCELLED
    assert published[-1][0] == "payment.expired"


def test_expiry_after_success_does_not_regress(service):
    created = service.create_payment("user-1", make_request())
    complete(service, created.payment_id, "evt_1")

    assert service.process_webhook_event(TransactionType.SESSION_EXPIRED, "cs_test_1", "evt_x") is False
    assert load(created.payment_id).status == PaymentStatus.SUCCEEDED


def test_unknown_session_raises_not_found(service):
    with pytest.raises(NotFoundError):
        service.process_webhook_event(TransactionType.SESSION_COMPLETED, "cs_unknown", "evt_1")


# --- refunds ----------------------------------------------------------------

def test_refund_succeeded_payment(service, gateway, published):
    created = service.create_payment("user-1", make_request())
    complete(service, created.payment_id, "evt_1", "pi_123")

    view = service.create_refund(created.payment_id, RefundRequest(reason="requested_by_customer"))

    assert view.status == PaymentStatus.REFUNDED
    assert view.amount == Decimal("99.99")
    refund_txn = view.transactions[-1]
    assert refund_txn.type == TransactionType.REFUND_CREATED
    assert refund_txn.amount == Decimal("99.99")
    assert refund_txn.gateway_event_id == "re_test_1"
    assert gateway.refunds == [("pi_123", None, "requested_by_customer", f"refund-{created.payment_id}")]
    assert published[-1][0] == "payment.refunded"
    assert published[-1][1]["refund_amount"] == "99.99"


def test_partial_refund_records_amount_and_moves_to_refunded(service, gateway):
    created = service.create_payment("user-1", make_request())
    complete(service, created.payment_id)

    view = service.create_refund(created.payment_id, RefundRequest(amount=Decimal("40.00")))

    assert view.status == PaymentStatus.REFUNDED
    assert view.amount == Decimal("99.99")
    assert view.transactions[-1].amount == Decimal("40.00")
    assert gateway.refunds[0][1] == Decimal("40.00")


def test_refund_pending_payment_is_invalid(service, gateway):
    created = service.create_payment("user-1", make_request())

    with pytest.raises(InvalidStateError):
        service.create_refund(created.payment_id, RefundRequest())

    assert load(created.payment_id).status == PaymentStatus.PENDING
    assert gateway.refunds == []


def test_refund_failed_payment_is_invalid(service, gateway):
    created = service.create_payment("user-1", make_request())
    service.process_webhook_event(TransactionType.INTENT_FAILED, "cs_test_1", "evt_f")

    with pytest.raises(InvalidStateError):
        service.create_refund(created.payment_id, RefundRequest())

    assert load(created.payment_id).status == PaymentStatus.FAILED
    assert gateway.refunds == []


def test_refund_twice_is_invalid(service):
    created = service.create_payment("user-1", make_request())
    complete(service, created.payment_id)
    service.create_refund(created.payment_id, RefundRequest())

    with pytest.raises(InvalidStateError):
        service.create_refund(created.payment_id, RefundRequest())
    assert count(PaymentTransaction, type=TransactionType.REFUND_CREATED) == 1


def test_refund_more_than_paid_is_rejected(service, gateway):
    created = service.create_payment("user-1", make_request())
    complete(service, created.payment_id)

    with pytest.raises(ValidationError):
        service.create_refund(created.payment_id, RefundRequest(amount=Decimal("150.00")))
    assert gateway.refunds == []


def test_refund_unknown_payment(service):
    with pytest.raises(NotFoundError):
        service.create_refund("missing", RefundRequest())


def test_refund_gateway_failure_keeps_payment_succeeded(service, gateway, published):
    created = service.create_payment("user-1", make_request())
    complete(service, created.payment_id)
    gateway.fail_refund = GatewayError("Stripe error during create refund")

    with pytest.raises(GatewayError):
        service.create_refund(created.payment_id, RefundRequest())

    assert load(created.payment_id).status == PaymentStatus.SUCCEEDED
    assert "payment.refunded" not in [name for name, _ in published]


# --- end to end -------------------------------------------------------------

def test_checkout_then_completion_then_replay(service):
    created = service.create_payment("user-1", make_request())
    assert created.status == PaymentStatus.PENDING
    assert created.amount == Decimal("99.99")

    complete(service, created.payment_id, "evt_1")
    payment = service.get_payment(created.payment_id)
    assert payment.status == PaymentStatus.SUCCEEDED
    assert payment.processed_at is not None

    complete(service, created.payment_id, "evt_1")
    replayed = service.get_payment(created.payment_id)
    assert replayed.status == PaymentStatus.SUCCEEDED
    assert len(replayed.transactions) == 2
