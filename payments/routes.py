import time
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from payments.auth import get_current_user
from payments.database import SessionLocal
from payments.events import EventPublisher
from payments.gateway import PaymentGateway
from payments.schemas import (
    CreatePaymentRequest,
    CreatePaymentResponse,
    IdempotencyKeyResponse,
    PaymentResponse,
    RefundRequest,
    UserPaymentsResponse,
    WebhookAck,
)
from payments.service import PaymentService
from payments.stripe_service import StripeGateway
from payments.webhooks import WebhookProcessor

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
health_router = APIRouter(prefix="/health", tags=["health"])

publisher = EventPublisher()
STARTED_AT = time.monotonic()


@lru_cache()
def get_gateway() -> PaymentGateway:
    return StripeGateway()


def get_payment_service(gateway: PaymentGateway = Depends(get_gateway)) -> PaymentService:
    return PaymentService(SessionLocal, gateway, publisher)


def get_webhook_processor(
    gateway: PaymentGateway = Depends(get_gateway),
    service: PaymentService = Depends(get_payment_service),
) -> WebhookProcessor:
    return WebhookProcessor(gateway, service, publisher)


@router.post("", response_model=CreatePaymentResponse, status_code=201)
def create_payment_api(
    request: CreatePaymentRequest,
    user_id: str = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return service.create_payment(user_id, request)


@router.get("/idempotency-key", response_model=IdempotencyKeyResponse)
def idempotency_key(user_id: str = Depends(get_current_user)):
    return IdempotencyKeyResponse(idempotency_key=PaymentService.generate_idempotency_key())


@router.get("/my-payments", response_model=UserPaymentsResponse)
def my_payments(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user_id: str = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return service.list_user_payments(user_id, page, limit)


@router.get("/order/{order_id}", response_model=PaymentResponse)
def payment_for_order(
    order_id: str,
    user_id: str = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return service.get_payment_by_order(order_id)


@router.get("/{payment_id}", response_model=PaymentResponse)
def get_payment_api(
    payment_id: str,
    user_id: str = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return service.get_payment(payment_id)


@router.post("/{payment_id}/refund", response_model=PaymentResponse)
def refund(
    payment_id: str,
    request: Optional[RefundRequest] = None,
    user_id: str = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return service.create_refund(payment_id, request or RefundRequest())


@webhook_router.post("", response_model=WebhookAck)
async def gateway_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    # signature is computed over the exact raw bytes
    payload = await request.body()
    await run_in_threadpool(processor.handle, payload, stripe_signature)
    return WebhookAck(received=True)


def _database_ok() -> bool:
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.warning("health_database_unreachable", error=str(e))
        return False


@health_router.get("")
def health():
    database_ok = _database_ok()
    return {
        "status": "ok" if database_ok else "error",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "payment-service",
        "database": "connected" if database_ok else "disconnected",
        "uptime": int(time.monotonic() - STARTED_AT),
    }


@health_router.get("/ready")
def ready():
    return {"ready": _database_ok()}


@health_router.get("/live")
def live():
    return {"alive": True}
