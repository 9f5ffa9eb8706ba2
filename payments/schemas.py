from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import (
    AliasChoices,
    AnyHttpUrl,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    PlainSerializer,
    field_validator,
    model_validator,
)

from payments.models import PaymentStatus, TransactionStatus, TransactionType

# Decimal in Python, a JSON number on the wire
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class PaymentItem(BaseModel):
    product_id: str = Field(min_length=1)
    product_name: str = Field(min_length=1)
    description: Optional[str] = None
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(gt=0, decimal_places=2)


class CreatePaymentRequest(BaseModel):
    order_id: str = Field(min_length=1, max_length=255)
    customer_email: EmailStr
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    currency: str = Field(default="USD", pattern=r"^[A-Za-z]{3}$")
    idempotency_key: str = Field(min_length=1, max_length=255)
    items: List[PaymentItem] = Field(min_length=1)
    metadata: Optional[Dict[str, str]] = None
    success_url: Optional[AnyHttpUrl] = None
    cancel_url: Optional[AnyHttpUrl] = None

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def items_match_amount(self):
        total = sum((item.unit_price * item.quantity for item in self.items), Decimal("0"))
        if total != self.amount:
            raise ValueError(f"items total {total} does not match amount {self.amount}")
        return self


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    reason: Optional[Literal["duplicate", "fraudulent", "requested_by_customer"]] = None


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: TransactionType
    status: TransactionStatus
    amount: Money
    currency: str
    gateway_event_id: Optional[str] = None
    gateway_event_type: Optional[str] = None
    error_details: Optional[str] = None
    created_at: datetime


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    user_id: str
    gateway_session_id: Optional[str] = None
    gateway_payment_intent_id: Optional[str] = None
    amount: Money
    currency: str
    status: PaymentStatus
    idempotency_key: str
    metadata: Optional[Dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("metadata_", "metadata")
    )
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None
    transactions: List[TransactionResponse] = []


class CreatePaymentResponse(BaseModel):
    payment_id: str
    order_id: str
    status: PaymentStatus
    amount: Money
    currency: str
    checkout_url: Optional[str] = None


class UserPaymentsResponse(BaseModel):
    payments: List[PaymentResponse]
    total: int
    page: int
    limit: int


class IdempotencyKeyResponse(BaseModel):
    idempotency_key: str


class WebhookAck(BaseModel):
    received: bool = True
