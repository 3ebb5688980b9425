"""
CampusBid Escrow — Transaction Pydantic Schemas
Request/response models for the payment ledger endpoints.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from campusbid.models import TransactionStatus


# ═══════════════════════════════════════════════════════
#  Requests
# ═══════════════════════════════════════════════════════


class TransactionCreateRequest(BaseModel):
    """Input for recording a payment intent (the caller is the buyer)."""

    model_config = {"extra": "forbid"}

    seller_id: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(
        ..., gt=0, max_digits=12, decimal_places=2,
        description="Amount in major units, two decimal places",
        examples=["49.99"],
    )
    currency: str = Field("USD", min_length=3, max_length=3)
    payment_method: str = Field("mobile_money", max_length=32)
    auction_id: Optional[str] = Field(None, max_length=64)
    idempotency_key: str = Field(
        ..., min_length=1, max_length=128,
        description="Client-chosen key; repeating it returns the original transaction",
    )
    metadata: Optional[dict] = None

    @field_validator("currency")
    @classmethod
    def currency_upper(cls, v: str) -> str:
        return v.upper()


class PaymentInitiateRequest(BaseModel):
    """Buyer contact handed to the provider when starting the payment."""

    model_config = {"extra": "forbid"}

    email: Optional[str] = Field(None, max_length=255)
    phone_number: Optional[str] = Field(None, max_length=32)
    callback_url: Optional[str] = Field(None, max_length=500)


# ═══════════════════════════════════════════════════════
#  Responses
# ═══════════════════════════════════════════════════════


class TransactionResponse(BaseModel):
    model_config = {"from_attributes": True}

    transaction_id: str
    buyer_id: str
    seller_id: str
    auction_id: Optional[str] = None
    amount: Decimal
    currency: str
    payment_method: str
    status: TransactionStatus
    provider_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: dict = Field(default_factory=dict, validation_alias="meta")
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TransactionCreateResponse(BaseModel):
    created: bool = Field(..., description="False when the idempotency key was replayed")
    transaction: TransactionResponse


class PaymentInitiateResponse(BaseModel):
    transaction: TransactionResponse
    payment_link: str


class TransactionListResponse(BaseModel):
    transactions: list[TransactionResponse]
