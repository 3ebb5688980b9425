"""
CampusBid Escrow — Escrow Pydantic Schemas
Request/response models for the escrow endpoints. The delivery code hash
and ciphertext never leave the service layer.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from campusbid.models import EscrowStatus, ReleaseKind


class VerifyDeliveryRequest(BaseModel):
    """Delivery code presented at hand-off."""

    model_config = {"extra": "forbid"}

    code: str = Field(
        ..., min_length=1, max_length=16,
        description="6-digit delivery code",
        examples=["042917"],
    )


class RefundRequest(BaseModel):
    model_config = {"extra": "forbid"}

    reason: str = Field(..., min_length=1, max_length=500)


class EscrowResponse(BaseModel):
    """Current state of an escrow."""

    model_config = {"from_attributes": True}

    escrow_id: str
    transaction_id: str
    auction_id: Optional[str] = None
    buyer_id: str
    seller_id: str
    amount: Decimal
    currency: str
    status: EscrowStatus
    release_kind: Optional[ReleaseKind] = None
    payout_reference: Optional[str] = None
    refund_reference: Optional[str] = None
    disputed: bool = False
    notes: Optional[str] = None
    locked_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class DeliveryCodeResponse(BaseModel):
    escrow_id: str
    delivery_code: str


class HeldEscrowListResponse(BaseModel):
    escrows: list[EscrowResponse]
    total_held: Decimal


class WithdrawalEligibilityResponse(BaseModel):
    seller_id: str
    can_withdraw: bool
    policy: str
    withdrawable_balance: Decimal
