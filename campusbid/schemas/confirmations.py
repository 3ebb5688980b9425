"""
CampusBid Escrow — Delivery Confirmation Pydantic Schemas
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from campusbid.schemas.escrow import EscrowResponse


class ConfirmationVerifyRequest(BaseModel):
    """Seller presents the code the buyer handed over."""

    model_config = {"extra": "forbid"}

    code: str = Field(..., min_length=1, max_length=16, examples=["583021"])


class ExtendExpiryRequest(BaseModel):
    model_config = {"extra": "forbid"}

    hours: int = Field(..., gt=0, le=24 * 14)


class ConfirmationIssuedResponse(BaseModel):
    """Returned once to the buyer; the code is not retrievable afterwards."""

    confirmation_id: str
    transaction_id: str
    code: str
    expires_at: datetime
    message: str = "Confirmation code generated. Share it with the seller at hand-off."


class ConfirmationDetailsResponse(BaseModel):
    model_config = {"from_attributes": True}

    confirmation_id: str
    transaction_id: str
    buyer_id: str
    generated_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None
    is_used: bool
    failed_attempts: int = 0


class ConfirmationVerifyResponse(BaseModel):
    transaction_id: str
    confirmation_id: str
    released: bool
    escrow: EscrowResponse
    message: str
