"""
CampusBid Escrow — Dispute Pydantic Schemas
Request/response models for opening, reviewing and closing disputes.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from campusbid.models import DisputeReason, DisputeResolution, DisputeStatus


# ═══════════════════════════════════════════════════════
#  Requests
# ═══════════════════════════════════════════════════════


class EvidenceItem(BaseModel):
    model_config = {"extra": "forbid"}

    description: str = Field(..., min_length=1, max_length=2000)
    image_urls: list[str] = Field(default_factory=list, max_length=10)


class DisputeCreateRequest(BaseModel):
    """Opened by the auction winner; freezes the escrow."""

    model_config = {"extra": "forbid"}

    auction_id: str = Field(..., min_length=1, max_length=64)
    reason: DisputeReason
    description: str = Field(..., min_length=1, max_length=5000)
    evidence: list[EvidenceItem] = Field(default_factory=list)


class DisputeResolveRequest(BaseModel):
    model_config = {"extra": "forbid"}

    resolution: DisputeResolution
    note: str = Field(..., min_length=1, max_length=2000)


class DisputeRejectRequest(BaseModel):
    model_config = {"extra": "forbid"}

    note: str = Field(..., min_length=1, max_length=2000)


# ═══════════════════════════════════════════════════════
#  Responses
# ═══════════════════════════════════════════════════════


class DisputeResponse(BaseModel):
    model_config = {"from_attributes": True}

    dispute_id: str
    auction_id: Optional[str] = None
    escrow_id: str
    buyer_id: str
    seller_id: str
    reason: DisputeReason
    description: str
    evidence: list[dict] = Field(default_factory=list)
    status: DisputeStatus
    resolution: DisputeResolution
    resolution_note: Optional[str] = None
    reviewer_id: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    time_limit: datetime
    created_at: Optional[datetime] = None


class DisputeListResponse(BaseModel):
    disputes: list[DisputeResponse]
    total: int
    page: int
    limit: int
