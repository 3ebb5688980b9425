"""
CampusBid Escrow — Dispute Router
Auction winners open disputes and add evidence; admins review, resolve
(refund_buyer / release_to_seller) or reject them.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from campusbid.auth import Principal, get_current_principal, require_admin
from campusbid.middleware.rate_limit import RATE_LIMIT_WRITE, limiter
from campusbid.routers.deps import ensure_participant, get_services
from campusbid.schemas.disputes import (
    DisputeCreateRequest,
    DisputeListResponse,
    DisputeRejectRequest,
    DisputeResolveRequest,
    DisputeResponse,
    EvidenceItem,
)
from campusbid.services.container import EngineServices

logger = logging.getLogger("campusbid.api.disputes")

router = APIRouter(prefix="/api/disputes", tags=["Disputes"])


# ═══════════════════════════════════════════════════════
#  Buyer side
# ═══════════════════════════════════════════════════════

@router.post("", response_model=DisputeResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(RATE_LIMIT_WRITE)
async def create_dispute(
    request: Request,
    payload: DisputeCreateRequest,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    dispute = await services.disputes.create(
        payload.auction_id,
        principal.user_id,
        payload.reason.value,
        payload.description,
        [item.model_dump() for item in payload.evidence],
    )
    return DisputeResponse.model_validate(dispute)


@router.post("/{dispute_id}/evidence", response_model=DisputeResponse)
async def add_evidence(
    dispute_id: str,
    payload: EvidenceItem,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    dispute = await services.disputes.add_evidence(dispute_id, principal.user_id, payload.model_dump())
    return DisputeResponse.model_validate(dispute)


@router.get("", response_model=DisputeListResponse)
async def list_disputes(
    status_filter: Optional[str] = Query(None, alias="status"),
    buyer_id: Optional[str] = None,
    seller_id: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    """Admins may filter freely; other callers only see disputes they opened."""
    if not principal.is_admin:
        buyer_id, seller_id = principal.user_id, None
    limit = max(1, min(limit, 100))
    disputes, total = await services.disputes.list(
        status=status_filter, buyer_id=buyer_id, seller_id=seller_id, page=page, limit=limit,
    )
    return DisputeListResponse(
        disputes=[DisputeResponse.model_validate(d) for d in disputes],
        total=total,
        page=max(page, 1),
        limit=limit,
    )


@router.get("/{dispute_id}", response_model=DisputeResponse)
async def get_dispute(
    dispute_id: str,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    dispute = await services.disputes.get(dispute_id)
    ensure_participant(principal, dispute.buyer_id, dispute.seller_id)
    return DisputeResponse.model_validate(dispute)


# ═══════════════════════════════════════════════════════
#  Reviewer side (admin only)
# ═══════════════════════════════════════════════════════

@router.post("/{dispute_id}/review", response_model=DisputeResponse)
async def review_dispute(
    dispute_id: str,
    reviewer: Principal = Depends(require_admin),
    services: EngineServices = Depends(get_services),
):
    dispute = await services.disputes.mark_under_review(dispute_id, reviewer.user_id)
    return DisputeResponse.model_validate(dispute)


@router.post("/{dispute_id}/resolve", response_model=DisputeResponse)
async def resolve_dispute(
    dispute_id: str,
    payload: DisputeResolveRequest,
    reviewer: Principal = Depends(require_admin),
    services: EngineServices = Depends(get_services),
):
    dispute = await services.disputes.resolve(
        dispute_id, payload.resolution.value, payload.note, reviewer.user_id
    )
    logger.info("Dispute %s resolved via API by %s", dispute_id, reviewer.user_id)
    return DisputeResponse.model_validate(dispute)


@router.post("/{dispute_id}/reject", response_model=DisputeResponse)
async def reject_dispute(
    dispute_id: str,
    payload: DisputeRejectRequest,
    reviewer: Principal = Depends(require_admin),
    services: EngineServices = Depends(get_services),
):
    dispute = await services.disputes.reject(dispute_id, reviewer.user_id, payload.note)
    return DisputeResponse.model_validate(dispute)
