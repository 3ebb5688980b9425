"""
CampusBid Escrow — Escrow Router
Thin adapter over EscrowService:
  - buyer retrieves the delivery code while funds are locked
  - seller presents the code at hand-off (brute-force protected)
  - buyer releases once delivery is confirmed; seller or admin refunds
  - sellers check withdrawal eligibility, admins list held funds
"""
import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Request

from campusbid.auth import Principal, get_current_principal, require_admin
from campusbid.config import get_settings
from campusbid.exceptions import UnauthorizedError
from campusbid.middleware.rate_limit import RATE_LIMIT_CODE, RATE_LIMIT_WRITE, limiter
from campusbid.routers.deps import ensure_participant, get_services
from campusbid.schemas.escrow import (
    DeliveryCodeResponse,
    EscrowResponse,
    HeldEscrowListResponse,
    RefundRequest,
    VerifyDeliveryRequest,
    WithdrawalEligibilityResponse,
)
from campusbid.services.container import EngineServices

logger = logging.getLogger("campusbid.api.escrow")

router = APIRouter(prefix="/api/escrow", tags=["Escrow"])


# ═══════════════════════════════════════════════════════
#  Seller / admin views
# ═══════════════════════════════════════════════════════

@router.get("/held", response_model=HeldEscrowListResponse)
async def list_held_escrows(
    seller_id: Optional[str] = None,
    reviewer: Principal = Depends(require_admin),
    services: EngineServices = Depends(get_services),
):
    """Every escrow still holding money (admin only)."""
    escrows = await services.escrows.list_held(seller_id)
    return HeldEscrowListResponse(
        escrows=[EscrowResponse.model_validate(e) for e in escrows],
        total_held=sum((e.amount for e in escrows), Decimal("0.00")),
    )


@router.get("/withdrawal-eligibility", response_model=WithdrawalEligibilityResponse)
async def withdrawal_eligibility(
    amount: Optional[Decimal] = None,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    """Whether the calling seller may withdraw right now."""
    return WithdrawalEligibilityResponse(
        seller_id=principal.user_id,
        can_withdraw=await services.escrows.can_withdraw(principal.user_id, amount),
        policy=get_settings().WITHDRAWAL_POLICY,
        withdrawable_balance=await services.escrows.withdrawable_balance(principal.user_id),
    )


@router.get("/by-transaction/{transaction_id}", response_model=EscrowResponse)
async def get_escrow_for_transaction(
    transaction_id: str,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    escrow = await services.escrows.get_by_transaction(transaction_id)
    ensure_participant(principal, escrow.buyer_id, escrow.seller_id)
    return EscrowResponse.model_validate(escrow)


@router.get("/{escrow_id}", response_model=EscrowResponse)
async def get_escrow(
    escrow_id: str,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    """Check the current status of an escrow."""
    escrow = await services.escrows.get(escrow_id)
    ensure_participant(principal, escrow.buyer_id, escrow.seller_id)
    return EscrowResponse.model_validate(escrow)


# ═══════════════════════════════════════════════════════
#  Delivery code
# ═══════════════════════════════════════════════════════

@router.get("/{escrow_id}/delivery-code", response_model=DeliveryCodeResponse)
async def get_delivery_code(
    escrow_id: str,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    code = await services.escrows.get_delivery_code(escrow_id, principal.user_id)
    return DeliveryCodeResponse(escrow_id=escrow_id, delivery_code=code)


@router.post("/{escrow_id}/verify-delivery", response_model=EscrowResponse)
@limiter.limit(RATE_LIMIT_CODE)
async def verify_delivery(
    request: Request,
    escrow_id: str,
    payload: VerifyDeliveryRequest,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    """Seller presents the buyer's code: locked → pending_confirmation."""
    escrow = await services.escrows.get(escrow_id)
    if escrow.seller_id != principal.user_id:
        raise UnauthorizedError("Only the seller can verify delivery")
    escrow = await services.escrows.verify_delivery(escrow_id, payload.code, principal.user_id)
    return EscrowResponse.model_validate(escrow)


# ═══════════════════════════════════════════════════════
#  Settlement
# ═══════════════════════════════════════════════════════

@router.post("/{escrow_id}/release", response_model=EscrowResponse)
@limiter.limit(RATE_LIMIT_WRITE)
async def release_escrow(
    request: Request,
    escrow_id: str,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    """Buyer releases funds after delivery was confirmed."""
    escrow = await services.escrows.get(escrow_id)
    if escrow.buyer_id != principal.user_id:
        raise UnauthorizedError("Only the buyer can release these funds")
    escrow = await services.escrows.release_funds(escrow_id, principal.user_id)
    return EscrowResponse.model_validate(escrow)


@router.post("/{escrow_id}/refund", response_model=EscrowResponse)
@limiter.limit(RATE_LIMIT_WRITE)
async def refund_escrow(
    request: Request,
    escrow_id: str,
    payload: RefundRequest,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    """Cancellation refund, by the seller or an admin."""
    escrow = await services.escrows.get(escrow_id)
    if not (principal.is_admin or escrow.seller_id == principal.user_id):
        raise UnauthorizedError("Only the seller or an admin can refund this escrow")
    escrow = await services.escrows.refund(escrow_id, payload.reason, principal.user_id)
    return EscrowResponse.model_validate(escrow)
