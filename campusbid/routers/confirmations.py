"""
CampusBid Escrow — Delivery Confirmation Router
Buyer requests a one-time code, hands it to the seller at pickup, and the
seller submits it to confirm delivery and trigger the payout.
"""
import logging

from fastapi import APIRouter, Depends, Request, status

from campusbid.auth import Principal, get_current_principal
from campusbid.middleware.rate_limit import RATE_LIMIT_CODE, RATE_LIMIT_WRITE, limiter
from campusbid.routers.deps import get_services
from campusbid.schemas.confirmations import (
    ConfirmationDetailsResponse,
    ConfirmationIssuedResponse,
    ConfirmationVerifyRequest,
    ConfirmationVerifyResponse,
    ExtendExpiryRequest,
)
from campusbid.schemas.escrow import EscrowResponse
from campusbid.services.container import EngineServices

logger = logging.getLogger("campusbid.api.confirmations")

router = APIRouter(
    prefix="/api/transactions/{transaction_id}/confirmation",
    tags=["Delivery Confirmation"],
)


@router.post("", response_model=ConfirmationIssuedResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(RATE_LIMIT_WRITE)
async def generate_confirmation(
    request: Request,
    transaction_id: str,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    """Issue the code once; it cannot be retrieved again."""
    issued = await services.confirmations.generate(transaction_id, principal.user_id)
    return ConfirmationIssuedResponse(
        confirmation_id=issued.confirmation.confirmation_id,
        transaction_id=transaction_id,
        code=issued.code,
        expires_at=issued.confirmation.expires_at,
    )


@router.get("", response_model=ConfirmationDetailsResponse)
async def get_confirmation(
    transaction_id: str,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    return ConfirmationDetailsResponse(
        **await services.confirmations.details(transaction_id, principal.user_id)
    )


@router.post("/verify", response_model=ConfirmationVerifyResponse)
@limiter.limit(RATE_LIMIT_CODE)
async def verify_confirmation(
    request: Request,
    transaction_id: str,
    payload: ConfirmationVerifyRequest,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    """Seller submits the buyer's code."""
    outcome = await services.confirmations.verify(transaction_id, payload.code, principal.user_id)
    message = (
        "Delivery confirmed and funds released to the seller"
        if outcome.released
        else "Delivery confirmed; payout will be retried"
    )
    return ConfirmationVerifyResponse(
        transaction_id=transaction_id,
        confirmation_id=outcome.confirmation.confirmation_id,
        released=outcome.released,
        escrow=EscrowResponse.model_validate(outcome.escrow),
        message=message,
    )


@router.post("/extend", response_model=ConfirmationDetailsResponse)
async def extend_confirmation(
    transaction_id: str,
    payload: ExtendExpiryRequest,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    await services.confirmations.extend_expiry(transaction_id, principal.user_id, payload.hours)
    return ConfirmationDetailsResponse(
        **await services.confirmations.details(transaction_id, principal.user_id)
    )
