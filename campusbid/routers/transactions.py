"""
CampusBid Escrow — Transaction Router
Payment intents for won auctions:
  - idempotent creation (201 on first call, 200 on replay)
  - provider initiation and polling
  - buyer cancellation while still pending
Escrow is opened automatically once the provider reports success.
"""
import logging

from fastapi import APIRouter, Depends, Request, Response, status

from campusbid.auth import Principal, get_current_principal
from campusbid.exceptions import UnauthorizedError
from campusbid.gateway import BuyerContact
from campusbid.middleware.rate_limit import RATE_LIMIT_WRITE, limiter
from campusbid.models import TransactionStatus
from campusbid.routers.deps import ensure_participant, get_services
from campusbid.schemas.transactions import (
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    TransactionCreateRequest,
    TransactionCreateResponse,
    TransactionListResponse,
    TransactionResponse,
)
from campusbid.services.container import EngineServices

logger = logging.getLogger("campusbid.api.transactions")

router = APIRouter(prefix="/api/transactions", tags=["Transactions"])


# ═══════════════════════════════════════════════════════
#  POST /api/transactions
# ═══════════════════════════════════════════════════════

@router.post("", response_model=TransactionCreateResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(RATE_LIMIT_WRITE)
async def create_transaction(
    request: Request,
    payload: TransactionCreateRequest,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    """Record a payment intent. Replaying the idempotency key returns the original."""
    transaction, created = await services.ledger.create(
        buyer_id=principal.user_id,
        seller_id=payload.seller_id,
        amount=payload.amount,
        idempotency_key=payload.idempotency_key,
        currency=payload.currency,
        payment_method=payload.payment_method,
        auction_id=payload.auction_id,
        metadata=payload.metadata,
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return TransactionCreateResponse(
        created=created,
        transaction=TransactionResponse.model_validate(transaction),
    )


@router.get("", response_model=TransactionListResponse)
async def list_my_transactions(
    limit: int = 50,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    transactions = await services.ledger.list_for_user(principal.user_id, limit=min(limit, 200))
    return TransactionListResponse(
        transactions=[TransactionResponse.model_validate(t) for t in transactions]
    )


@router.get("/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(
    transaction_id: str,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    transaction = await services.ledger.get(transaction_id)
    ensure_participant(principal, transaction.buyer_id, transaction.seller_id)
    return TransactionResponse.model_validate(transaction)


# ═══════════════════════════════════════════════════════
#  Provider interaction
# ═══════════════════════════════════════════════════════

@router.post("/{transaction_id}/initiate", response_model=PaymentInitiateResponse)
@limiter.limit(RATE_LIMIT_WRITE)
async def initiate_payment(
    request: Request,
    transaction_id: str,
    payload: PaymentInitiateRequest,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    """Hand the payment to the provider and return the buyer's payment link."""
    transaction = await services.ledger.get(transaction_id)
    if transaction.buyer_id != principal.user_id:
        raise UnauthorizedError("Only the buyer can pay for this transaction")

    initiated = await services.ledger.initiate_payment(
        transaction_id,
        BuyerContact(email=payload.email, phone_number=payload.phone_number),
        callback_url=payload.callback_url,
    )
    return PaymentInitiateResponse(
        transaction=TransactionResponse.model_validate(initiated.transaction),
        payment_link=initiated.payment_link,
    )


@router.post("/{transaction_id}/verify", response_model=TransactionResponse)
async def verify_payment(
    transaction_id: str,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    """Poll the provider; a completed payment opens escrow like a webhook would."""
    transaction = await services.ledger.get(transaction_id)
    ensure_participant(principal, transaction.buyer_id, transaction.seller_id)

    result = await services.ledger.verify_payment(transaction_id)
    if result.transaction.status == TransactionStatus.COMPLETED:
        await services.escrows.create(
            transaction_id, auction_id=result.transaction.auction_id
        )
    return TransactionResponse.model_validate(result.transaction)


@router.post("/{transaction_id}/cancel", response_model=TransactionResponse)
async def cancel_transaction(
    transaction_id: str,
    principal: Principal = Depends(get_current_principal),
    services: EngineServices = Depends(get_services),
):
    transaction = await services.ledger.cancel(transaction_id, principal.user_id)
    logger.info("Transaction %s cancelled by buyer", transaction_id)
    return TransactionResponse.model_validate(transaction)
