"""
CampusBid Escrow — Payment Webhook Intake
Stores every provider delivery, applies it to the ledger and opens escrow
once the transaction is completed.

Providers deliver at least once, so the whole path is idempotent: a repeat
callback for a terminal transaction is a no-op and escrow creation is keyed
by transaction. Processing errors are recorded on the stored delivery and
never bubble up; only a bad HMAC signature is refused.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campusbid.config import get_settings
from campusbid.exceptions import InvalidSignatureError
from campusbid.models import PaymentWebhook, TransactionStatus
from campusbid.services.escrow import EscrowService
from campusbid.services.ledger import TransactionLedger

logger = logging.getLogger("campusbid.webhooks")


@dataclass
class WebhookReceipt:
    webhook_id: int
    processed: bool
    transaction_id: Optional[str] = None
    escrow_id: Optional[str] = None
    escrow_created: bool = False
    error: Optional[str] = None


def sign_payload(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class WebhookProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: TransactionLedger,
        escrows: EscrowService,
        secret: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self._ledger = ledger
        self._escrows = escrows
        self._secret = secret if secret is not None else get_settings().WEBHOOK_SECRET
        self._clock = clock

    def verify_signature(self, body: bytes, signature: Optional[str]) -> None:
        if not self._secret:
            return
        expected = sign_payload(self._secret, body)
        if not signature or not hmac.compare_digest(expected, signature):
            logger.warning("🚫 Rejected webhook with invalid signature")
            raise InvalidSignatureError("Webhook signature mismatch")

    async def _store(self, provider: str, payload: dict) -> int:
        webhook = PaymentWebhook(
            provider=provider,
            event=str(payload.get("event") or payload.get("status") or "unknown")[:100],
            payload=payload,
            received_at=self._clock(),
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(webhook)
        return webhook.id

    async def _mark(self, webhook_id: int, error: Optional[str]) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(PaymentWebhook)
                    .where(PaymentWebhook.id == webhook_id)
                    .values(processed=error is None, error=error, processed_at=self._clock())
                )

    async def process(
        self,
        payload: dict,
        body: bytes = b"",
        signature: Optional[str] = None,
        provider: str = "sandbox",
    ) -> WebhookReceipt:
        """
        Handle one delivery.

        payload carries transaction_id or provider_reference, a status and
        optional metadata. Raises only InvalidSignatureError.
        """
        self.verify_signature(body, signature)
        webhook_id = await self._store(provider, payload)
        receipt = WebhookReceipt(webhook_id=webhook_id, processed=False)

        try:
            result = await self._ledger.apply_callback(
                payload.get("status") or "",
                transaction_id=payload.get("transaction_id"),
                provider_reference=payload.get("provider_reference"),
                metadata=payload.get("metadata"),
            )
            transaction = result.transaction
            receipt.transaction_id = transaction.transaction_id

            if transaction.status == TransactionStatus.COMPLETED:
                creation = await self._escrows.create(
                    transaction.transaction_id, auction_id=transaction.auction_id
                )
                receipt.escrow_id = creation.escrow.escrow_id
                receipt.escrow_created = creation.created
        except Exception as exc:
            # Acknowledged anyway; the stored delivery keeps the error for reconciliation
            logger.exception("Webhook %s could not be processed", webhook_id)
            receipt.error = str(exc) or exc.__class__.__name__

        await self._mark(webhook_id, receipt.error)
        receipt.processed = receipt.error is None
        logger.info(
            "🔔 Webhook %s handled (transaction %s, escrow created: %s)",
            webhook_id, receipt.transaction_id, receipt.escrow_created,
        )
        return receipt
