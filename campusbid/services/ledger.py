"""
CampusBid Escrow — Transaction Ledger
Records payment intents and their provider lifecycle:

    pending → processing → completed | failed      (pending → cancelled)

  - idempotent creation keyed by a client-supplied idempotency key
  - gateway initiation updates status only after the provider answers
  - at-least-once provider callbacks: a repeat for a terminal record is a no-op
The ledger never creates escrow itself; callers react to the completed record.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campusbid.audit import AuditRecorder
from campusbid.config import get_settings
from campusbid.encryption import generate_reference
from campusbid.exceptions import (
    DuplicateKeyConflict,
    GatewayFailure,
    InvalidRequestError,
    InvalidStateTransition,
    NotFoundError,
    UnauthorizedError,
)
from campusbid.gateway import BuyerContact, PaymentGateway, call_gateway
from campusbid.models import (
    TERMINAL_TRANSACTION_STATUSES,
    Transaction,
    TransactionStatus,
)

logger = logging.getLogger("campusbid.ledger")

CENT = Decimal("0.01")

_SUCCESS_OUTCOMES = {"success", "successful", "completed", "charge.completed"}
_FAILURE_OUTCOMES = {"failed", "failure", "error", "cancelled", "charge.failed"}


@dataclass
class InitiatedPayment:
    transaction: Transaction
    payment_link: str


@dataclass
class CallbackResult:
    transaction: Transaction
    changed: bool


def normalize_amount(amount) -> Decimal:
    """Coerce to a positive two-place Decimal; floats go through str() first."""
    try:
        value = Decimal(str(amount)).quantize(CENT)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidRequestError(f"Amount '{amount}' is not a decimal number")
    if value <= 0:
        raise InvalidRequestError("Amount must be positive")
    return value


def normalize_outcome(outcome: str) -> Optional[TransactionStatus]:
    """Map a provider status to a terminal ledger status; None means still pending."""
    value = (outcome or "").strip().lower()
    if value in _SUCCESS_OUTCOMES:
        return TransactionStatus.COMPLETED
    if value in _FAILURE_OUTCOMES:
        return TransactionStatus.FAILED
    return None


class TransactionLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        audit: AuditRecorder,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self._gateway = gateway
        self._audit = audit
        self._clock = clock

    # ═══════════════════════════════════════════════════
    #  Queries
    # ═══════════════════════════════════════════════════

    async def find(self, transaction_id: str) -> Optional[Transaction]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Transaction).where(Transaction.transaction_id == transaction_id)
            )
            return result.scalar_one_or_none()

    async def get(self, transaction_id: str) -> Transaction:
        transaction = await self.find(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    async def get_by_idempotency_key(self, key: str) -> Optional[Transaction]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Transaction).where(Transaction.idempotency_key == key)
            )
            return result.scalar_one_or_none()

    async def get_by_provider_reference(self, reference: str) -> Transaction:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Transaction).where(Transaction.provider_reference == reference)
            )
            transaction = result.scalar_one_or_none()
        if transaction is None:
            raise NotFoundError(f"No transaction for provider reference {reference}")
        return transaction

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[Transaction]:
        """Transactions where the user is buyer or seller, newest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Transaction)
                .where(or_(Transaction.buyer_id == user_id, Transaction.seller_id == user_id))
                .order_by(Transaction.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # ═══════════════════════════════════════════════════
    #  create — idempotent on idempotency_key
    # ═══════════════════════════════════════════════════

    async def create(
        self,
        *,
        buyer_id: str,
        seller_id: str,
        amount,
        idempotency_key: str,
        currency: str = "USD",
        payment_method: str = "mobile_money",
        auction_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> tuple[Transaction, bool]:
        """
        Return (transaction, created). A known key returns the stored record
        unchanged; a concurrent insert that loses on the unique constraint
        also returns the winner's record.
        """
        if not idempotency_key:
            raise InvalidRequestError("An idempotency key is required")
        value = normalize_amount(amount)

        existing = await self.get_by_idempotency_key(idempotency_key)
        if existing is not None:
            logger.info("Idempotent replay for key=%s → %s", idempotency_key, existing.transaction_id)
            return existing, False

        transaction = Transaction(
            transaction_id=generate_reference("TXN"),
            buyer_id=buyer_id,
            seller_id=seller_id,
            auction_id=auction_id,
            amount=value,
            currency=currency.upper(),
            payment_method=payment_method,
            status=TransactionStatus.PENDING,
            idempotency_key=idempotency_key,
            meta=dict(metadata or {}),
            created_at=self._clock(),
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(transaction)
        except IntegrityError:
            winner = await self.get_by_idempotency_key(idempotency_key)
            if winner is not None:
                logger.info("Concurrent create for key=%s resolved to %s", idempotency_key, winner.transaction_id)
                return winner, False
            raise DuplicateKeyConflict(
                "Transaction could not be created for this idempotency key",
                idempotency_key=idempotency_key,
            )

        logger.info(
            "✅ Transaction created: %s $%s %s (buyer %s → seller %s)",
            transaction.transaction_id, value, transaction.currency, buyer_id, seller_id,
        )
        await self._audit.record(
            "transaction_created", "transaction", transaction.transaction_id,
            actor_id=buyer_id, details={"amount": value, "currency": transaction.currency},
        )
        return transaction, True

    # ═══════════════════════════════════════════════════
    #  Conditional status update
    # ═══════════════════════════════════════════════════

    async def _transition(
        self,
        transaction_id: str,
        expected: tuple,
        **values,
    ) -> bool:
        """UPDATE … WHERE status IN expected; True if this caller won."""
        values.setdefault("updated_at", self._clock())
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Transaction)
                    .where(
                        Transaction.transaction_id == transaction_id,
                        Transaction.status.in_(expected),
                    )
                    .values(**values)
                )
                return result.rowcount == 1

    # ═══════════════════════════════════════════════════
    #  initiate_payment
    # ═══════════════════════════════════════════════════

    async def initiate_payment(
        self,
        transaction_id: str,
        buyer_contact: BuyerContact,
        callback_url: Optional[str] = None,
    ) -> InitiatedPayment:
        transaction = await self.get(transaction_id)
        if transaction.status != TransactionStatus.PENDING:
            raise InvalidStateTransition(
                f"Cannot initiate payment for transaction with status: {transaction.status.value}"
            )

        try:
            initiation = await call_gateway(
                "initiate",
                self._gateway.initiate(
                    transaction.amount,
                    transaction.currency,
                    buyer_contact,
                    callback_url or get_settings().PAYMENT_CALLBACK_URL,
                    {"transaction_id": transaction.transaction_id, "auction_id": transaction.auction_id},
                ),
            )
        except GatewayFailure as exc:
            await self._transition(
                transaction_id,
                (TransactionStatus.PENDING,),
                status=TransactionStatus.FAILED,
                failure_reason=exc.provider_reason or exc.message,
            )
            await self._audit.record(
                "payment_initiated", "transaction", transaction_id,
                actor_id=transaction.buyer_id, outcome="failure",
                details={"provider_reason": exc.provider_reason},
            )
            raise

        won = await self._transition(
            transaction_id,
            (TransactionStatus.PENDING,),
            status=TransactionStatus.PROCESSING,
            provider_reference=initiation.reference,
        )
        if not won:
            current = await self.get(transaction_id)
            raise InvalidStateTransition(
                f"Transaction moved to {current.status.value} while payment was being initiated"
            )

        logger.info("💳 Payment initiated for %s (ref %s)", transaction_id, initiation.reference)
        await self._audit.record(
            "payment_initiated", "transaction", transaction_id,
            actor_id=transaction.buyer_id, details={"provider_reference": initiation.reference},
        )
        return InitiatedPayment(
            transaction=await self.get(transaction_id),
            payment_link=initiation.payment_link,
        )

    # ═══════════════════════════════════════════════════
    #  apply_callback — idempotent provider outcome
    # ═══════════════════════════════════════════════════

    async def apply_callback(
        self,
        outcome: str,
        transaction_id: Optional[str] = None,
        provider_reference: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> CallbackResult:
        if transaction_id:
            transaction = await self.get(transaction_id)
        elif provider_reference:
            transaction = await self.get_by_provider_reference(provider_reference)
        else:
            raise InvalidRequestError("Callback needs a transaction id or provider reference")

        new_status = normalize_outcome(outcome)
        if new_status is None:
            logger.info("Callback for %s reports '%s' — nothing to apply", transaction.transaction_id, outcome)
            return CallbackResult(transaction=transaction, changed=False)

        if transaction.status in TERMINAL_TRANSACTION_STATUSES:
            logger.info(
                "Duplicate callback for %s (already %s) — ignored",
                transaction.transaction_id, transaction.status.value,
            )
            return CallbackResult(transaction=transaction, changed=False)

        values = {"status": new_status}
        if new_status == TransactionStatus.COMPLETED:
            values["completed_at"] = self._clock()
        else:
            values["failure_reason"] = (metadata or {}).get("reason") or outcome
        if provider_reference and not transaction.provider_reference:
            values["provider_reference"] = provider_reference
        if metadata:
            values["meta"] = {**(transaction.meta or {}), "callback": metadata}

        won = await self._transition(
            transaction.transaction_id,
            (TransactionStatus.PENDING, TransactionStatus.PROCESSING),
            **values,
        )
        updated = await self.get(transaction.transaction_id)
        if not won:
            return CallbackResult(transaction=updated, changed=False)

        logger.info("Transaction %s → %s", updated.transaction_id, new_status.value)
        await self._audit.record(
            f"transaction_{new_status.value}", "transaction", updated.transaction_id,
            details={"provider_reference": updated.provider_reference},
        )
        return CallbackResult(transaction=updated, changed=True)

    async def verify_payment(self, transaction_id: str) -> CallbackResult:
        """Poll the provider and apply its answer exactly like a callback."""
        transaction = await self.get(transaction_id)
        if not transaction.provider_reference:
            raise InvalidStateTransition("Transaction has no provider reference")
        if transaction.status in TERMINAL_TRANSACTION_STATUSES:
            return CallbackResult(transaction=transaction, changed=False)

        verification = await call_gateway(
            "verify", self._gateway.verify(transaction.provider_reference)
        )
        if verification.status == "success" and Decimal(verification.amount) != transaction.amount:
            logger.error(
                "Amount mismatch for %s: provider %s vs ledger %s",
                transaction_id, verification.amount, transaction.amount,
            )
            raise GatewayFailure("Provider reported a different amount", provider_reason="amount_mismatch")
        return await self.apply_callback(verification.status, transaction_id=transaction_id)

    async def cancel(self, transaction_id: str, actor_id: str) -> Transaction:
        transaction = await self.get(transaction_id)
        if actor_id != transaction.buyer_id:
            raise UnauthorizedError("Only the buyer can cancel this transaction")
        won = await self._transition(
            transaction_id, (TransactionStatus.PENDING,), status=TransactionStatus.CANCELLED,
        )
        if not won:
            current = await self.get(transaction_id)
            raise InvalidStateTransition(
                f"Cannot cancel transaction with status: {current.status.value}"
            )
        await self._audit.record("transaction_cancelled", "transaction", transaction_id, actor_id=actor_id)
        return await self.get(transaction_id)

    async def annotate(self, transaction_id: str, values: dict) -> Transaction:
        """Merge keys into metadata; allowed in every status, terminal included."""
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(Transaction)
                    .where(Transaction.transaction_id == transaction_id)
                    .with_for_update()
                )
                transaction = result.scalar_one_or_none()
                if transaction is None:
                    raise NotFoundError(f"Transaction {transaction_id} not found")
                transaction.meta = {**(transaction.meta or {}), **values}
        return transaction
