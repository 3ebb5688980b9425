"""
CampusBid Escrow — Delivery Confirmation Codes
Transaction-keyed, buyer-requested one-time codes that the seller presents
to prove hand-off. Checks run in this order:

  rate limit → not found → already used → expired → caller is seller → code

Code comparison and brute-force lockout are delegated to CodeVerifier, the
same policy the escrow verify-delivery path uses. A correct code consumes the
confirmation, confirms the escrow and then releases it to the seller.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campusbid.audit import AuditRecorder
from campusbid.config import get_settings
from campusbid.encryption import decrypt_code, generate_code, generate_reference, hash_code
from campusbid.exceptions import (
    AlreadyUsedError,
    CodeExpiredError,
    EngineError,
    GatewayFailure,
    InvalidRequestError,
    InvalidStateTransition,
    NotFoundError,
    UnauthorizedError,
)
from campusbid.models import (
    DeliveryConfirmation,
    Escrow,
    EscrowStatus,
    Transaction,
    TransactionStatus,
)
from campusbid.notifications import Notifier, notify_safely
from campusbid.services.attempts import AttemptTracker, action_subject, code_subject
from campusbid.services.escrow import EscrowService
from campusbid.services.ledger import TransactionLedger
from campusbid.services.verifier import CodeVerifier

logger = logging.getLogger("campusbid.confirmations")

MAX_GENERATION_ATTEMPTS = 100


@dataclass
class IssuedConfirmation:
    confirmation: DeliveryConfirmation
    code: str


@dataclass
class ConfirmationOutcome:
    confirmation: DeliveryConfirmation
    escrow: Escrow
    released: bool


class ConfirmationService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: TransactionLedger,
        escrows: EscrowService,
        verifier: CodeVerifier,
        tracker: AttemptTracker,
        notifier: Notifier,
        audit: AuditRecorder,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self._ledger = ledger
        self._escrows = escrows
        self._verifier = verifier
        self._tracker = tracker
        self._notifier = notifier
        self._audit = audit
        self._clock = clock

    async def find(self, transaction_id: str) -> Optional[DeliveryConfirmation]:
        """The unused confirmation if there is one, otherwise the most recent."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(DeliveryConfirmation)
                .where(DeliveryConfirmation.transaction_id == transaction_id)
                .order_by(DeliveryConfirmation.is_used, DeliveryConfirmation.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    # ═══════════════════════════════════════════════════
    #  generate
    # ═══════════════════════════════════════════════════

    async def generate(self, transaction_id: str, buyer_id: str) -> IssuedConfirmation:
        transaction = await self._ledger.get(transaction_id)
        escrow = await self._escrows.find_by_transaction(transaction_id)
        if (
            transaction.status != TransactionStatus.COMPLETED
            or escrow is None
            or escrow.status != EscrowStatus.LOCKED
        ):
            raise InvalidStateTransition(
                "Transaction must be in escrow to generate a confirmation code"
            )
        if transaction.buyer_id != buyer_id:
            raise UnauthorizedError("Only the buyer can request a confirmation code")

        existing = await self.find(transaction_id)
        if existing is not None and not existing.is_used:
            raise InvalidStateTransition("A confirmation code already exists for this transaction")

        # Never hand out the same digits as the escrow's own delivery code
        escrow_code = (
            decrypt_code(escrow.delivery_code_ciphertext)
            if escrow.delivery_code_ciphertext else None
        )
        for _ in range(MAX_GENERATION_ATTEMPTS):
            code = generate_code()
            if code != escrow_code:
                break
        else:
            raise RuntimeError("Unable to generate a unique confirmation code")

        now = self._clock()
        confirmation = DeliveryConfirmation(
            confirmation_id=generate_reference("DCF"),
            transaction_id=transaction_id,
            buyer_id=buyer_id,
            code_hash=hash_code(code),
            generated_at=now,
            expires_at=now + timedelta(hours=get_settings().CONFIRMATION_EXPIRY_HOURS),
            is_used=False,
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(confirmation)
        except IntegrityError:
            raise InvalidStateTransition("A confirmation code already exists for this transaction")

        logger.info("🔑 Confirmation %s issued for %s", confirmation.confirmation_id, transaction_id)
        await notify_safely(
            self._notifier.send_delivery_code(buyer_id, confirmation.confirmation_id, code),
            "confirmation code",
        )
        await self._audit.record(
            "confirmation_generated", "confirmation", confirmation.confirmation_id,
            actor_id=buyer_id, details={"transaction_id": transaction_id},
        )
        return IssuedConfirmation(confirmation=confirmation, code=code)

    # ═══════════════════════════════════════════════════
    #  verify
    # ═══════════════════════════════════════════════════

    async def verify(self, transaction_id: str, code: str, caller_id: str) -> ConfirmationOutcome:
        settings = get_settings()
        await self._tracker.hit(
            action_subject(caller_id, "confirm_delivery"),
            settings.VERIFY_RATE_LIMIT_COUNT,
            settings.VERIFY_RATE_LIMIT_WINDOW_SECONDS,
        )

        confirmation = await self.find(transaction_id)
        if confirmation is None:
            raise NotFoundError("No confirmation code found for this transaction")
        if confirmation.is_used:
            raise AlreadyUsedError("Confirmation code has already been used")
        if self._clock() > confirmation.expires_at:
            raise CodeExpiredError("Confirmation code has expired")

        transaction = await self._ledger.get(transaction_id)
        if transaction.seller_id != caller_id:
            raise UnauthorizedError("Only the seller can confirm delivery")

        escrow = await self._escrows.get_by_transaction(transaction_id)
        if escrow.status not in (EscrowStatus.LOCKED, EscrowStatus.PENDING_CONFIRMATION):
            raise InvalidStateTransition(
                f"Cannot confirm delivery for escrow with status: {escrow.status.value}"
            )

        try:
            await self._verifier.check(
                code_subject("confirmation", confirmation.confirmation_id),
                code, confirmation.code_hash, caller_id,
            )
        except EngineError as exc:
            await self._audit.record(
                "confirmation_verification", "confirmation", confirmation.confirmation_id,
                actor_id=caller_id, outcome="failure", details={"reason": exc.reason},
            )
            raise

        now = self._clock()
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(DeliveryConfirmation)
                    .where(
                        DeliveryConfirmation.id == confirmation.id,
                        DeliveryConfirmation.is_used.is_(False),
                    )
                    .values(is_used=True, used_at=now)
                )
                consumed = result.rowcount == 1
                if consumed:
                    await self._escrows.confirm_in_session(session, escrow.escrow_id)
                    locked_txn = (await session.execute(
                        select(Transaction).where(Transaction.transaction_id == transaction_id)
                    )).scalar_one()
                    locked_txn.meta = {
                        **(locked_txn.meta or {}),
                        "delivery_status": "delivered",
                        "delivered_at": now.isoformat(),
                    }
        if not consumed:
            raise AlreadyUsedError("Confirmation code has already been used")

        await self._audit.record(
            "confirmation_verification", "confirmation", confirmation.confirmation_id,
            actor_id=caller_id, details={"transaction_id": transaction_id},
        )

        released = False
        escrow = await self._escrows.get(escrow.escrow_id)
        if escrow.status == EscrowStatus.PENDING_CONFIRMATION:
            try:
                escrow = await self._escrows.release_funds(escrow.escrow_id, caller_id)
                released = True
            except GatewayFailure:
                # Delivery stays confirmed; the auto-release sweep retries the payout
                logger.error("Payout pending for %s after confirmed delivery", escrow.escrow_id)
        else:
            logger.warning(
                "Confirmation consumed but escrow %s is %s — not released",
                escrow.escrow_id, escrow.status.value,
            )

        if released:
            await self._ledger.annotate(transaction_id, {
                "delivery_status": "completed",
                "escrow_released_at": escrow.released_at.isoformat(),
            })

        logger.info("✅ Delivery confirmed for %s by seller %s", transaction_id, caller_id)
        return ConfirmationOutcome(
            confirmation=await self.find(transaction_id),
            escrow=escrow,
            released=released,
        )

    # ═══════════════════════════════════════════════════
    #  Read-only helpers
    # ═══════════════════════════════════════════════════

    async def details(self, transaction_id: str, buyer_id: str) -> dict:
        """Confirmation state for the buyer, never including the hash."""
        confirmation = await self.find(transaction_id)
        if confirmation is None:
            raise NotFoundError("No confirmation code found for this transaction")
        if confirmation.buyer_id != buyer_id:
            raise UnauthorizedError("Only the buyer can view this confirmation")
        return {
            "confirmation_id": confirmation.confirmation_id,
            "transaction_id": confirmation.transaction_id,
            "buyer_id": confirmation.buyer_id,
            "generated_at": confirmation.generated_at,
            "expires_at": confirmation.expires_at,
            "used_at": confirmation.used_at,
            "is_used": confirmation.is_used,
            "failed_attempts": await self._verifier.failed_attempts(
                code_subject("confirmation", confirmation.confirmation_id)
            ),
        }

    async def is_valid(self, transaction_id: str) -> bool:
        confirmation = await self.find(transaction_id)
        if confirmation is None or confirmation.is_used:
            return False
        if self._clock() > confirmation.expires_at:
            return False
        subject = code_subject("confirmation", confirmation.confirmation_id)
        return not await self._tracker.is_locked(subject)

    async def extend_expiry(self, transaction_id: str, buyer_id: str, hours: int) -> DeliveryConfirmation:
        if hours <= 0:
            raise InvalidRequestError("Extension must be a positive number of hours")
        confirmation = await self.find(transaction_id)
        if confirmation is None or confirmation.is_used:
            raise NotFoundError("No active confirmation code for this transaction")
        if confirmation.buyer_id != buyer_id:
            raise UnauthorizedError("Only the buyer can extend this confirmation")

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(DeliveryConfirmation)
                    .where(
                        DeliveryConfirmation.id == confirmation.id,
                        DeliveryConfirmation.is_used.is_(False),
                    )
                    .values(expires_at=confirmation.expires_at + timedelta(hours=hours))
                )
                if result.rowcount != 1:
                    raise AlreadyUsedError("Confirmation code has already been used")
        return await self.find(transaction_id)
