"""
CampusBid Escrow — Escrow State Machine
Holds a completed transaction's funds until delivery is proven.

    locked ──verify──▶ pending_confirmation ──release──▶ released
      │                       │
      ├──────refund───────────┴──────────────▶ refunded
      └──dispute (either)──▶ disputed ──resolution only──▶ released | refunded

Guarantees:
  - every transition is a conditional UPDATE on the expected status, so two
    concurrent callers produce one winner and one typed error
  - release/refund call the gateway inside the open transaction after the
    conditional UPDATE: a gateway failure rolls the escrow back unchanged
  - the plaintext delivery code leaves this module exactly once (on create);
    the ciphertext is erased as soon as the code is consumed
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campusbid.audit import AuditRecorder
from campusbid.config import get_settings
from campusbid.encryption import (
    decrypt_code,
    encrypt_code,
    generate_code,
    generate_reference,
    hash_code,
)
from campusbid.exceptions import (
    AlreadyRefunded,
    AlreadyReleased,
    AlreadyUsedError,
    DeliveryNotConfirmed,
    EngineError,
    GatewayFailure,
    InvalidRequestError,
    InvalidStateTransition,
    NotFoundError,
    UnauthorizedError,
)
from campusbid.gateway import PaymentGateway, call_gateway
from campusbid.models import (
    HELD_ESCROW_STATUSES,
    Escrow,
    EscrowStatus,
    ReleaseKind,
    Transaction,
    TransactionStatus,
)
from campusbid.notifications import Notifier, notify_safely
from campusbid.services.attempts import code_subject
from campusbid.services.ledger import normalize_amount
from campusbid.services.verifier import CodeVerifier

logger = logging.getLogger("campusbid.escrow")


@dataclass
class EscrowCreation:
    escrow: Escrow
    created: bool
    delivery_code: Optional[str] = None  # only on the creating call


def current_for_auction(column, auction_id: str):
    """
    SELECT for the escrow an auction currently refers to: a held one if any,
    otherwise the most recent. A refunded auction can be paid again, so
    several escrows may share an auction id.
    """
    return (
        select(column)
        .where(Escrow.auction_id == auction_id)
        .order_by(
            case((Escrow.status.in_(HELD_ESCROW_STATUSES), 0), else_=1),
            Escrow.id.desc(),
        )
        .limit(1)
    )


def _settlement_error(escrow: Escrow, operation: str) -> EngineError:
    """Typed error for a release/refund attempted from the wrong status."""
    if escrow.status == EscrowStatus.RELEASED:
        return AlreadyReleased(f"Escrow {escrow.escrow_id} already released")
    if escrow.status == EscrowStatus.REFUNDED:
        return AlreadyRefunded(f"Escrow {escrow.escrow_id} already refunded")
    if operation == "release" and escrow.status == EscrowStatus.LOCKED:
        return DeliveryNotConfirmed(
            f"Delivery for escrow {escrow.escrow_id} has not been confirmed"
        )
    if escrow.status == EscrowStatus.DISPUTED:
        return InvalidStateTransition(
            f"Escrow {escrow.escrow_id} is disputed and can only be settled through dispute resolution"
        )
    return InvalidStateTransition(
        f"Cannot {operation} escrow with status: {escrow.status.value}"
    )


class EscrowService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        verifier: CodeVerifier,
        notifier: Notifier,
        audit: AuditRecorder,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self._gateway = gateway
        self._verifier = verifier
        self._notifier = notifier
        self._audit = audit
        self._clock = clock

    # ═══════════════════════════════════════════════════
    #  Queries
    # ═══════════════════════════════════════════════════

    async def _find_one(self, *criteria) -> Optional[Escrow]:
        async with self._session_factory() as session:
            result = await session.execute(select(Escrow).where(*criteria))
            return result.scalar_one_or_none()

    async def get(self, escrow_id: str) -> Escrow:
        escrow = await self._find_one(Escrow.escrow_id == escrow_id)
        if escrow is None:
            raise NotFoundError(f"Escrow {escrow_id} not found")
        return escrow

    async def find_by_transaction(self, transaction_id: str) -> Optional[Escrow]:
        return await self._find_one(Escrow.transaction_id == transaction_id)

    async def get_by_transaction(self, transaction_id: str) -> Escrow:
        escrow = await self.find_by_transaction(transaction_id)
        if escrow is None:
            raise NotFoundError(f"No escrow for transaction {transaction_id}")
        return escrow

    async def get_by_auction(self, auction_id: str) -> Escrow:
        async with self._session_factory() as session:
            result = await session.execute(current_for_auction(Escrow, auction_id))
            escrow = result.scalars().first()
        if escrow is None:
            raise NotFoundError(f"No escrow for auction {auction_id}")
        return escrow

    async def list_held(self, seller_id: Optional[str] = None) -> list[Escrow]:
        """Escrows still holding money (admin view), optionally for one seller."""
        query = select(Escrow).where(Escrow.status.in_(HELD_ESCROW_STATUSES))
        if seller_id is not None:
            query = query.where(Escrow.seller_id == seller_id)
        async with self._session_factory() as session:
            result = await session.execute(query.order_by(Escrow.id))
            return list(result.scalars().all())

    # ═══════════════════════════════════════════════════
    #  create
    # ═══════════════════════════════════════════════════

    async def create(
        self,
        transaction_id: str,
        auction_id: Optional[str] = None,
        buyer_id: Optional[str] = None,
        seller_id: Optional[str] = None,
        amount=None,
    ) -> EscrowCreation:
        """
        Open escrow for a completed transaction. Idempotent per transaction:
        a second call returns the stored escrow and no code.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(Transaction).where(Transaction.transaction_id == transaction_id)
            )
            transaction = result.scalar_one_or_none()
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        if transaction.status != TransactionStatus.COMPLETED:
            raise InvalidStateTransition(
                f"Cannot create escrow for transaction with status: {transaction.status.value}"
            )

        existing = await self.find_by_transaction(transaction_id)
        if existing is not None:
            return EscrowCreation(escrow=existing, created=False)

        if buyer_id is not None and buyer_id != transaction.buyer_id:
            raise InvalidRequestError("Buyer does not match the transaction")
        if seller_id is not None and seller_id != transaction.seller_id:
            raise InvalidRequestError("Seller does not match the transaction")
        if amount is not None and normalize_amount(amount) != transaction.amount:
            raise InvalidRequestError("Amount does not match the transaction")

        code = generate_code()
        now = self._clock()
        escrow = Escrow(
            escrow_id=generate_reference("ESC"),
            transaction_id=transaction_id,
            auction_id=auction_id or transaction.auction_id,
            buyer_id=transaction.buyer_id,
            seller_id=transaction.seller_id,
            amount=transaction.amount,
            currency=transaction.currency,
            status=EscrowStatus.LOCKED,
            delivery_code_hash=hash_code(code),
            delivery_code_ciphertext=encrypt_code(code),
            locked_at=now,
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(escrow)
        except IntegrityError:
            winner = await self.find_by_transaction(transaction_id)
            if winner is None:
                raise
            return EscrowCreation(escrow=winner, created=False)

        logger.info(
            "🔐 Escrow created: %s for %s, $%s locked (seller %s)",
            escrow.escrow_id, transaction_id, escrow.amount, escrow.seller_id,
        )
        await notify_safely(
            self._notifier.send_delivery_code(escrow.buyer_id, escrow.escrow_id, code),
            "delivery code",
        )
        await self._audit.record(
            "escrow_created", "escrow", escrow.escrow_id,
            details={"transaction_id": transaction_id, "amount": escrow.amount},
        )
        return EscrowCreation(escrow=escrow, created=True, delivery_code=code)

    async def get_delivery_code(self, escrow_id: str, buyer_id: str) -> str:
        """Buyer-side retrieval; only possible while the code is unconsumed."""
        escrow = await self.get(escrow_id)
        if escrow.buyer_id != buyer_id:
            raise UnauthorizedError("Only the buyer can view the delivery code")
        if escrow.confirmed_at is not None:
            raise AlreadyUsedError("Delivery code has already been used")
        if escrow.status != EscrowStatus.LOCKED or not escrow.delivery_code_ciphertext:
            raise InvalidStateTransition(
                f"Delivery code is unavailable for escrow with status: {escrow.status.value}"
            )
        return decrypt_code(escrow.delivery_code_ciphertext)

    # ═══════════════════════════════════════════════════
    #  verify_delivery
    # ═══════════════════════════════════════════════════

    async def verify_delivery(
        self, escrow_id: str, code: str, actor_id: Optional[str] = None
    ) -> Escrow:
        """Consume the delivery code: locked → pending_confirmation."""
        escrow = await self.get(escrow_id)
        if escrow.confirmed_at is not None:
            raise AlreadyUsedError("Delivery code has already been used")
        if escrow.status != EscrowStatus.LOCKED:
            raise InvalidStateTransition(
                f"Cannot verify delivery for escrow with status: {escrow.status.value}"
            )

        try:
            await self._verifier.check(
                code_subject("escrow", escrow_id), code, escrow.delivery_code_hash, actor_id
            )
        except EngineError as exc:
            await self._audit.record(
                "delivery_verification", "escrow", escrow_id,
                actor_id=actor_id, outcome="failure", details={"reason": exc.reason},
            )
            raise

        async with self._session_factory() as session:
            async with session.begin():
                won = await self.confirm_in_session(session, escrow_id)

        current = await self.get(escrow_id)
        if not won:
            if current.confirmed_at is not None:
                raise AlreadyUsedError("Delivery code has already been used")
            raise InvalidStateTransition(
                f"Cannot verify delivery for escrow with status: {current.status.value}"
            )

        logger.info("📦 Delivery verified for escrow %s", escrow_id)
        await self._audit.record(
            "delivery_verification", "escrow", escrow_id, actor_id=actor_id,
        )
        return current

    async def confirm_in_session(self, session: AsyncSession, escrow_id: str) -> bool:
        """locked → pending_confirmation and erase the ciphertext; True if this caller won."""
        now = self._clock()
        result = await session.execute(
            update(Escrow)
            .where(
                Escrow.escrow_id == escrow_id,
                Escrow.status == EscrowStatus.LOCKED,
                Escrow.confirmed_at.is_(None),
            )
            .values(
                status=EscrowStatus.PENDING_CONFIRMATION,
                confirmed_at=now,
                delivery_code_ciphertext=None,
                updated_at=now,
            )
        )
        return result.rowcount == 1

    # ═══════════════════════════════════════════════════
    #  Settlement (release / refund)
    # ═══════════════════════════════════════════════════

    async def _settle(
        self,
        escrow_id: str,
        operation: str,
        expected: tuple,
        values: dict,
        gateway_call,
        reference_field: str,
        action: str,
        actor_id: Optional[str],
        extra_criteria: tuple = (),
    ) -> Escrow:
        """
        Conditional UPDATE, then the gateway call, then commit.

        gateway_call(session, escrow) returns the provider reference. If it
        raises, the transaction rolls back and the escrow keeps its status.
        """
        escrow = await self.get(escrow_id)
        if escrow.status not in expected:
            raise _settlement_error(escrow, operation)

        won = False
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(Escrow)
                        .where(
                            Escrow.escrow_id == escrow_id,
                            Escrow.status.in_(expected),
                            *extra_criteria,
                        )
                        .values(**values)
                    )
                    if result.rowcount == 1:
                        won = True
                        locked = (await session.execute(
                            select(Escrow).where(Escrow.escrow_id == escrow_id)
                        )).scalar_one()
                        reference = await gateway_call(session, locked)
                        setattr(locked, reference_field, reference)
        except GatewayFailure as exc:
            logger.error("❌ %s of escrow %s failed at the gateway: %s", operation, escrow_id, exc.provider_reason)
            await self._audit.record(
                action, "escrow", escrow_id, actor_id=actor_id, outcome="failure",
                details={"provider_reason": exc.provider_reason},
            )
            raise

        current = await self.get(escrow_id)
        if not won:
            raise _settlement_error(current, operation)

        await self._audit.record(
            action, "escrow", escrow_id, actor_id=actor_id,
            details={"amount": current.amount, reference_field: getattr(current, reference_field)},
        )
        return current

    async def _payout(self, session: AsyncSession, escrow: Escrow) -> str:
        return await call_gateway("payout", self._gateway.payout(escrow.seller_id, escrow.amount))

    async def _refund_buyer(self, session: AsyncSession, escrow: Escrow, reason: str) -> str:
        reference = (await session.execute(
            select(Transaction.provider_reference)
            .where(Transaction.transaction_id == escrow.transaction_id)
        )).scalar_one_or_none()
        return await call_gateway(
            "refund",
            self._gateway.refund(reference or escrow.transaction_id, escrow.amount, reason),
        )

    def _release_values(self, kind: ReleaseKind, note: Optional[str] = None) -> dict:
        now = self._clock()
        values = {
            "status": EscrowStatus.RELEASED,
            "released_at": now,
            "release_kind": kind,
            "delivery_code_ciphertext": None,
            "updated_at": now,
        }
        if note:
            values["notes"] = note
        return values

    async def release_funds(self, escrow_id: str, actor_id: Optional[str] = None) -> Escrow:
        """Buyer-confirmed release: pending_confirmation → released, seller paid out."""
        escrow = await self._settle(
            escrow_id,
            "release",
            (EscrowStatus.PENDING_CONFIRMATION,),
            self._release_values(ReleaseKind.BUYER_CONFIRMED),
            self._payout,
            "payout_reference",
            "escrow_released",
            actor_id,
        )
        logger.info("✅ Escrow released: %s, $%s → seller %s", escrow_id, escrow.amount, escrow.seller_id)
        return escrow

    async def admin_release(self, escrow_id: str, reviewer_id: str, note: str) -> Escrow:
        """
        Reviewer-adjudicated release of a disputed escrow. Kept apart from
        release_funds: it skips the delivery-confirmed precondition and is
        recorded with release_kind=admin.
        """
        escrow = await self._settle(
            escrow_id,
            "release",
            (EscrowStatus.DISPUTED,),
            self._release_values(ReleaseKind.ADMIN, note),
            self._payout,
            "payout_reference",
            "escrow_released_by_admin",
            reviewer_id,
        )
        logger.info("✅ Escrow %s released by reviewer %s", escrow_id, reviewer_id)
        return escrow

    def _refund_values(self, reason: Optional[str]) -> dict:
        now = self._clock()
        return {
            "status": EscrowStatus.REFUNDED,
            "refunded_at": now,
            "delivery_code_ciphertext": None,
            "notes": reason,
            "updated_at": now,
        }

    async def refund(
        self, escrow_id: str, reason: str, actor_id: Optional[str] = None
    ) -> Escrow:
        """Cancellation refund from locked or pending_confirmation."""
        escrow = await self._settle(
            escrow_id,
            "refund",
            (EscrowStatus.LOCKED, EscrowStatus.PENDING_CONFIRMATION),
            self._refund_values(reason),
            lambda session, locked: self._refund_buyer(session, locked, reason),
            "refund_reference",
            "escrow_refunded",
            actor_id,
        )
        logger.info("↩️  Escrow refunded: %s, $%s → buyer %s", escrow_id, escrow.amount, escrow.buyer_id)
        return escrow

    async def admin_refund(self, escrow_id: str, reviewer_id: str, note: str) -> Escrow:
        """Reviewer-adjudicated refund of a disputed escrow."""
        escrow = await self._settle(
            escrow_id,
            "refund",
            (EscrowStatus.DISPUTED,),
            self._refund_values(note),
            lambda session, locked: self._refund_buyer(session, locked, note),
            "refund_reference",
            "escrow_refunded_by_admin",
            reviewer_id,
        )
        logger.info("↩️  Escrow %s refunded by reviewer %s", escrow_id, reviewer_id)
        return escrow

    # ═══════════════════════════════════════════════════
    #  Dispute hooks
    # ═══════════════════════════════════════════════════

    async def mark_disputed(self, session: AsyncSession, escrow_id: str, reason: str) -> None:
        """
        locked | pending_confirmation → disputed, inside the caller's unit of
        work so the dispute row and the escrow freeze commit together.
        """
        result = await session.execute(
            update(Escrow)
            .where(
                Escrow.escrow_id == escrow_id,
                Escrow.status.in_((EscrowStatus.LOCKED, EscrowStatus.PENDING_CONFIRMATION)),
            )
            .values(
                status=EscrowStatus.DISPUTED,
                disputed=True,
                notes=reason,
                updated_at=self._clock(),
            )
        )
        if result.rowcount == 1:
            return
        current = (await session.execute(
            select(Escrow).where(Escrow.escrow_id == escrow_id)
        )).scalar_one_or_none()
        if current is None:
            raise NotFoundError(f"Escrow {escrow_id} not found")
        if current.status == EscrowStatus.DISPUTED:
            raise InvalidStateTransition(f"Escrow {escrow_id} is already disputed")
        raise _settlement_error(current, "dispute")

    async def dispute(self, escrow_id: str, reason: str, actor_id: Optional[str] = None) -> Escrow:
        async with self._session_factory() as session:
            async with session.begin():
                await self.mark_disputed(session, escrow_id, reason)
        await self._audit.record(
            "escrow_disputed", "escrow", escrow_id, actor_id=actor_id, details={"reason": reason},
        )
        return await self.get(escrow_id)

    async def restore_from_dispute(self, session: AsyncSession, escrow_id: str, note: str) -> None:
        """Rejected dispute: back to pending_confirmation if delivery was confirmed, else locked."""
        now = self._clock()
        for target, confirmed in (
            (EscrowStatus.PENDING_CONFIRMATION, Escrow.confirmed_at.is_not(None)),
            (EscrowStatus.LOCKED, Escrow.confirmed_at.is_(None)),
        ):
            result = await session.execute(
                update(Escrow)
                .where(
                    Escrow.escrow_id == escrow_id,
                    Escrow.status == EscrowStatus.DISPUTED,
                    confirmed,
                )
                .values(status=target, notes=note, updated_at=now)
            )
            if result.rowcount == 1:
                return
        raise InvalidStateTransition(f"Escrow {escrow_id} is not disputed")

    # ═══════════════════════════════════════════════════
    #  Auto-release sweep
    # ═══════════════════════════════════════════════════

    async def auto_release_due(self, now: Optional[datetime] = None) -> list[str]:
        """
        Release every pending_confirmation escrow confirmed longer ago than
        ESCROW_RELEASE_DELAY_HOURS. Per-escrow failures are logged and left
        for the next sweep.
        """
        now = now or self._clock()
        cutoff = now - timedelta(hours=get_settings().ESCROW_RELEASE_DELAY_HOURS)
        async with self._session_factory() as session:
            result = await session.execute(
                select(Escrow.escrow_id).where(
                    Escrow.status == EscrowStatus.PENDING_CONFIRMATION,
                    Escrow.confirmed_at <= cutoff,
                )
            )
            due = list(result.scalars().all())

        released = []
        for escrow_id in due:
            try:
                await self._settle(
                    escrow_id,
                    "release",
                    (EscrowStatus.PENDING_CONFIRMATION,),
                    self._release_values(ReleaseKind.AUTO),
                    self._payout,
                    "payout_reference",
                    "escrow_auto_released",
                    None,
                    extra_criteria=(Escrow.confirmed_at <= cutoff,),
                )
                released.append(escrow_id)
            except EngineError as exc:
                logger.warning("Auto-release skipped for %s: %s", escrow_id, exc.message)
        if released:
            logger.info("⏱  Auto-released %d escrow(s)", len(released))
        return released

    # ═══════════════════════════════════════════════════
    #  Withdrawal eligibility
    # ═══════════════════════════════════════════════════

    async def withdrawable_balance(self, seller_id: str) -> Decimal:
        """Total released to the seller. Withdrawals themselves are tracked by the payout service."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.coalesce(func.sum(Escrow.amount), 0)).where(
                    Escrow.seller_id == seller_id,
                    Escrow.status == EscrowStatus.RELEASED,
                )
            )
            return Decimal(str(result.scalar_one())).quantize(Decimal("0.01"))

    async def can_withdraw(self, seller_id: str, amount=None) -> bool:
        """
        False while any escrow of the seller still holds money. Under the
        released_balance policy the amount must also be covered by released funds.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(Escrow.id)).where(
                    Escrow.seller_id == seller_id,
                    Escrow.status.in_(HELD_ESCROW_STATUSES),
                )
            )
            held = result.scalar_one()
        if held:
            return False
        if get_settings().WITHDRAWAL_POLICY == "released_balance" and amount is not None:
            return Decimal(str(amount)) <= await self.withdrawable_balance(seller_id)
        return True
