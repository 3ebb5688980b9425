"""
CampusBid Escrow — Dispute Overlay
A dispute freezes its escrow (status → disputed) until a reviewer resolves
or rejects it:

    open → under_review → resolved   (refund_buyer | release_to_seller)
      └──────┴─────────→ rejected    (escrow returns to its pre-dispute status)

Resolution settles the escrow through the explicitly authorised admin
transitions (admin_refund / admin_release) before the dispute is closed, so a
gateway failure leaves both records untouched and the resolve can be retried.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campusbid.audit import AuditRecorder
from campusbid.config import get_settings
from campusbid.encryption import generate_reference
from campusbid.exceptions import (
    InvalidRequestError,
    InvalidStateTransition,
    NotFoundError,
    UnauthorizedError,
)
from campusbid.models import (
    Dispute,
    DisputeReason,
    DisputeResolution,
    DisputeStatus,
    Escrow,
    EscrowStatus,
)
from campusbid.services.escrow import EscrowService, current_for_auction

logger = logging.getLogger("campusbid.disputes")

ACTIVE_DISPUTE_STATUSES = (DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW)
CLOSED_DISPUTE_STATUSES = (DisputeStatus.RESOLVED, DisputeStatus.REJECTED)


# ═══════════════════════════════════════════════════════
#  Auction directory (winner lookups)
# ═══════════════════════════════════════════════════════


class AuctionDirectory:
    """Read-only view of auction outcomes owned by the bidding service."""

    async def get_winner_id(self, auction_id: str) -> Optional[str]:
        raise NotImplementedError


class EscrowAuctionDirectory(AuctionDirectory):
    """Treats the buyer on the auction's current escrow as the winner."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_winner_id(self, auction_id):
        async with self._session_factory() as session:
            result = await session.execute(current_for_auction(Escrow.buyer_id, auction_id))
            return result.scalars().first()


def _coerce(enum_cls, value, label: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidRequestError(f"Unknown {label} '{value}'. Allowed: {allowed}")


def _normalize_evidence(item: dict, now: datetime) -> dict:
    if not item or not item.get("description"):
        raise InvalidRequestError("Evidence needs a description")
    uploaded_at = item.get("uploaded_at") or now
    if isinstance(uploaded_at, datetime):
        uploaded_at = uploaded_at.isoformat()
    return {
        "description": item["description"],
        "image_urls": list(item.get("image_urls") or []),
        "uploaded_at": uploaded_at,
    }


class DisputeService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        escrows: EscrowService,
        audit: AuditRecorder,
        directory: Optional[AuctionDirectory] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self._escrows = escrows
        self._audit = audit
        self._directory = directory or EscrowAuctionDirectory(session_factory)
        self._clock = clock

    # ═══════════════════════════════════════════════════
    #  Queries
    # ═══════════════════════════════════════════════════

    async def get(self, dispute_id: str) -> Dispute:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Dispute).where(Dispute.dispute_id == dispute_id)
            )
            dispute = result.scalar_one_or_none()
        if dispute is None:
            raise NotFoundError(f"Dispute {dispute_id} not found")
        return dispute

    async def list(
        self,
        status: Optional[str] = None,
        buyer_id: Optional[str] = None,
        seller_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Dispute], int]:
        criteria = []
        if status:
            criteria.append(Dispute.status == _coerce(DisputeStatus, status, "status"))
        if buyer_id:
            criteria.append(Dispute.buyer_id == buyer_id)
        if seller_id:
            criteria.append(Dispute.seller_id == seller_id)

        page = max(page, 1)
        async with self._session_factory() as session:
            total = (await session.execute(
                select(func.count(Dispute.id)).where(*criteria)
            )).scalar_one()
            result = await session.execute(
                select(Dispute)
                .where(*criteria)
                .order_by(Dispute.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return list(result.scalars().all()), total

    async def is_within_time_limit(self, dispute_id: str) -> bool:
        dispute = await self.get(dispute_id)
        return self._clock() <= dispute.time_limit

    # ═══════════════════════════════════════════════════
    #  create
    # ═══════════════════════════════════════════════════

    async def create(
        self,
        auction_id: str,
        buyer_id: str,
        reason: str,
        description: str,
        evidence: Optional[list] = None,
    ) -> Dispute:
        reason = _coerce(DisputeReason, reason, "dispute reason")
        if not description:
            raise InvalidRequestError("A description is required")

        winner_id = await self._directory.get_winner_id(auction_id)
        if winner_id is None:
            raise NotFoundError(f"Auction {auction_id} not found")
        if winner_id != buyer_id:
            raise UnauthorizedError("Only the auction winner can create a dispute")

        escrow = await self._escrows.get_by_auction(auction_id)
        if escrow.status == EscrowStatus.DISPUTED:
            raise InvalidStateTransition("A dispute already exists for this auction")

        now = self._clock()
        dispute = Dispute(
            dispute_id=generate_reference("DSP"),
            auction_id=auction_id,
            escrow_id=escrow.escrow_id,
            buyer_id=buyer_id,
            seller_id=escrow.seller_id,
            reason=reason,
            description=description,
            evidence=[_normalize_evidence(item, now) for item in (evidence or [])],
            status=DisputeStatus.OPEN,
            resolution=DisputeResolution.NONE,
            time_limit=now + timedelta(days=get_settings().DISPUTE_TIME_LIMIT_DAYS),
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(dispute)
                    await session.flush()
                    await self._escrows.mark_disputed(
                        session, escrow.escrow_id, f"Disputed: {reason.value}"
                    )
        except IntegrityError:
            raise InvalidStateTransition("A dispute already exists for this escrow")

        logger.warning(
            "⚠️  Dispute %s opened on escrow %s by buyer %s (%s)",
            dispute.dispute_id, escrow.escrow_id, buyer_id, reason.value,
        )
        await self._audit.record(
            "dispute_created", "dispute", dispute.dispute_id, actor_id=buyer_id,
            details={"auction_id": auction_id, "escrow_id": escrow.escrow_id, "reason": reason},
        )
        await self._audit.record(
            "escrow_disputed", "escrow", escrow.escrow_id, actor_id=buyer_id,
            details={"dispute_id": dispute.dispute_id},
        )
        return dispute

    # ═══════════════════════════════════════════════════
    #  Reviewer actions
    # ═══════════════════════════════════════════════════

    async def _transition(self, dispute_id: str, expected: tuple, **values) -> bool:
        values.setdefault("updated_at", self._clock())
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Dispute)
                    .where(Dispute.dispute_id == dispute_id, Dispute.status.in_(expected))
                    .values(**values)
                )
                return result.rowcount == 1

    async def mark_under_review(self, dispute_id: str, reviewer_id: str) -> Dispute:
        won = await self._transition(
            dispute_id,
            (DisputeStatus.OPEN,),
            status=DisputeStatus.UNDER_REVIEW,
            reviewer_id=reviewer_id,
            reviewed_at=self._clock(),
        )
        if not won:
            await self.get(dispute_id)
            raise InvalidStateTransition("Only open disputes can be marked under review")
        await self._audit.record("dispute_reviewed", "dispute", dispute_id, actor_id=reviewer_id)
        return await self.get(dispute_id)

    async def resolve(
        self, dispute_id: str, resolution: str, note: str, reviewer_id: str
    ) -> Dispute:
        resolution = _coerce(DisputeResolution, resolution, "resolution")
        if resolution not in (DisputeResolution.REFUND_BUYER, DisputeResolution.RELEASE_TO_SELLER):
            raise InvalidRequestError(
                "Resolution must be refund_buyer or release_to_seller; reject the dispute to take no action"
            )

        dispute = await self.get(dispute_id)
        if dispute.status not in ACTIVE_DISPUTE_STATUSES:
            raise InvalidStateTransition(f"Dispute already {dispute.status.value}")

        settle_note = f"Dispute resolved: {note}"
        if resolution == DisputeResolution.REFUND_BUYER:
            await self._escrows.admin_refund(dispute.escrow_id, reviewer_id, settle_note)
        else:
            await self._escrows.admin_release(dispute.escrow_id, reviewer_id, settle_note)

        now = self._clock()
        won = await self._transition(
            dispute_id,
            ACTIVE_DISPUTE_STATUSES,
            status=DisputeStatus.RESOLVED,
            resolution=resolution,
            resolution_note=note,
            reviewer_id=reviewer_id,
            resolved_at=now,
        )
        if not won:
            # Escrow settlement already serialises competing reviewers
            logger.error("Dispute %s changed status during resolution", dispute_id)
            raise InvalidStateTransition("Dispute was closed by another reviewer")

        logger.info("⚖️  Dispute %s resolved: %s by %s", dispute_id, resolution.value, reviewer_id)
        await self._audit.record(
            "dispute_resolved", "dispute", dispute_id, actor_id=reviewer_id,
            details={"resolution": resolution, "escrow_id": dispute.escrow_id, "note": note},
        )
        return await self.get(dispute_id)

    async def reject(self, dispute_id: str, reviewer_id: str, note: str) -> Dispute:
        dispute = await self.get(dispute_id)
        now = self._clock()
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Dispute)
                    .where(
                        Dispute.dispute_id == dispute_id,
                        Dispute.status.in_(ACTIVE_DISPUTE_STATUSES),
                    )
                    .values(
                        status=DisputeStatus.REJECTED,
                        resolution=DisputeResolution.NONE,
                        resolution_note=note,
                        reviewer_id=reviewer_id,
                        resolved_at=now,
                        updated_at=now,
                    )
                )
                if result.rowcount != 1:
                    raise InvalidStateTransition(f"Dispute already {dispute.status.value}")
                await self._escrows.restore_from_dispute(
                    session, dispute.escrow_id, f"Dispute rejected: {note}"
                )

        logger.info("Dispute %s rejected by %s", dispute_id, reviewer_id)
        await self._audit.record(
            "dispute_rejected", "dispute", dispute_id, actor_id=reviewer_id,
            details={"escrow_id": dispute.escrow_id, "note": note},
        )
        return await self.get(dispute_id)

    async def add_evidence(self, dispute_id: str, buyer_id: str, evidence: dict) -> Dispute:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(Dispute).where(Dispute.dispute_id == dispute_id).with_for_update()
                )
                dispute = result.scalar_one_or_none()
                if dispute is None:
                    raise NotFoundError(f"Dispute {dispute_id} not found")
                if dispute.buyer_id != buyer_id:
                    raise UnauthorizedError("Only the dispute creator can add evidence")
                if dispute.status in CLOSED_DISPUTE_STATUSES:
                    raise InvalidStateTransition(
                        "Cannot add evidence to a resolved or rejected dispute"
                    )
                dispute.evidence = [*(dispute.evidence or []), _normalize_evidence(evidence, self._clock())]
        return dispute
