"""
CampusBid Escrow — SQLAlchemy ORM Models
External identifiers (TXN-…, ESC-…, DSP-…) are opaque strings kept apart
from the internal integer primary keys. Money columns are Numeric(12, 2).
"""
import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)

from campusbid.database import Base


# ═══════════════════════════════════════════════════════
#  ENUMS
# ═══════════════════════════════════════════════════════


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_TRANSACTION_STATUSES = (
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
)


class EscrowStatus(str, enum.Enum):
    LOCKED = "locked"
    PENDING_CONFIRMATION = "pending_confirmation"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


# Statuses in which the escrow still holds the buyer's money
HELD_ESCROW_STATUSES = (
    EscrowStatus.LOCKED,
    EscrowStatus.PENDING_CONFIRMATION,
    EscrowStatus.DISPUTED,
)


class ReleaseKind(str, enum.Enum):
    BUYER_CONFIRMED = "buyer_confirmed"
    ADMIN = "admin"
    AUTO = "auto"


class DisputeStatus(str, enum.Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class DisputeReason(str, enum.Enum):
    ITEM_NOT_RECEIVED = "item_not_received"
    ITEM_NOT_AS_DESCRIBED = "item_not_as_described"
    DAMAGED_ITEM = "damaged_item"
    WRONG_ITEM = "wrong_item"
    OTHER = "other"


class DisputeResolution(str, enum.Enum):
    REFUND_BUYER = "refund_buyer"
    RELEASE_TO_SELLER = "release_to_seller"
    PARTIAL_REFUND = "partial_refund"
    NONE = "none"


def _enum(enum_cls, name: str) -> SAEnum:
    """Store enum values (not member names) so raw SQL filters stay readable."""
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
    )


# ═══════════════════════════════════════════════════════
#  MODELS
# ═══════════════════════════════════════════════════════


class Transaction(Base):
    """A buyer's payment intent and its provider lifecycle."""
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(64), unique=True, nullable=False, index=True)  # TXN-<ts>-<hex>
    buyer_id = Column(String(64), nullable=False, index=True)
    seller_id = Column(String(64), nullable=False, index=True)
    auction_id = Column(String(64), nullable=True, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    payment_method = Column(String(32), nullable=False, default="mobile_money")
    status = Column(
        _enum(TransactionStatus, "transaction_status_enum"),
        nullable=False,
        default=TransactionStatus.PENDING,
    )
    idempotency_key = Column(String(128), unique=True, nullable=False)
    provider_reference = Column(String(128), unique=True, nullable=True)
    failure_reason = Column(Text, nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Transaction {self.transaction_id} ${self.amount} — {self.status.value}>"


class Escrow(Base):
    """Funds held in trust for a completed transaction until delivery is proven."""
    __tablename__ = "escrows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    escrow_id = Column(String(64), unique=True, nullable=False, index=True)  # ESC-<ts>-<hex>
    transaction_id = Column(
        String(64),
        ForeignKey("transactions.transaction_id"),
        unique=True,  # at most one escrow per transaction
        nullable=False,
    )
    auction_id = Column(String(64), nullable=True, index=True)
    buyer_id = Column(String(64), nullable=False, index=True)
    seller_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(
        _enum(EscrowStatus, "escrow_status_enum"),
        nullable=False,
        default=EscrowStatus.LOCKED,
    )
    delivery_code_hash = Column(String(128), nullable=False)  # bcrypt, kept for audit
    delivery_code_ciphertext = Column(String(512), nullable=True)  # Fernet, erased once consumed
    release_kind = Column(_enum(ReleaseKind, "release_kind_enum"), nullable=True)
    payout_reference = Column(String(128), nullable=True)
    refund_reference = Column(String(128), nullable=True)
    disputed = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)
    locked_at = Column(DateTime, default=datetime.utcnow)
    confirmed_at = Column(DateTime, nullable=True)
    released_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_escrows_seller_status", "seller_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Escrow {self.escrow_id} ${self.amount} — {self.status.value}>"


class DeliveryConfirmation(Base):
    """Transaction-keyed one-time delivery code issued on the buyer's request."""
    __tablename__ = "delivery_confirmations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    confirmation_id = Column(String(64), unique=True, nullable=False)
    transaction_id = Column(
        String(64), ForeignKey("transactions.transaction_id"), nullable=False, index=True
    )
    buyer_id = Column(String(64), nullable=False)
    code_hash = Column(String(128), nullable=False)
    generated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime, nullable=True)
    is_used = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        # At most one unused confirmation per transaction
        Index(
            "uq_delivery_confirmations_unused",
            "transaction_id",
            unique=True,
            postgresql_where=text("is_used = false"),
            sqlite_where=text("is_used = 0"),
        ),
    )

    def __repr__(self) -> str:
        return f"<DeliveryConfirmation {self.confirmation_id} used={self.is_used}>"


class AttemptCounter(Base):
    """
    Failure / request counter for a subject key.

    Code subjects ("escrow:<id>", "confirmation:<id>") lock permanently once
    the failure threshold is reached; user+action subjects use the window.
    """
    __tablename__ = "attempt_counters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_key = Column(String(200), unique=True, nullable=False)
    count = Column(Integer, nullable=False, default=0)
    window_start = Column(DateTime, default=datetime.utcnow, nullable=False)
    window_end = Column(DateTime, nullable=True)
    locked_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<AttemptCounter {self.subject_key} count={self.count}>"


class Dispute(Base):
    """Buyer complaint that freezes an escrow until a reviewer resolves it."""
    __tablename__ = "disputes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(String(64), unique=True, nullable=False, index=True)
    auction_id = Column(String(64), nullable=True, index=True)
    escrow_id = Column(String(64), ForeignKey("escrows.escrow_id"), nullable=False, index=True)
    buyer_id = Column(String(64), nullable=False, index=True)
    seller_id = Column(String(64), nullable=False, index=True)
    reason = Column(_enum(DisputeReason, "dispute_reason_enum"), nullable=False)
    description = Column(Text, nullable=False)
    evidence = Column(JSON, nullable=False, default=list)
    status = Column(
        _enum(DisputeStatus, "dispute_status_enum"),
        nullable=False,
        default=DisputeStatus.OPEN,
    )
    resolution = Column(
        _enum(DisputeResolution, "dispute_resolution_enum"),
        nullable=False,
        default=DisputeResolution.NONE,
    )
    resolution_note = Column(Text, nullable=True)
    reviewer_id = Column(String(64), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    time_limit = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        # One active dispute per escrow
        Index(
            "uq_disputes_active_escrow",
            "escrow_id",
            unique=True,
            postgresql_where=text("status IN ('open', 'under_review')"),
            sqlite_where=text("status IN ('open', 'under_review')"),
        ),
    )

    def __repr__(self) -> str:
        return f"<Dispute {self.dispute_id} — {self.status.value}>"


class PaymentWebhook(Base):
    """Raw provider callback, stored before processing for reconciliation."""
    __tablename__ = "payment_webhooks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(50), nullable=False, default="sandbox")
    event = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    processed = Column(Boolean, nullable=False, default=False)
    error = Column(Text, nullable=True)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<PaymentWebhook {self.event} processed={self.processed}>"


class AuditLog(Base):
    """Immutable audit trail: one row per escrow-engine state transition."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(40), nullable=False)  # e.g. escrow_released
    resource_type = Column(String(40), nullable=False)  # transaction, escrow, dispute …
    resource_id = Column(String(64), nullable=False, index=True)
    actor_id = Column(String(64), nullable=True)
    outcome = Column(String(20), nullable=False, default="success")
    details = Column(Text, nullable=True)  # JSON
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<AuditLog {self.action} {self.resource_type} [{self.resource_id}]>"
