"""
CampusBid Escrow — Service Wiring
Builds every engine component around one session factory so the app, the
demo seed and the tests share the same wiring.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campusbid.audit import AuditRecorder
from campusbid.gateway import PaymentGateway, SandboxPaymentGateway
from campusbid.notifications import LoggingNotifier, Notifier
from campusbid.services.attempts import AttemptTracker
from campusbid.services.confirmations import ConfirmationService
from campusbid.services.disputes import AuctionDirectory, DisputeService
from campusbid.services.escrow import EscrowService
from campusbid.services.ledger import TransactionLedger
from campusbid.services.verifier import CodeVerifier
from campusbid.services.webhooks import WebhookProcessor


@dataclass
class EngineServices:
    session_factory: async_sessionmaker[AsyncSession]
    gateway: PaymentGateway
    notifier: Notifier
    audit: AuditRecorder
    tracker: AttemptTracker
    verifier: CodeVerifier
    ledger: TransactionLedger
    escrows: EscrowService
    confirmations: ConfirmationService
    disputes: DisputeService
    webhooks: WebhookProcessor


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[Notifier] = None,
    directory: Optional[AuctionDirectory] = None,
    clock: Callable[[], datetime] = datetime.utcnow,
    webhook_secret: Optional[str] = None,
) -> EngineServices:
    gateway = gateway or SandboxPaymentGateway()
    notifier = notifier or LoggingNotifier()

    audit = AuditRecorder(session_factory)
    tracker = AttemptTracker(session_factory, clock=clock)
    verifier = CodeVerifier(tracker, notifier)
    ledger = TransactionLedger(session_factory, gateway, audit, clock=clock)
    escrows = EscrowService(session_factory, gateway, verifier, notifier, audit, clock=clock)

    return EngineServices(
        session_factory=session_factory,
        gateway=gateway,
        notifier=notifier,
        audit=audit,
        tracker=tracker,
        verifier=verifier,
        ledger=ledger,
        escrows=escrows,
        confirmations=ConfirmationService(
            session_factory, ledger, escrows, verifier, tracker, notifier, audit, clock=clock,
        ),
        disputes=DisputeService(session_factory, escrows, audit, directory=directory, clock=clock),
        webhooks=WebhookProcessor(
            session_factory, ledger, escrows, secret=webhook_secret, clock=clock,
        ),
    )
