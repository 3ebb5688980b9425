"""
CampusBid Escrow — Seed Script
Creates a paid campus auction with its escrow so a local instance has
something to click through. Called on startup when SEED_DEMO_DATA is set
and the ledger is empty.
"""
from decimal import Decimal

from sqlalchemy import func, select

from campusbid.models import Transaction
from campusbid.services.container import EngineServices

DEMO_BUYER_ID = "student-buyer-001"
DEMO_SELLER_ID = "student-seller-001"
DEMO_AUCTION_ID = "auction-textbook-001"


async def seed_database(services: EngineServices) -> None:
    """Insert demo data if the transactions table is empty."""

    async with services.session_factory() as session:
        count = (await session.execute(select(func.count(Transaction.id)))).scalar_one()
    if count:
        print("⏭  Database already seeded — skipping.")
        return

    print("🌱 Seeding database with demo data…")

    # ── A won auction, paid through the sandbox provider ──
    transaction, _ = await services.ledger.create(
        buyer_id=DEMO_BUYER_ID,
        seller_id=DEMO_SELLER_ID,
        amount=Decimal("45.00"),
        idempotency_key="seed-textbook-001",
        auction_id=DEMO_AUCTION_ID,
        metadata={"item": "Organic Chemistry, 8th edition"},
    )
    await services.ledger.apply_callback(
        "success",
        transaction_id=transaction.transaction_id,
        provider_reference="SEED-PAY-0001",
    )

    # ── Escrow locked until the book changes hands ──
    creation = await services.escrows.create(transaction.transaction_id)

    # ── A second intent, still waiting for the provider ──
    await services.ledger.create(
        buyer_id=DEMO_BUYER_ID,
        seller_id=DEMO_SELLER_ID,
        amount=Decimal("12.50"),
        idempotency_key="seed-calculator-001",
        auction_id="auction-calculator-001",
    )

    print(
        f"✅ Seed complete: transaction {transaction.transaction_id}, "
        f"escrow {creation.escrow.escrow_id} (locked)"
    )
