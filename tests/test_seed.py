from campusbid.models import EscrowStatus
from campusbid.seed import DEMO_AUCTION_ID, DEMO_BUYER_ID, seed_database


async def test_seed_is_idempotent(services):
    await seed_database(services)
    await seed_database(services)

    transactions = await services.ledger.list_for_user(DEMO_BUYER_ID)
    escrow = await services.escrows.get_by_auction(DEMO_AUCTION_ID)

    assert len(transactions) == 2
    assert escrow.status == EscrowStatus.LOCKED
