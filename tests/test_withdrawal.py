"""Seller withdrawal eligibility while escrow holds funds."""
from decimal import Decimal

import pytest

from campusbid.config import get_settings


class TestCanWithdraw:
    async def test_seller_without_escrows_can_withdraw(self, services):
        assert await services.escrows.can_withdraw("fresh-seller")

    async def test_blocked_while_locked(self, services, make_escrow):
        await make_escrow(seller_id="seller-w")

        assert not await services.escrows.can_withdraw("seller-w")

    async def test_blocked_while_pending_confirmation(self, services, make_escrow):
        creation = await make_escrow(seller_id="seller-w")
        await services.escrows.verify_delivery(
            creation.escrow.escrow_id, creation.delivery_code, "seller-w"
        )

        assert not await services.escrows.can_withdraw("seller-w")

    async def test_blocked_while_disputed(self, services, make_escrow):
        await make_escrow(seller_id="seller-w", auction_id="auction-w")
        await services.disputes.create("auction-w", "buyer-1", "item_not_received", "Never arrived")

        assert not await services.escrows.can_withdraw("seller-w")

    async def test_allowed_after_release(self, services, make_escrow):
        creation = await make_escrow(seller_id="seller-w", amount="70.00")
        escrow_id = creation.escrow.escrow_id
        await services.escrows.verify_delivery(escrow_id, creation.delivery_code, "seller-w")
        await services.escrows.release_funds(escrow_id, "buyer-1")

        assert await services.escrows.can_withdraw("seller-w")
        assert await services.escrows.withdrawable_balance("seller-w") == Decimal("70.00")

    async def test_other_sellers_are_unaffected(self, services, make_escrow):
        await make_escrow(seller_id="seller-w")

        assert await services.escrows.can_withdraw("seller-other")


class TestReleasedBalancePolicy:
    @pytest.fixture(autouse=True)
    def released_balance_policy(self, monkeypatch):
        monkeypatch.setattr(get_settings(), "WITHDRAWAL_POLICY", "released_balance")

    async def test_amount_must_be_covered_by_released_funds(self, services, make_escrow):
        creation = await make_escrow(seller_id="seller-b", amount="40.00")
        escrow_id = creation.escrow.escrow_id
        await services.escrows.verify_delivery(escrow_id, creation.delivery_code, "seller-b")
        await services.escrows.release_funds(escrow_id)

        assert await services.escrows.can_withdraw("seller-b", "40.00")
        assert not await services.escrows.can_withdraw("seller-b", "40.01")
        assert await services.escrows.can_withdraw("seller-b")

    async def test_refunded_escrows_do_not_count(self, services, make_escrow):
        creation = await make_escrow(seller_id="seller-b", amount="40.00")
        await services.escrows.refund(creation.escrow.escrow_id, "cancelled")

        assert await services.escrows.withdrawable_balance("seller-b") == Decimal("0.00")
        assert not await services.escrows.can_withdraw("seller-b", "1.00")
