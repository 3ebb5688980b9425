"""Escrow state machine: creation, delivery verification, settlement."""
import asyncio
import json
from decimal import Decimal

import pytest

from campusbid.exceptions import (
    AlreadyRefunded,
    AlreadyReleased,
    AlreadyUsedError,
    DeliveryNotConfirmed,
    GatewayFailure,
    InvalidCodeError,
    InvalidRequestError,
    InvalidStateTransition,
    UnauthorizedError,
)
from campusbid.models import EscrowStatus, ReleaseKind


def wrong_code(code: str) -> str:
    return f"{(int(code) + 1) % 1_000_000:06d}"


class TestCreate:
    async def test_creates_locked_escrow_and_sends_code(self, services, notifier, make_escrow):
        creation = await make_escrow(amount="80.00")
        escrow = creation.escrow

        assert creation.created
        assert escrow.status == EscrowStatus.LOCKED
        assert escrow.amount == Decimal("80.00")
        assert escrow.delivery_code_hash != creation.delivery_code
        assert creation.delivery_code not in escrow.delivery_code_ciphertext
        assert notifier.last_code_for(escrow.escrow_id) == creation.delivery_code

    async def test_second_create_returns_existing_without_code(self, services, make_escrow):
        creation = await make_escrow()

        again = await services.escrows.create(creation.escrow.transaction_id)

        assert not again.created
        assert again.delivery_code is None
        assert again.escrow.escrow_id == creation.escrow.escrow_id

    async def test_requires_completed_transaction(self, services, make_transaction):
        transaction = await make_transaction(completed=False)

        with pytest.raises(InvalidStateTransition):
            await services.escrows.create(transaction.transaction_id)

    async def test_mismatched_amount_rejected(self, services, make_transaction):
        transaction = await make_transaction(amount="10.00")

        with pytest.raises(InvalidRequestError):
            await services.escrows.create(transaction.transaction_id, amount="11.00")

    async def test_buyer_can_read_code_while_locked(self, services, make_escrow):
        creation = await make_escrow()
        escrow = creation.escrow

        assert await services.escrows.get_delivery_code(escrow.escrow_id, escrow.buyer_id) == creation.delivery_code
        with pytest.raises(UnauthorizedError):
            await services.escrows.get_delivery_code(escrow.escrow_id, escrow.seller_id)


class TestVerifyDelivery:
    async def test_correct_code_confirms_and_erases_ciphertext(self, services, make_escrow):
        creation = await make_escrow()
        escrow_id = creation.escrow.escrow_id

        escrow = await services.escrows.verify_delivery(escrow_id, creation.delivery_code, "seller-1")

        assert escrow.status == EscrowStatus.PENDING_CONFIRMATION
        assert escrow.confirmed_at is not None
        assert escrow.delivery_code_ciphertext is None

    async def test_code_is_single_use(self, services, make_escrow):
        creation = await make_escrow()
        escrow_id = creation.escrow.escrow_id
        await services.escrows.verify_delivery(escrow_id, creation.delivery_code, "seller-1")

        with pytest.raises(AlreadyUsedError):
            await services.escrows.verify_delivery(escrow_id, creation.delivery_code, "seller-1")
        with pytest.raises(AlreadyUsedError):
            await services.escrows.get_delivery_code(escrow_id, "buyer-1")


class TestRelease:
    async def test_release_requires_confirmed_delivery(self, services, gateway, make_escrow):
        creation = await make_escrow()

        with pytest.raises(DeliveryNotConfirmed):
            await services.escrows.release_funds(creation.escrow.escrow_id)
        assert gateway.payouts == []

    async def test_release_pays_seller_once(self, services, gateway, make_escrow):
        creation = await make_escrow(amount="42.00")
        escrow_id = creation.escrow.escrow_id
        await services.escrows.verify_delivery(escrow_id, creation.delivery_code, "seller-1")

        escrow = await services.escrows.release_funds(escrow_id, "buyer-1")

        assert escrow.status == EscrowStatus.RELEASED
        assert escrow.release_kind == ReleaseKind.BUYER_CONFIRMED
        assert escrow.released_at is not None
        assert escrow.payout_reference == gateway.payouts[0]["payout_reference"]
        assert gateway.payouts[0]["amount"] == Decimal("42.00")

        with pytest.raises(AlreadyReleased):
            await services.escrows.release_funds(escrow_id, "buyer-1")
        assert len(gateway.payouts) == 1

    async def test_concurrent_release_has_one_winner(self, services, gateway, make_escrow):
        creation = await make_escrow()
        escrow_id = creation.escrow.escrow_id
        await services.escrows.verify_delivery(escrow_id, creation.delivery_code, "seller-1")

        results = await asyncio.gather(
            services.escrows.release_funds(escrow_id, "buyer-1"),
            services.escrows.release_funds(escrow_id, "buyer-1"),
            return_exceptions=True,
        )

        released = [r for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(released) == 1
        assert len(errors) == 1 and isinstance(errors[0], AlreadyReleased)
        assert len(gateway.payouts) == 1

    async def test_payout_failure_leaves_escrow_unchanged(self, services, gateway, make_escrow):
        creation = await make_escrow()
        escrow_id = creation.escrow.escrow_id
        await services.escrows.verify_delivery(escrow_id, creation.delivery_code, "seller-1")
        gateway.fail_next("payout", "provider_down")

        with pytest.raises(GatewayFailure):
            await services.escrows.release_funds(escrow_id, "buyer-1")

        escrow = await services.escrows.get(escrow_id)
        assert escrow.status == EscrowStatus.PENDING_CONFIRMATION
        assert escrow.payout_reference is None

        # retry succeeds
        escrow = await services.escrows.release_funds(escrow_id, "buyer-1")
        assert escrow.status == EscrowStatus.RELEASED
        assert len(gateway.payouts) == 1


class TestRefund:
    async def test_refund_from_locked_uses_provider_reference(self, services, gateway, make_escrow):
        creation = await make_escrow(amount="30.00")
        escrow_id = creation.escrow.escrow_id
        transaction = await services.ledger.get(creation.escrow.transaction_id)

        escrow = await services.escrows.refund(escrow_id, "seller cancelled", "seller-1")

        assert escrow.status == EscrowStatus.REFUNDED
        assert escrow.refunded_at is not None
        assert gateway.refunds[0]["reference"] == transaction.provider_reference
        assert gateway.refunds[0]["amount"] == Decimal("30.00")
        assert escrow.refund_reference == gateway.refunds[0]["refund_reference"]

    async def test_released_escrow_cannot_be_refunded(self, services, make_escrow):
        creation = await make_escrow()
        escrow_id = creation.escrow.escrow_id
        await services.escrows.verify_delivery(escrow_id, creation.delivery_code, "seller-1")
        await services.escrows.release_funds(escrow_id)

        with pytest.raises(AlreadyReleased):
            await services.escrows.refund(escrow_id, "too late")

    async def test_refunded_escrow_cannot_be_released(self, services, make_escrow):
        creation = await make_escrow()
        escrow_id = creation.escrow.escrow_id
        await services.escrows.refund(escrow_id, "cancelled")

        with pytest.raises(AlreadyRefunded):
            await services.escrows.release_funds(escrow_id)
        with pytest.raises(AlreadyRefunded):
            await services.escrows.refund(escrow_id, "again")


class TestAutoRelease:
    async def test_releases_only_after_delay(self, services, gateway, clock, make_escrow):
        creation = await make_escrow()
        escrow_id = creation.escrow.escrow_id
        await services.escrows.verify_delivery(escrow_id, creation.delivery_code, "seller-1")

        assert await services.escrows.auto_release_due() == []

        clock.advance(hours=25)
        assert await services.escrows.auto_release_due() == [escrow_id]

        escrow = await services.escrows.get(escrow_id)
        assert escrow.status == EscrowStatus.RELEASED
        assert escrow.release_kind == ReleaseKind.AUTO
        assert len(gateway.payouts) == 1

    async def test_locked_escrows_are_never_auto_released(self, services, clock, make_escrow):
        await make_escrow()
        clock.advance(days=30)

        assert await services.escrows.auto_release_due() == []


class TestAuditTrail:
    async def test_every_transition_is_recorded(self, services, make_escrow):
        creation = await make_escrow()
        escrow_id = creation.escrow.escrow_id
        with pytest.raises(InvalidCodeError):
            await services.escrows.verify_delivery(escrow_id, wrong_code(creation.delivery_code), "seller-1")
        await services.escrows.verify_delivery(escrow_id, creation.delivery_code, "seller-1")
        await services.escrows.release_funds(escrow_id, "buyer-1")

        history = await services.audit.history(escrow_id)
        actions = [(row.action, row.outcome) for row in history]

        assert actions == [
            ("escrow_created", "success"),
            ("delivery_verification", "failure"),
            ("delivery_verification", "success"),
            ("escrow_released", "success"),
        ]
        assert creation.delivery_code not in json.dumps([row.details for row in history])
