"""Brute-force protection shared by escrow delivery codes and confirmation codes."""
import pytest

from campusbid.exceptions import CodeLockedError, InvalidCodeError
from campusbid.models import EscrowStatus
from campusbid.services.attempts import code_subject


def wrong_code(code: str) -> str:
    return f"{(int(code) + 1) % 1_000_000:06d}"


class TestEscrowCodeLockout:
    async def test_fifth_failure_locks_even_the_correct_code(self, services, notifier, make_escrow):
        creation = await make_escrow()
        escrow_id = creation.escrow.escrow_id
        bad = wrong_code(creation.delivery_code)

        remaining = []
        for _ in range(5):
            with pytest.raises(InvalidCodeError) as exc_info:
                await services.escrows.verify_delivery(escrow_id, bad, "seller-1")
            remaining.append(exc_info.value.attempts_remaining)

        assert remaining == [4, 3, 2, 1, 0]

        with pytest.raises(CodeLockedError):
            await services.escrows.verify_delivery(escrow_id, creation.delivery_code, "seller-1")

        escrow = await services.escrows.get(escrow_id)
        assert escrow.status == EscrowStatus.LOCKED
        assert escrow.confirmed_at is None

        assert len(notifier.alerts) == 1
        assert notifier.alerts[0]["user_id"] == "seller-1"

    async def test_malformed_codes_count_as_failures(self, services, make_escrow):
        creation = await make_escrow()
        escrow_id = creation.escrow.escrow_id

        with pytest.raises(InvalidCodeError) as exc_info:
            await services.escrows.verify_delivery(escrow_id, "12ab", "seller-1")

        assert exc_info.value.attempts_remaining == 4
        assert await services.verifier.failed_attempts(code_subject("escrow", escrow_id)) == 1

    async def test_counters_are_per_code(self, services, make_escrow):
        first = await make_escrow()
        second = await make_escrow()
        for _ in range(5):
            with pytest.raises(InvalidCodeError):
                await services.escrows.verify_delivery(
                    first.escrow.escrow_id, wrong_code(first.delivery_code), "seller-1"
                )

        escrow = await services.escrows.verify_delivery(
            second.escrow.escrow_id, second.delivery_code, "seller-1"
        )

        assert escrow.status == EscrowStatus.PENDING_CONFIRMATION

    async def test_lock_survives_time(self, services, clock, make_escrow):
        creation = await make_escrow()
        escrow_id = creation.escrow.escrow_id
        for _ in range(5):
            with pytest.raises(InvalidCodeError):
                await services.escrows.verify_delivery(escrow_id, wrong_code(creation.delivery_code))

        clock.advance(days=3)

        with pytest.raises(CodeLockedError):
            await services.escrows.verify_delivery(escrow_id, creation.delivery_code)


class TestConfirmationCodeLockout:
    async def test_same_policy_applies(self, services, make_escrow):
        creation = await make_escrow()
        transaction_id = creation.escrow.transaction_id
        issued = await services.confirmations.generate(transaction_id, "buyer-1")

        for expected_remaining in (4, 3, 2, 1, 0):
            with pytest.raises(InvalidCodeError) as exc_info:
                await services.confirmations.verify(transaction_id, wrong_code(issued.code), "seller-1")
            assert exc_info.value.attempts_remaining == expected_remaining

        with pytest.raises(CodeLockedError):
            await services.confirmations.verify(transaction_id, issued.code, "seller-1")

        assert not await services.confirmations.is_valid(transaction_id)
