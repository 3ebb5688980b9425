"""Provider webhook intake: idempotent processing and HMAC verification."""
import json

import pytest
from sqlalchemy import func, select

from campusbid.exceptions import InvalidSignatureError
from campusbid.models import Escrow, EscrowStatus, PaymentWebhook, TransactionStatus
from campusbid.services.webhooks import WebhookProcessor, sign_payload


async def _pending(services, key="webhook-order"):
    transaction, _ = await services.ledger.create(
        buyer_id="buyer-1",
        seller_id="seller-1",
        amount="55.00",
        idempotency_key=key,
        auction_id="auction-hook",
    )
    return transaction


async def _count(session_factory, model):
    async with session_factory() as session:
        return (await session.execute(select(func.count(model.id)))).scalar_one()


class TestProcess:
    async def test_completed_callback_opens_escrow(self, services, session_factory, notifier):
        transaction = await _pending(services)

        receipt = await services.webhooks.process(
            {"transaction_id": transaction.transaction_id, "status": "success",
             "provider_reference": "PAY-hook-1"}
        )

        assert receipt.processed and receipt.error is None
        assert receipt.escrow_created
        escrow = await services.escrows.get(receipt.escrow_id)
        assert escrow.status == EscrowStatus.LOCKED
        assert escrow.auction_id == "auction-hook"
        assert notifier.last_code_for(escrow.escrow_id) is not None
        stored = await services.ledger.get(transaction.transaction_id)
        assert stored.status == TransactionStatus.COMPLETED

    async def test_duplicate_delivery_is_acknowledged_once(self, services, session_factory):
        transaction = await _pending(services)
        payload = {"transaction_id": transaction.transaction_id, "status": "success"}

        first = await services.webhooks.process(payload)
        second = await services.webhooks.process(payload)

        assert first.escrow_created and not second.escrow_created
        assert second.processed
        assert second.escrow_id == first.escrow_id
        assert await _count(session_factory, Escrow) == 1
        assert await _count(session_factory, PaymentWebhook) == 2

    async def test_failed_payment_opens_no_escrow(self, services, session_factory):
        transaction = await _pending(services)

        receipt = await services.webhooks.process(
            {"transaction_id": transaction.transaction_id, "status": "failed",
             "metadata": {"reason": "card_declined"}}
        )

        assert receipt.processed and receipt.escrow_id is None
        stored = await services.ledger.get(transaction.transaction_id)
        assert stored.status == TransactionStatus.FAILED
        assert stored.failure_reason == "card_declined"
        assert await _count(session_factory, Escrow) == 0

    async def test_unknown_transaction_is_stored_with_error(self, services, session_factory):
        receipt = await services.webhooks.process({"transaction_id": "TXN-nope", "status": "success"})

        assert not receipt.processed
        assert "TXN-nope" in receipt.error
        async with session_factory() as session:
            row = (await session.execute(
                select(PaymentWebhook).where(PaymentWebhook.id == receipt.webhook_id)
            )).scalar_one()
        assert row.processed is False
        assert row.error == receipt.error
        assert row.payload["transaction_id"] == "TXN-nope"

    async def test_delivery_timestamps_follow_the_engine_clock(self, services, session_factory, clock):
        transaction = await _pending(services)
        clock.advance(minutes=30)

        receipt = await services.webhooks.process(
            {"transaction_id": transaction.transaction_id, "status": "success"}
        )

        async with session_factory() as session:
            row = (await session.execute(
                select(PaymentWebhook).where(PaymentWebhook.id == receipt.webhook_id)
            )).scalar_one()
        assert row.received_at == clock.now
        assert row.processed_at == clock.now
        assert (await services.ledger.get(transaction.transaction_id)).completed_at == clock.now

    async def test_payload_without_identifier(self, services):
        receipt = await services.webhooks.process({"status": "success"})

        assert not receipt.processed
        assert receipt.error


class TestSignature:
    @pytest.fixture
    def signed_processor(self, services, session_factory):
        return WebhookProcessor(session_factory, services.ledger, services.escrows, secret="hook-secret")

    async def test_bad_signature_is_refused_before_storing(self, signed_processor, session_factory):
        body = json.dumps({"transaction_id": "TXN-1", "status": "success"}).encode()

        with pytest.raises(InvalidSignatureError):
            await signed_processor.process(json.loads(body), body=body, signature="deadbeef")
        with pytest.raises(InvalidSignatureError):
            await signed_processor.process(json.loads(body), body=body, signature=None)

        assert await _count(session_factory, PaymentWebhook) == 0

    async def test_valid_signature_is_accepted(self, services, signed_processor):
        transaction = await _pending(services)
        body = json.dumps({"transaction_id": transaction.transaction_id, "status": "success"}).encode()

        receipt = await signed_processor.process(
            json.loads(body), body=body, signature=sign_payload("hook-secret", body)
        )

        assert receipt.processed and receipt.escrow_created

    def test_no_secret_skips_verification(self, services):
        services.webhooks.verify_signature(b"{}", None)
