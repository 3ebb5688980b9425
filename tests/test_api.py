"""HTTP surface: auth, error mapping, and the main flows end to end."""
import json

from jose import jwt

from campusbid.config import get_settings


def _token(user_id: str, role: str = "user", token_type: str = "access") -> str:
    settings = get_settings()
    return jwt.encode(
        {"sub": user_id, "role": role, "type": token_type},
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )


def _as(user_id: str, role: str = "user") -> dict:
    return {"Authorization": f"Bearer {_token(user_id, role)}"}


BUYER = _as("buyer-1")
SELLER = _as("seller-1")
ADMIN = _as("admin-1", "admin")


def _wrong(code: str) -> str:
    return f"{(int(code) + 1) % 1_000_000:06d}"


async def _paid_transaction(client, key="api-order-1", auction_id="auction-api"):
    """Create a transaction as the buyer and complete it through the webhook."""
    response = await client.post(
        "/api/transactions",
        json={"seller_id": "seller-1", "amount": "50.00", "idempotency_key": key,
              "auction_id": auction_id},
        headers=BUYER,
    )
    transaction_id = response.json()["transaction"]["transaction_id"]
    await client.post(
        "/api/webhooks/payments",
        json={"transaction_id": transaction_id, "status": "success"},
    )
    escrow = (await client.get(f"/api/escrow/by-transaction/{transaction_id}", headers=BUYER)).json()
    return transaction_id, escrow


class TestPlumbing:
    async def test_health_and_security_headers(self, client):
        response = await client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in response.headers["Cache-Control"]

    async def test_missing_token_is_401(self, client):
        response = await client.get("/api/transactions")

        assert response.status_code == 401

    async def test_refresh_token_is_rejected(self, client):
        headers = {"Authorization": f"Bearer {_token('buyer-1', token_type='refresh')}"}

        response = await client.get("/api/transactions", headers=headers)

        assert response.status_code == 401

    async def test_engine_errors_render_reason(self, client):
        response = await client.get("/api/escrow/ESC-missing", headers=BUYER)

        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["reason"] == "not_found"


class TestTransactions:
    async def test_create_then_replay(self, client):
        payload = {"seller_id": "seller-1", "amount": "19.99", "idempotency_key": "replay-me"}

        first = await client.post("/api/transactions", json=payload, headers=BUYER)
        second = await client.post("/api/transactions", json=payload, headers=BUYER)

        assert first.status_code == 201
        assert first.json()["created"] is True
        assert first.json()["transaction"]["status"] == "pending"
        assert second.status_code == 200
        assert second.json()["created"] is False
        assert second.json()["transaction"]["transaction_id"] == first.json()["transaction"]["transaction_id"]

    async def test_invalid_amount_is_422(self, client):
        response = await client.post(
            "/api/transactions",
            json={"seller_id": "seller-1", "amount": "-1", "idempotency_key": "neg"},
            headers=BUYER,
        )

        assert response.status_code == 422

    async def test_strangers_cannot_read(self, client):
        created = await client.post(
            "/api/transactions",
            json={"seller_id": "seller-1", "amount": "10.00", "idempotency_key": "private"},
            headers=BUYER,
        )
        transaction_id = created.json()["transaction"]["transaction_id"]

        response = await client.get(f"/api/transactions/{transaction_id}", headers=_as("mallory"))

        assert response.status_code == 403
        assert response.json()["reason"] == "unauthorized"
        admin_view = await client.get(f"/api/transactions/{transaction_id}", headers=ADMIN)
        assert admin_view.status_code == 200

    async def test_initiate_returns_payment_link(self, client):
        created = await client.post(
            "/api/transactions",
            json={"seller_id": "seller-1", "amount": "10.00", "idempotency_key": "pay-link"},
            headers=BUYER,
        )
        transaction_id = created.json()["transaction"]["transaction_id"]

        response = await client.post(
            f"/api/transactions/{transaction_id}/initiate",
            json={"email": "buyer@campus.edu"},
            headers=BUYER,
        )

        assert response.status_code == 200
        assert response.json()["transaction"]["status"] == "processing"
        assert response.json()["payment_link"]


class TestWebhookEndpoint:
    async def test_duplicate_delivery_opens_one_escrow(self, client, services):
        transaction_id, escrow = await _paid_transaction(client)

        again = await client.post(
            "/api/webhooks/payments",
            json={"transaction_id": transaction_id, "status": "success"},
        )

        assert again.status_code == 200
        assert again.json()["escrow_created"] is False
        assert escrow["status"] == "locked"
        assert len(await services.escrows.list_held()) == 1

    async def test_garbage_is_still_acknowledged(self, client):
        response = await client.post(
            "/api/webhooks/payments",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["processed"] is False

    async def test_signature_checked_when_secret_set(self, client, services, monkeypatch):
        monkeypatch.setattr(services.webhooks, "_secret", "hook-secret")
        body = json.dumps({"transaction_id": "TXN-1", "status": "success"}).encode()

        response = await client.post(
            "/api/webhooks/payments",
            content=body,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": "bad"},
        )

        assert response.status_code == 401
        assert response.json()["reason"] == "invalid_signature"


class TestEscrowFlow:
    async def test_delivery_code_then_release(self, client, gateway):
        _, escrow = await _paid_transaction(client)
        escrow_id = escrow["escrow_id"]

        code = (await client.get(f"/api/escrow/{escrow_id}/delivery-code", headers=BUYER)).json()["delivery_code"]

        wrong = await client.post(
            f"/api/escrow/{escrow_id}/verify-delivery", json={"code": _wrong(code)}, headers=SELLER,
        )
        assert wrong.status_code == 400
        assert wrong.json()["reason"] == "invalid_code"
        assert wrong.json()["details"]["attempts_remaining"] == 4

        verified = await client.post(
            f"/api/escrow/{escrow_id}/verify-delivery", json={"code": code}, headers=SELLER,
        )
        assert verified.status_code == 200
        assert verified.json()["status"] == "pending_confirmation"

        released = await client.post(f"/api/escrow/{escrow_id}/release", headers=BUYER)
        assert released.status_code == 200
        assert released.json()["status"] == "released"
        assert released.json()["release_kind"] == "buyer_confirmed"
        assert len(gateway.payouts) == 1

        again = await client.post(f"/api/escrow/{escrow_id}/release", headers=BUYER)
        assert again.status_code == 409
        assert again.json()["reason"] == "already_released"

    async def test_buyer_cannot_verify_and_seller_cannot_release(self, client):
        _, escrow = await _paid_transaction(client)
        escrow_id = escrow["escrow_id"]

        verify = await client.post(
            f"/api/escrow/{escrow_id}/verify-delivery", json={"code": "000000"}, headers=BUYER,
        )
        release = await client.post(f"/api/escrow/{escrow_id}/release", headers=SELLER)

        assert verify.status_code == 403
        assert release.status_code == 403

    async def test_held_list_is_admin_only(self, client):
        await _paid_transaction(client)

        assert (await client.get("/api/escrow/held", headers=SELLER)).status_code == 403
        held = await client.get("/api/escrow/held", headers=ADMIN)
        assert held.status_code == 200
        assert held.json()["total_held"] == "50.00"

    async def test_withdrawal_eligibility(self, client):
        await _paid_transaction(client)

        response = await client.get("/api/escrow/withdrawal-eligibility", headers=SELLER)

        assert response.status_code == 200
        assert response.json()["can_withdraw"] is False


class TestConfirmationFlow:
    async def test_generate_verify_release(self, client):
        transaction_id, _ = await _paid_transaction(client)
        base = f"/api/transactions/{transaction_id}/confirmation"

        issued = await client.post(base, headers=BUYER)
        assert issued.status_code == 201
        code = issued.json()["code"]

        details = await client.get(base, headers=BUYER)
        assert details.status_code == 200
        assert "code" not in details.json()

        verified = await client.post(f"{base}/verify", json={"code": code}, headers=SELLER)
        assert verified.status_code == 200
        assert verified.json()["released"] is True
        assert verified.json()["escrow"]["status"] == "released"

        reused = await client.post(f"{base}/verify", json={"code": code}, headers=SELLER)
        assert reused.status_code == 409
        assert reused.json()["reason"] == "already_used"


class TestDisputeEndpoints:
    async def test_buyer_opens_admin_resolves(self, client, gateway):
        _, escrow = await _paid_transaction(client, auction_id="auction-dsp")

        opened = await client.post(
            "/api/disputes",
            json={"auction_id": "auction-dsp", "reason": "damaged_item", "description": "Screen cracked"},
            headers=BUYER,
        )
        assert opened.status_code == 201
        dispute_id = opened.json()["dispute_id"]

        frozen = await client.get(f"/api/escrow/{escrow['escrow_id']}", headers=BUYER)
        assert frozen.json()["status"] == "disputed"

        denied = await client.post(
            f"/api/disputes/{dispute_id}/resolve",
            json={"resolution": "refund_buyer", "note": "self-service"},
            headers=BUYER,
        )
        assert denied.status_code == 403

        resolved = await client.post(
            f"/api/disputes/{dispute_id}/resolve",
            json={"resolution": "refund_buyer", "note": "Photos confirm damage"},
            headers=ADMIN,
        )
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "resolved"
        assert len(gateway.refunds) == 1

    async def test_non_admin_list_is_scoped_to_caller(self, client):
        await _paid_transaction(client, auction_id="auction-scope")
        await client.post(
            "/api/disputes",
            json={"auction_id": "auction-scope", "reason": "other", "description": "?"},
            headers=BUYER,
        )

        mine = await client.get("/api/disputes", headers=BUYER)
        theirs = await client.get("/api/disputes", params={"buyer_id": "buyer-1"}, headers=_as("mallory"))
        everything = await client.get("/api/disputes", params={"status": "open"}, headers=ADMIN)

        assert mine.json()["total"] == 1
        assert theirs.json()["total"] == 0
        assert everything.json()["total"] == 1
