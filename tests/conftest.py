"""
Shared fixtures for the escrow engine tests.

Every test gets its own SQLite file database (NullPool, so each session has
its own connection like it would against PostgreSQL), a sandbox payment
gateway that records payouts/refunds, a recording notifier that captures
delivery codes, and a controllable clock.
"""
import os

from cryptography.fernet import Fernet

# Settings are read once and cached; configure the environment before any
# campusbid module is imported.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["FERNET_KEY"] = Fernet.generate_key().decode("utf-8")
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["JWT_ALGORITHM"] = "HS256"
os.environ["WEBHOOK_SECRET"] = ""
os.environ["SEED_DEMO_DATA"] = "false"
os.environ["AUTO_RELEASE_ENABLED"] = "false"

import uuid
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt

from campusbid.config import get_settings
from campusbid.database import build_engine, build_session_factory, create_tables
from campusbid.gateway import SandboxPaymentGateway
from campusbid.notifications import RecordingNotifier
from campusbid.services.container import build_services

get_settings.cache_clear()


class FakeClock:
    """Callable clock the services read instead of datetime.utcnow."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ═══════════════════════════════════════════════════════
#  Infrastructure
# ═══════════════════════════════════════════════════════


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'campusbid.db'}")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def gateway():
    return SandboxPaymentGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return FakeClock(datetime.utcnow().replace(microsecond=0))


@pytest.fixture
def services(session_factory, gateway, notifier, clock):
    return build_services(
        session_factory,
        gateway=gateway,
        notifier=notifier,
        clock=clock,
        webhook_secret="",
    )


# ═══════════════════════════════════════════════════════
#  Domain helpers
# ═══════════════════════════════════════════════════════


@pytest.fixture
def make_transaction(services):
    """Create a transaction; completed=True also applies a success callback."""

    async def _make(
        buyer_id="buyer-1",
        seller_id="seller-1",
        amount="50.00",
        auction_id=None,
        completed=True,
    ):
        transaction, _ = await services.ledger.create(
            buyer_id=buyer_id,
            seller_id=seller_id,
            amount=amount,
            idempotency_key=f"key-{uuid.uuid4().hex}",
            auction_id=auction_id or f"auction-{uuid.uuid4().hex[:8]}",
        )
        if completed:
            result = await services.ledger.apply_callback(
                "success",
                transaction_id=transaction.transaction_id,
                provider_reference=f"PAY-{uuid.uuid4().hex[:12]}",
            )
            transaction = result.transaction
        return transaction

    return _make


@pytest.fixture
def make_escrow(services, make_transaction):
    """Completed transaction plus its locked escrow (EscrowCreation)."""

    async def _make(**kwargs):
        transaction = await make_transaction(**kwargs)
        return await services.escrows.create(transaction.transaction_id)

    return _make


# ═══════════════════════════════════════════════════════
#  HTTP
# ═══════════════════════════════════════════════════════


def make_token(user_id: str, role: str = "user") -> str:
    settings = get_settings()
    return jwt.encode(
        {"sub": user_id, "role": role, "type": "access"},
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )


def auth_headers(user_id: str, role: str = "user") -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


@pytest_asyncio.fixture
async def client(services, engine):
    from campusbid.main import create_app
    from campusbid.middleware.rate_limit import limiter

    limiter.reset()
    app = create_app(services=services, bind=engine)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
