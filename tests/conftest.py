import itertools
import os
from typing import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

# In-memory MongoDB: no replica set, so no multi-document transactions
os.environ["MONGODB_TRANSACTIONS"] = "false"
os.environ.setdefault("MONGODB_DB_NAME", "creditledger_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "whsec-test")
os.environ.setdefault("PAYMENTS_TEST_MODE", "true")
os.environ.setdefault("ADMIN_EMAILS", "admin@example.com")
os.environ.setdefault("OPENAI_API_KEY", "")


@pytest_asyncio.fixture(autouse=True)
async def db():
    """Fresh in-memory database per test."""
    from app.db.init import init_db
    client = AsyncMongoMockClient()
    await init_db(client)
    yield client


@pytest_asyncio.fixture
async def make_account(db):
    """Insert an account; a starting balance is granted through the ledger so the log matches."""
    from app.models.account import Account, Tier
    from app.models.credit_ledger import LedgerKind
    from app.services import credits as credits_service

    counter = itertools.count(1)

    async def _make(balance: int = 0, tier: Tier = Tier.LITE, credit_exempt: bool = False, role: str = "user"):
        account = Account(
            email=f"user{next(counter)}@example.com",
            name="Test",
            tier=tier,
            credit_exempt=credit_exempt,
            role=role,
        )
        await account.insert()
        if balance:
            await credits_service.add_credits(account.id, balance, "seed", kind=LedgerKind.BONUS)
        return await Account.get(account.id)

    return _make


class FakeProvider:
    """Deterministic stand-in for the content provider."""

    def __init__(self, fail: bool = False, on_generate=None):
        self.fail = fail
        self.on_generate = on_generate
        self.calls = 0

    async def generate(self, prompt, tone=None, max_words=None):
        from app.services.generation import GenerationError
        self.calls += 1
        if self.on_generate is not None:
            await self.on_generate()
        if self.fail:
            raise GenerationError()
        return f"generated: {prompt}"

    async def run_feature(self, operation, text):
        return await self.generate(f"{operation.value}: {text}")


@pytest_asyncio.fixture
async def provider() -> AsyncGenerator[FakeProvider, None]:
    from app.main import app
    from app.services.generation import get_content_provider
    fake = FakeProvider()
    app.dependency_overrides[get_content_provider] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_content_provider, None)


@pytest_asyncio.fixture
async def make_client(db):
    """Factory for an AsyncClient, optionally logged in as `account`."""
    from app.core.security import create_session_cookie
    from app.deps import SESSION_COOKIE_NAME
    from app.main import app

    clients = []

    async def _make(account=None) -> AsyncClient:
        cookies = {}
        if account is not None:
            cookies[SESSION_COOKIE_NAME] = create_session_cookie(
                {"account_id": str(account.id), "session_version": account.session_version}
            )
        ac = AsyncClient(transport=ASGITransport(app=app), base_url="http://test", cookies=cookies)
        clients.append(ac)
        return ac

    yield _make
    for ac in clients:
        await ac.aclose()


@pytest_asyncio.fixture
async def client(make_client) -> AsyncClient:
    return await make_client()
