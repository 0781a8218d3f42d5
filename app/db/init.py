from contextlib import asynccontextmanager
from typing import AsyncIterator

import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession

from app.core.config import get_settings
from app.models.account import Account
from app.models.audit_log import AuditLog
from app.models.credit_ledger import CreditLedgerEntry
from app.models.failed_job import FailedJob
from app.models.global_setting import GlobalSetting
from app.models.reconciliation_issue import ReconciliationIssue

DOCUMENT_MODELS = [
    Account,
    CreditLedgerEntry,
    GlobalSetting,
    ReconciliationIssue,
    AuditLog,
    FailedJob,
]

_client: AsyncIOMotorClient | None = None


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db(client: AsyncIOMotorClient | None = None) -> None:
    """Connect and register document models. Tests pass an in-memory client."""
    global _client
    settings = get_settings()
    if client is None:
        # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    _client = client
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)


@asynccontextmanager
async def transaction() -> AsyncIterator[AsyncIOMotorClientSession | None]:
    """
    Yield a session with an open transaction, or None when transactions are disabled.
    Leaving the block with an exception aborts; normal exit commits.
    """
    if not get_settings().mongodb_transactions or _client is None:
        yield None
        return
    async with await _client.start_session() as session:
        async with session.start_transaction():
            yield session
