"""Ledger store write path: atomic floor check, duplicate claims, failure handling."""

import asyncio

import pytest
from pymongo.errors import PyMongoError

from app.core.exceptions import InsufficientCreditsError, LedgerWriteError
from app.models.account import Account
from app.models.credit_ledger import CreditLedgerEntry, LedgerKind
from app.services import credits as credits_service
from app.services import ledger_store


class _Yielding:
    """Query wrapper that hands control back to the event loop before each database call."""

    def __init__(self, query):
        self._query = query

    def __getattr__(self, name):
        attr = getattr(self._query, name)
        if name == "update":
            return lambda *args, **kwargs: _Yielding(attr(*args, **kwargs))
        return attr

    def __await__(self):
        return self._run().__await__()

    async def _run(self):
        await asyncio.sleep(0)
        return await self._query


@pytest.fixture
def interleaved(monkeypatch):
    original = Account.find_one

    def find_one(*args, **kwargs):
        return _Yielding(original(*args, **kwargs))

    monkeypatch.setattr(Account, "find_one", staticmethod(find_one))


async def _usage_count(account_id) -> int:
    return await CreditLedgerEntry.find(
        CreditLedgerEntry.account_id == account_id,
        CreditLedgerEntry.kind == LedgerKind.USAGE,
    ).count()


async def test_interleaved_consumes_never_overspend(make_account, interleaved):
    account = await make_account(balance=50)
    results = await asyncio.gather(
        *[credits_service.consume_credits(account.id, 10, "race") for _ in range(10)],
        return_exceptions=True,
    )
    assert sum(1 for r in results if not isinstance(r, Exception)) == 5
    assert sum(1 for r in results if isinstance(r, InsufficientCreditsError)) == 5
    assert await ledger_store.get_balance(account.id) == 0
    assert await _usage_count(account.id) == 5
    assert await ledger_store.replay_balance(account.id) == 0


async def test_increment_refuses_a_stale_balance(make_account):
    account = await make_account(balance=10)
    seen = account.balance
    await credits_service.consume_credits(account.id, 10, "elsewhere")
    assert await ledger_store._increment(account.id, -seen, 0, None) is None
    assert await ledger_store.get_balance(account.id) == 0


async def test_duplicate_reference_never_moves_balance(make_account, monkeypatch):
    account = await make_account(balance=400)
    await ledger_store.apply_delta(account.id, 500, LedgerKind.PURCHASE, "Stripe", external_ref="TXN-1")

    increments = []
    real = ledger_store._increment

    async def counting(*args, **kwargs):
        increments.append(args)
        return await real(*args, **kwargs)

    monkeypatch.setattr(ledger_store, "_increment", counting)
    with pytest.raises(ledger_store.DuplicateReferenceError):
        await ledger_store.apply_delta(account.id, 500, LedgerKind.PURCHASE, "Stripe", external_ref="TXN-1")
    assert increments == []

    await credits_service.consume_credits(account.id, 900, "spend all")
    assert await ledger_store.get_balance(account.id) == 0
    assert await ledger_store.replay_balance(account.id) == 0


async def test_entry_insert_failure_changes_nothing(make_account, monkeypatch):
    account = await make_account(balance=50)

    async def broken_insert(self, *args, **kwargs):
        raise PyMongoError("connection reset")

    monkeypatch.setattr(CreditLedgerEntry, "insert", broken_insert)
    with pytest.raises(LedgerWriteError) as exc:
        await credits_service.add_credits(account.id, 100, "Stripe")
    assert exc.value.status_code == 503
    monkeypatch.undo()

    assert await ledger_store.get_balance(account.id) == 50
    assert await ledger_store.count_entries(account.id) == 1


async def test_increment_failure_withdraws_claimed_entry(make_account, monkeypatch):
    account = await make_account(balance=50)

    async def broken_increment(*args, **kwargs):
        raise PyMongoError("socket timeout")

    monkeypatch.setattr(ledger_store, "_increment", broken_increment)
    with pytest.raises(LedgerWriteError):
        await credits_service.consume_credits(account.id, 10)
    monkeypatch.undo()

    assert await ledger_store.get_balance(account.id) == 50
    assert await _usage_count(account.id) == 0
    assert await ledger_store.replay_balance(account.id) == 50


async def test_rejected_consume_withdraws_claimed_entry(make_account):
    account = await make_account(balance=5)
    with pytest.raises(InsufficientCreditsError):
        await credits_service.consume_credits(account.id, 10)
    assert await _usage_count(account.id) == 0
    assert await ledger_store.replay_balance(account.id) == 5


async def test_transient_error_is_retried(make_account, monkeypatch):
    account = await make_account(balance=50)
    calls = []
    real = ledger_store._increment

    async def flaky(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise PyMongoError("write conflict", error_labels=["TransientTransactionError"])
        return await real(*args, **kwargs)

    monkeypatch.setattr(ledger_store, "_increment", flaky)
    result = await credits_service.consume_credits(account.id, 10)
    assert result.new_balance == 40
    assert len(calls) == 2
    assert await _usage_count(account.id) == 1


async def test_transient_error_gives_up_after_retries(make_account, monkeypatch):
    account = await make_account(balance=50)
    calls = []

    async def always_conflicting(*args, **kwargs):
        calls.append(1)
        raise PyMongoError("write conflict", error_labels=["TransientTransactionError"])

    monkeypatch.setattr(ledger_store, "_increment", always_conflicting)
    with pytest.raises(LedgerWriteError):
        await credits_service.consume_credits(account.id, 10)
    assert len(calls) == ledger_store.TRANSIENT_RETRIES
    monkeypatch.undo()
    assert await ledger_store.get_balance(account.id) == 50
    assert await _usage_count(account.id) == 0


async def test_entry_records_balance_after(make_account):
    account = await make_account(balance=30)
    entry, balance = await ledger_store.apply_delta(account.id, -12, LedgerKind.USAGE, "x", floor=0)
    assert balance == 18
    stored = await CreditLedgerEntry.get(entry.id)
    assert stored.balance_after == 18
