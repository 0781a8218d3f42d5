"""Credits service against an in-memory MongoDB."""

import asyncio

import pytest
from beanie import PydanticObjectId

from app.core.exceptions import AccountNotFoundError, BadRequestError, InsufficientCreditsError
from app.models.audit_log import AuditLog
from app.models.credit_ledger import CreditLedgerEntry, LedgerKind
from app.services import credits as credits_service
from app.services import ledger_store


async def test_get_balance_unknown_account_is_zero():
    assert await credits_service.get_balance(PydanticObjectId()) == 0


async def test_add_credits(make_account):
    account = await make_account()
    result = await credits_service.add_credits(account.id, 500, "Razorpay", external_ref="pay_1")
    assert result.success
    assert result.new_balance == 500
    assert not result.duplicate
    assert result.entry.kind == LedgerKind.PURCHASE
    assert result.entry.amount == 500
    assert result.entry.balance_after == 500
    assert result.entry.source == "Razorpay"
    assert await credits_service.get_balance(account.id) == 500


async def test_add_credits_same_reference_credits_once(make_account):
    account = await make_account(balance=10)
    first = await credits_service.add_credits(account.id, 500, "Razorpay", external_ref="pay_abc")
    second = await credits_service.add_credits(account.id, 500, "Razorpay", external_ref="pay_abc")
    assert first.new_balance == 510
    assert second.duplicate
    assert second.new_balance == 510
    assert second.entry.id == first.entry.id
    assert await CreditLedgerEntry.find(CreditLedgerEntry.external_ref == "pay_abc").count() == 1


async def test_same_reference_on_different_accounts_is_independent(make_account):
    a = await make_account()
    b = await make_account()
    await credits_service.add_credits(a.id, 100, "Stripe", external_ref="txn_1")
    result = await credits_service.add_credits(b.id, 100, "Stripe", external_ref="txn_1")
    assert not result.duplicate
    assert result.new_balance == 100


async def test_add_credits_rejects_non_positive(make_account):
    account = await make_account()
    for amount in (0, -5):
        with pytest.raises(BadRequestError):
            await credits_service.add_credits(account.id, amount, "x")
    assert await ledger_store.count_entries(account.id) == 0


async def test_add_credits_rejects_usage_kind(make_account):
    account = await make_account()
    with pytest.raises(BadRequestError):
        await credits_service.add_credits(account.id, 10, "x", kind=LedgerKind.USAGE)


async def test_add_credits_unknown_account():
    with pytest.raises(AccountNotFoundError):
        await credits_service.add_credits(PydanticObjectId(), 10, "x")
    assert await CreditLedgerEntry.count() == 0


async def test_consume_credits(make_account):
    account = await make_account(balance=100)
    result = await credits_service.consume_credits(account.id, 30, "Content Generation (lite tier)")
    assert result.success
    assert result.new_balance == 70
    assert result.entry.kind == LedgerKind.USAGE
    assert result.entry.amount == -30
    assert result.entry.balance_after == 70


async def test_consume_exact_balance_reaches_zero(make_account):
    account = await make_account(balance=10)
    result = await credits_service.consume_credits(account.id, 10)
    assert result.new_balance == 0


async def test_consume_insufficient_writes_nothing(make_account):
    account = await make_account(balance=5)
    with pytest.raises(InsufficientCreditsError) as exc:
        await credits_service.consume_credits(account.id, 10)
    assert exc.value.current == 5
    assert exc.value.new_balance == 5
    assert exc.value.required == 10
    assert exc.value.shortfall == 5
    assert await credits_service.get_balance(account.id) == 5
    assert await ledger_store.count_entries(account.id) == 1


async def test_consume_rejects_non_positive(make_account):
    account = await make_account(balance=10)
    with pytest.raises(BadRequestError):
        await credits_service.consume_credits(account.id, 0)


async def test_concurrent_consumes_never_go_negative(make_account):
    account = await make_account(balance=50)
    results = await asyncio.gather(
        *[credits_service.consume_credits(account.id, 10, "race") for _ in range(10)],
        return_exceptions=True,
    )
    succeeded = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, InsufficientCreditsError)]
    assert len(succeeded) == 5
    assert len(rejected) == 5
    assert await credits_service.get_balance(account.id) == 0
    usage = await CreditLedgerEntry.find(
        CreditLedgerEntry.account_id == account.id,
        CreditLedgerEntry.kind == LedgerKind.USAGE,
    ).count()
    assert usage == 5


async def test_balance_equals_sum_of_ledger(make_account):
    account = await make_account(balance=100)
    await credits_service.add_credits(account.id, 250, "Stripe", external_ref="t1")
    await credits_service.consume_credits(account.id, 40)
    await credits_service.adjust_credits(account.id, -60, "refund", "admin-1")
    with pytest.raises(InsufficientCreditsError):
        await credits_service.consume_credits(account.id, 1000)
    balance = await credits_service.get_balance(account.id)
    assert balance == 250
    assert await ledger_store.replay_balance(account.id) == balance


async def test_adjust_positive_writes_entry_and_audit(make_account):
    account = await make_account(balance=100)
    result = await credits_service.adjust_credits(account.id, 100, "goodwill", "admin-7")
    assert result.new_balance == 200
    assert result.entry.kind == LedgerKind.ADJUSTMENT
    assert result.entry.source == "Manual adjustment by admin admin-7: goodwill"
    audit = await AuditLog.find_one(AuditLog.event_type == "credits_adjusted")
    assert audit.actor_id == "admin-7"
    assert audit.metadata["amount"] == 100


async def test_adjust_below_zero_is_rejected(make_account):
    account = await make_account(balance=15)
    with pytest.raises(InsufficientCreditsError) as exc:
        await credits_service.adjust_credits(account.id, -20, "refund", "admin-1")
    assert exc.value.shortfall == 5
    assert await credits_service.get_balance(account.id) == 15
    assert await ledger_store.count_entries(account.id) == 1
    assert await AuditLog.find(AuditLog.event_type == "credits_adjusted").count() == 0


async def test_adjust_validation(make_account):
    account = await make_account(balance=15)
    with pytest.raises(BadRequestError):
        await credits_service.adjust_credits(account.id, 0, "noop", "admin-1")
    with pytest.raises(BadRequestError):
        await credits_service.adjust_credits(account.id, 5, "   ", "admin-1")
    with pytest.raises(BadRequestError):
        await credits_service.adjust_credits(account.id, 5, "reason", "")


async def test_history_newest_first_and_paginated(make_account):
    account = await make_account()
    for i in range(5):
        await credits_service.add_credits(account.id, i + 1, f"src{i}")
    entries = await credits_service.get_history(account.id, limit=2)
    assert [e.amount for e in entries] == [5, 4]
    page = await credits_service.get_history(account.id, limit=2, offset=2)
    assert [e.amount for e in page] == [3, 2]


async def test_stats(make_account):
    a = await make_account(balance=100)
    b = await make_account()
    await credits_service.add_credits(b.id, 300, "Stripe", external_ref="s1")
    await credits_service.consume_credits(a.id, 30)
    await credits_service.adjust_credits(b.id, 20, "bonus", "admin")
    await credits_service.adjust_credits(b.id, -10, "fix", "admin")
    stats = await credits_service.get_stats()
    assert stats["total_issued"] == 100 + 300 + 20
    assert stats["total_consumed"] == 30
    assert stats["distinct_accounts"] == 2
    assert stats["total_entries"] == 5
    assert stats["by_kind"]["USAGE"] == {"total": -30, "count": 1}
    assert stats["by_kind"]["ADJUSTMENT"] == {"total": 10, "count": 2}
