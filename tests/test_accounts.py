import pytest

from app.core.exceptions import AccountNotFoundError, BadRequestError, ConflictError
from app.models.account import Tier
from app.models.credit_ledger import LedgerKind
from app.services import accounts as accounts_service
from app.services import credits as credits_service


async def test_register_account_grants_bonus_once():
    account = await accounts_service.register_account("a@example.com", "A", Tier.PRO)
    assert account.balance == 100
    assert account.tier == Tier.PRO
    entries = await credits_service.get_history(account.id)
    assert len(entries) == 1
    assert entries[0].kind == LedgerKind.BONUS
    assert entries[0].source == "SYSTEM"

    assert await accounts_service.grant_signup_bonus(account) == 0
    assert await credits_service.get_balance(account.id) == 100


async def test_register_validation():
    with pytest.raises(BadRequestError):
        await accounts_service.register_account("not-an-email")
    await accounts_service.register_account("b@example.com")
    with pytest.raises(ConflictError):
        await accounts_service.register_account("B@example.com")


async def test_zero_first_time_credits_writes_no_entry():
    await accounts_service.set_first_time_credits(0, "admin-1")
    account = await accounts_service.register_account("c@example.com")
    assert account.balance == 0
    assert await credits_service.get_history(account.id) == []


async def test_set_tier_keeps_balance(make_account):
    account = await make_account(balance=70)
    updated = await accounts_service.set_tier(account.id, Tier.ENTERPRISE, "admin-1")
    assert updated.tier == Tier.ENTERPRISE
    assert updated.balance == 70


async def test_get_account_unknown():
    from beanie import PydanticObjectId
    with pytest.raises(AccountNotFoundError):
        await accounts_service.get_account(PydanticObjectId())


async def test_failed_signup_bonus_is_queued_and_repaired(monkeypatch):
    from pymongo.errors import PyMongoError

    from app.models.reconciliation_issue import ReconciliationIssue
    from app.services import ledger_store
    from app.worker.cron import run_reconcile_balances

    async def broken_increment(*args, **kwargs):
        raise PyMongoError("primary stepped down")

    monkeypatch.setattr(ledger_store, "_increment", broken_increment)
    account = await accounts_service.register_account("d@example.com")
    monkeypatch.undo()

    assert account.balance == 0
    issue = await ReconciliationIssue.find_one(ReconciliationIssue.account_id == account.id)
    assert issue.kind == "missing_signup_bonus"
    assert issue.expected == 100
    assert not issue.resolved

    await run_reconcile_balances()
    assert await credits_service.get_balance(account.id) == 100
    issue = await ReconciliationIssue.get(issue.id)
    assert issue.resolved
    assert issue.resolved_by == "SYSTEM"

    assert await accounts_service.repair_signup_bonuses() == {"repaired": 0, "failed": 0}
    assert await credits_service.get_balance(account.id) == 100
