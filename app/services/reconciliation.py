"""Ledger reconciliation: uncharged operations and cached-balance drift."""

from datetime import datetime
from typing import Any

from beanie import PydanticObjectId

from app.core.audit import log_event
from app.core.exceptions import NotFoundError
from app.core.logging import get_logger
from app.core.pagination import paginate
from app.models.account import Account
from app.models.reconciliation_issue import ReconciliationIssue
from app.services import ledger_store

log = get_logger(__name__)

UNCHARGED_OPERATION = "uncharged_operation"
BALANCE_DRIFT = "balance_drift"
MISSING_SIGNUP_BONUS = "missing_signup_bonus"


async def record_uncharged_operation(
    account_id: PydanticObjectId,
    operation: str,
    owed: int,
    balance: int,
    details: dict[str, Any] | None = None,
) -> ReconciliationIssue:
    """An operation ran but its credits were never consumed; keep it for manual review."""
    issue = ReconciliationIssue(
        account_id=account_id,
        kind=UNCHARGED_OPERATION,
        operation=operation,
        expected=owed,
        observed=balance,
        details=details or {},
    )
    await issue.insert()
    return issue


async def record_missing_signup_bonus(account_id: PydanticObjectId, amount: int, error: str) -> ReconciliationIssue:
    issue = ReconciliationIssue(
        account_id=account_id,
        kind=MISSING_SIGNUP_BONUS,
        expected=amount,
        details={"error": error},
    )
    await issue.insert()
    return issue


async def open_issues_of_kind(kind: str, limit: int = 500) -> list[ReconciliationIssue]:
    return (
        await ReconciliationIssue.find(ReconciliationIssue.kind == kind, ReconciliationIssue.resolved == False)
        .sort("_id")
        .limit(limit)
        .to_list()
    )


async def close_issue(issue: ReconciliationIssue, resolved_by: str, note: str) -> ReconciliationIssue:
    issue.resolved = True
    issue.resolved_by = resolved_by
    issue.resolution_note = note
    issue.resolved_at = datetime.utcnow()
    await issue.save()
    return issue


async def check_account(account_id: PydanticObjectId) -> dict:
    """Replay the ledger and compare with the cached balance."""
    account = await Account.get(account_id)
    stored = account.balance if account else 0
    replayed = await ledger_store.replay_balance(account_id)
    return {
        "account_id": str(account_id),
        "stored_balance": stored,
        "replayed_balance": replayed,
        "drift": stored - replayed,
        "consistent": stored == replayed,
    }


async def reconcile_all(batch_size: int = 500) -> dict:
    """Check every account; one open drift issue per inconsistent account."""
    checked = 0
    drifted = 0
    last_id = None
    while True:
        query = Account.find() if last_id is None else Account.find(Account.id > last_id)
        accounts = await query.sort("_id").limit(batch_size).to_list()
        if not accounts:
            break
        for account in accounts:
            checked += 1
            result = await check_account(account.id)
            if result["consistent"]:
                continue
            drifted += 1
            open_issue = await ReconciliationIssue.find_one(
                ReconciliationIssue.account_id == account.id,
                ReconciliationIssue.kind == BALANCE_DRIFT,
                ReconciliationIssue.resolved == False,
            )
            if open_issue:
                continue
            await ReconciliationIssue(
                account_id=account.id,
                kind=BALANCE_DRIFT,
                expected=result["replayed_balance"],
                observed=result["stored_balance"],
                details={"drift": result["drift"]},
            ).insert()
            log.warning("balance_drift", **result)
        last_id = accounts[-1].id
    return {"checked": checked, "drifted": drifted}


async def list_issues(resolved: bool = False, limit: int = 50, offset: int = 0) -> list[ReconciliationIssue]:
    limit, offset = paginate(limit, offset)
    return (
        await ReconciliationIssue.find(ReconciliationIssue.resolved == resolved)
        .sort(-ReconciliationIssue.created_at, "-_id")
        .skip(offset)
        .limit(limit)
        .to_list()
    )


async def resolve_issue(issue_id: PydanticObjectId, admin_id: str, note: str) -> ReconciliationIssue:
    """Mark reviewed. Any balance correction is a separate adjust_credits call."""
    issue = await ReconciliationIssue.get(issue_id)
    if not issue:
        raise NotFoundError("Reconciliation issue not found")
    if issue.resolved:
        return issue
    await close_issue(issue, admin_id, note)
    await log_event(admin_id, "reconciliation_resolved", "reconciliation_issue", str(issue.id), {"note": note})
    return issue


def serialize_issue(issue: ReconciliationIssue) -> dict:
    return {
        "id": str(issue.id),
        "account_id": str(issue.account_id),
        "kind": issue.kind,
        "operation": issue.operation,
        "expected": issue.expected,
        "observed": issue.observed,
        "details": issue.details,
        "resolved": issue.resolved,
        "resolved_by": issue.resolved_by,
        "resolution_note": issue.resolution_note,
        "created_at": issue.created_at.isoformat(),
        "resolved_at": issue.resolved_at.isoformat() if issue.resolved_at else None,
    }
