from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.deps import parse_object_id, require_admin
from app.models.account import Account, Tier
from app.services import accounts as accounts_service
from app.services import credits as credits_service
from app.services import reconciliation as reconciliation_service

router = APIRouter()


class AdjustCreditsRequest(BaseModel):
    account_id: str
    amount: int
    reason: str = Field(min_length=1)


class ExemptionRequest(BaseModel):
    credit_exempt: bool


class TierRequest(BaseModel):
    tier: Tier


class DefaultCreditsRequest(BaseModel):
    amount: int = Field(ge=0)


class ResolveIssueRequest(BaseModel):
    note: str = Field(min_length=1)


@router.post("/credits/adjust")
async def admin_adjust_credits(body: AdjustCreditsRequest, admin: Account = Depends(require_admin)):
    """Signed correction; rejected with 402 if it would leave a negative balance."""
    account_id = parse_object_id(body.account_id)
    result = await credits_service.adjust_credits(account_id, body.amount, body.reason, str(admin.id))
    return {
        "success": result.success,
        "new_balance": result.new_balance,
        "entry": credits_service.serialize_entry(result.entry),
    }


@router.get("/credits/stats")
async def admin_credit_stats(admin: Account = Depends(require_admin)):
    return await credits_service.get_stats()


@router.get("/accounts")
async def admin_list_accounts(
    admin: Account = Depends(require_admin),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    accounts = await accounts_service.list_accounts(limit, offset)
    return {"accounts": [accounts_service.serialize_account(a) for a in accounts], "limit": limit, "offset": offset}


@router.put("/accounts/{account_id}/exemption")
async def admin_set_exemption(account_id: str, body: ExemptionRequest, admin: Account = Depends(require_admin)):
    account = await accounts_service.set_credit_exempt(parse_object_id(account_id), body.credit_exempt, str(admin.id))
    return accounts_service.serialize_account(account)


@router.put("/accounts/{account_id}/tier")
async def admin_set_tier(account_id: str, body: TierRequest, admin: Account = Depends(require_admin)):
    account = await accounts_service.set_tier(parse_object_id(account_id), body.tier, str(admin.id))
    return accounts_service.serialize_account(account)


@router.get("/accounts/{account_id}/ledger")
async def admin_account_ledger(
    account_id: str,
    admin: Account = Depends(require_admin),
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    oid = parse_object_id(account_id)
    await accounts_service.get_account(oid)
    entries = await credits_service.get_history(oid, limit, offset)
    return {"entries": [credits_service.serialize_entry(e) for e in entries], "limit": limit, "offset": offset}


@router.get("/accounts/{account_id}/reconcile")
async def admin_reconcile_account(account_id: str, admin: Account = Depends(require_admin)):
    """Replay the ledger for one account and compare with the stored balance."""
    oid = parse_object_id(account_id)
    await accounts_service.get_account(oid)
    return await reconciliation_service.check_account(oid)


@router.get("/settings/default-credits")
async def admin_get_default_credits(admin: Account = Depends(require_admin)):
    return {"amount": await accounts_service.get_first_time_credits()}


@router.put("/settings/default-credits")
async def admin_set_default_credits(body: DefaultCreditsRequest, admin: Account = Depends(require_admin)):
    setting = await accounts_service.set_first_time_credits(body.amount, str(admin.id))
    return {"amount": int(setting.value), "updated_at": setting.updated_at.isoformat()}


@router.get("/reconciliation")
async def admin_reconciliation_issues(
    admin: Account = Depends(require_admin),
    resolved: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    issues = await reconciliation_service.list_issues(resolved, limit, offset)
    return {"issues": [reconciliation_service.serialize_issue(i) for i in issues], "limit": limit, "offset": offset}


@router.post("/reconciliation/{issue_id}/resolve")
async def admin_resolve_issue(issue_id: str, body: ResolveIssueRequest, admin: Account = Depends(require_admin)):
    issue = await reconciliation_service.resolve_issue(parse_object_id(issue_id), str(admin.id), body.note)
    return reconciliation_service.serialize_issue(issue)
