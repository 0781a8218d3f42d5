from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.core.exceptions import BadRequestError
from app.deps import get_current_account
from app.models.account import Account
from app.services import affordability
from app.services import credits as credits_service
from app.services import ledger_store
from app.services.pricing import Operation, bulk_quote, cost_of, generations_remaining, get_pricing

router = APIRouter()


class AffordabilityRequest(BaseModel):
    cost: int | None = Field(default=None, gt=0)
    operation: Operation | None = None
    quantity: int = Field(default=1, ge=1, le=affordability.MAX_QUANTITY)


@router.get("/balance")
async def credits_balance(account: Account = Depends(get_current_account)):
    """Balance, tier pricing, and the last few ledger entries."""
    balance = await credits_service.get_balance(account.id)
    recent = await credits_service.get_history(account.id, limit=5)
    return {
        "balance": balance,
        "tier": account.tier.value,
        "credit_exempt": account.credit_exempt,
        "credits_per_generation": cost_of(Operation.CONTENT_GENERATION, account.tier),
        "generations_remaining": generations_remaining(balance, account.tier),
        "last_transactions": [credits_service.serialize_entry(e) for e in recent],
    }


@router.get("/ledger")
async def credits_ledger(
    account: Account = Depends(get_current_account),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for current account (newest first)."""
    entries = await credits_service.get_history(account.id, limit, offset)
    total = await ledger_store.count_entries(account.id)
    return {
        "entries": [credits_service.serialize_entry(e) for e in entries],
        "limit": limit,
        "offset": offset,
        "total": total,
    }


@router.get("/pricing")
async def credits_pricing(quantity: int = Query(1, ge=1, le=affordability.MAX_QUANTITY)):
    """Public price list; `quantity` adds a bulk quote per tier."""
    pricing = get_pricing()
    pricing["bulk_quotes"] = {
        tier: bulk_quote(info["credits_per_generation"], quantity) for tier, info in pricing["tiers"].items()
    }
    return pricing


@router.get("/cost-info")
async def credits_cost_info(account: Account = Depends(get_current_account)):
    q = affordability.quote(account, Operation.CONTENT_GENERATION)
    balance = await credits_service.get_balance(account.id)
    return {
        "tier": account.tier.value,
        "credits_per_generation": q.cost,
        "current_balance": balance,
        "can_afford": balance >= q.cost,
        "generations_remaining": generations_remaining(balance, account.tier),
    }


@router.post("/check-affordability")
async def credits_check_affordability(body: AffordabilityRequest, account: Account = Depends(get_current_account)):
    """Advisory check for a raw cost or a priced operation; never charges."""
    if body.operation is not None:
        cost = affordability.quote(account, body.operation, body.quantity).cost
    elif body.cost is not None:
        cost = body.cost
    else:
        raise BadRequestError("Provide cost or operation")
    balance = await credits_service.get_balance(account.id)
    can_afford = balance >= cost
    return {
        "can_afford": can_afford,
        "current_balance": balance,
        "cost": cost,
        "shortfall": 0 if can_afford else cost - balance,
    }
