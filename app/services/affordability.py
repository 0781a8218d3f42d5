"""
Affordability guard for chargeable operations.

check() prices the operation for the account's tier and rejects it up front
when the balance cannot cover it; settle() charges only after the operation
has succeeded. A failed operation never reaches settle(), so it costs nothing.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from beanie import PydanticObjectId
from pymongo.errors import PyMongoError

from app.core.exceptions import (
    AccountNotFoundError,
    BadRequestError,
    InsufficientCreditsError,
    LedgerWriteError,
    ReconciliationGapError,
)
from app.core.logging import get_logger
from app.models.account import Account, Tier
from app.services import credits as credits_service
from app.services import reconciliation
from app.services.pricing import Operation, cost_of

log = get_logger(__name__)

T = TypeVar("T")

MAX_QUANTITY = 100


@dataclass(frozen=True)
class CreditQuote:
    account_id: PydanticObjectId
    operation: Operation
    tier: Tier
    quantity: int
    unit_cost: int
    cost: int
    exempt: bool

    @property
    def source(self) -> str:
        label = self.operation.value.replace("_", " ").title()
        if self.quantity > 1:
            return f"{label} x{self.quantity} ({self.tier.value} tier)"
        return f"{label} ({self.tier.value} tier)"


def quote(account: Account, operation: Operation, quantity: int = 1) -> CreditQuote:
    """Resolve the cost without touching the ledger."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or not 1 <= quantity <= MAX_QUANTITY:
        raise BadRequestError(f"quantity must be between 1 and {MAX_QUANTITY}", details={"quantity": quantity})
    unit_cost = 0 if account.credit_exempt else cost_of(operation, account.tier)
    return CreditQuote(
        account_id=account.id,
        operation=operation,
        tier=account.tier,
        quantity=quantity,
        unit_cost=unit_cost,
        cost=unit_cost * quantity,
        exempt=account.credit_exempt,
    )


async def check(account: Account, operation: Operation, quantity: int = 1) -> CreditQuote:
    """Raise InsufficientCreditsError (required/current/shortfall) if the account cannot pay."""
    q = quote(account, operation, quantity)
    if q.cost > 0 and not await credits_service.can_afford(account.id, q.cost):
        current = await credits_service.get_balance(account.id)
        log.info(
            "affordability_rejected",
            account_id=str(account.id),
            operation=operation.value,
            required=q.cost,
            current=current,
        )
        raise InsufficientCreditsError(required=q.cost, current=current)
    return q


async def settle(q: CreditQuote) -> dict:
    """
    Consume the quoted credits after the operation succeeded.
    Returns {consumed, remaining, tier}. If the charge fails (balance spent
    concurrently, ledger unavailable) the gap is recorded for manual
    reconciliation and ReconciliationGapError is raised; never retried here.
    """
    if q.cost == 0:
        remaining = await credits_service.get_balance(q.account_id)
        return {"consumed": 0, "remaining": remaining, "tier": q.tier.value}
    try:
        result = await credits_service.consume_credits(q.account_id, q.cost, q.source)
    except (InsufficientCreditsError, LedgerWriteError, AccountNotFoundError) as e:
        current = e.current if isinstance(e, InsufficientCreditsError) else await _safe_balance(q.account_id)
        issue_id = await _record_gap(q, current, e)
        raise ReconciliationGapError(issue_id, required=q.cost, current=current) from e
    return {"consumed": q.cost, "remaining": result.new_balance, "tier": q.tier.value}


async def run_guarded(
    account: Account,
    operation: Operation,
    fn: Callable[[], Awaitable[T]],
    quantity: int = 1,
) -> tuple[T, dict]:
    """check -> fn() -> settle. Exceptions from fn propagate and nothing is charged."""
    q = await check(account, operation, quantity)
    result = await fn()
    credit_info = await settle(q)
    return result, credit_info


async def _safe_balance(account_id: PydanticObjectId) -> int:
    try:
        return await credits_service.get_balance(account_id)
    except PyMongoError:
        return 0


async def _record_gap(q: CreditQuote, current: int, error: Exception) -> str | None:
    log.error(
        "reconciliation_gap",
        account_id=str(q.account_id),
        operation=q.operation.value,
        owed=q.cost,
        current=current,
        error=type(error).__name__,
    )
    try:
        issue = await reconciliation.record_uncharged_operation(
            q.account_id,
            q.operation.value,
            owed=q.cost,
            balance=current,
            details={"quantity": q.quantity, "tier": q.tier.value, "error": type(error).__name__},
        )
    except PyMongoError:
        log.exception("reconciliation_gap_unrecorded", account_id=str(q.account_id), operation=q.operation.value)
        return None
    return str(issue.id)
