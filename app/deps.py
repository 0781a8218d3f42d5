"""Shared FastAPI dependencies."""

from beanie import PydanticObjectId
from bson.errors import InvalidId
from fastapi import Depends, Query, Request

from app.core.exceptions import BadRequestError, ForbiddenError, ReconciliationGapError, UnauthorizedError
from app.core.logging import bind_account_id
from app.core.security import load_session_cookie
from app.models.account import Account
from app.services import affordability
from app.services.affordability import CreditQuote
from app.services.pricing import FEATURE_OPERATIONS, Operation, parse_operation

SESSION_COOKIE_NAME = "creditledger_session"


def parse_object_id(value: str) -> PydanticObjectId:
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError):
        raise BadRequestError("Invalid id", details={"id": value}) from None


async def get_current_account(request: Request) -> Account:
    """Dependency: load session from cookie and return Account."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    account_id = payload.get("account_id")
    if not account_id:
        raise UnauthorizedError("Invalid session")
    account = await Account.get(account_id)
    if not account:
        raise UnauthorizedError("Account not found")
    if payload.get("session_version") != account.session_version:
        raise UnauthorizedError("Session invalidated")
    bind_account_id(str(account.id))
    return account


async def require_admin(account: Account = Depends(get_current_account)) -> Account:
    """Dependency: require current account to have role admin."""
    if account.role != "admin":
        raise ForbiddenError("Admin only")
    return account


class CreditCharge:
    """Handed to a guarded route; call settle() once the work succeeded."""

    def __init__(self, quote: CreditQuote):
        self.quote = quote

    async def settle(self) -> dict:
        """Credit info for the response. A failed charge becomes a warning, not an error."""
        try:
            return await affordability.settle(self.quote)
        except ReconciliationGapError as e:
            return {
                "consumed": 0,
                "remaining": e.details["current"],
                "tier": self.quote.tier.value,
                "status": "reconciliation_pending",
                "warning": e.message,
                "issue_id": e.issue_id,
            }


def require_credits(operation: Operation):
    """Dependency factory: reject with 402 before the route runs if the account cannot pay."""

    async def dependency(
        account: Account = Depends(get_current_account),
        quantity: int = Query(1, ge=1, le=affordability.MAX_QUANTITY),
    ) -> CreditCharge:
        return CreditCharge(await affordability.check(account, operation, quantity))

    return dependency


async def require_feature_credits(
    feature: str,
    account: Account = Depends(get_current_account),
    quantity: int = Query(1, ge=1, le=affordability.MAX_QUANTITY),
) -> CreditCharge:
    operation = parse_operation(feature)
    if operation not in FEATURE_OPERATIONS:
        raise BadRequestError(f"Not a feature: {feature}")
    return CreditCharge(await affordability.check(account, operation, quantity))
