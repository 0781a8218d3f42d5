"""Credit ledger verbs: add, consume, adjust, and read-side queries."""

from dataclasses import dataclass

from beanie import PydanticObjectId

from app.core.audit import log_event
from app.core.exceptions import BadRequestError, InsufficientCreditsError
from app.core.logging import get_logger
from app.models.credit_ledger import CreditLedgerEntry, LedgerKind
from app.services import ledger_store

log = get_logger(__name__)

ADDABLE_KINDS = (LedgerKind.PURCHASE, LedgerKind.BONUS, LedgerKind.ADJUSTMENT)


@dataclass
class LedgerResult:
    """Outcome of a successful mutation; failures surface as exceptions."""

    success: bool
    new_balance: int
    entry: CreditLedgerEntry | None = None
    duplicate: bool = False


def _require_positive(amount: int, field: str = "amount") -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise BadRequestError(f"{field} must be a positive integer", details={field: amount})


async def get_balance(account_id: PydanticObjectId) -> int:
    return await ledger_store.get_balance(account_id)


async def can_afford(account_id: PydanticObjectId, cost: int) -> bool:
    """Advisory only; consume_credits re-checks atomically."""
    return await ledger_store.get_balance(account_id) >= cost


async def add_credits(
    account_id: PydanticObjectId,
    amount: int,
    source: str,
    kind: LedgerKind = LedgerKind.PURCHASE,
    external_ref: str | None = None,
) -> LedgerResult:
    """
    Credit the account. With `external_ref`, a repeated call (retried webhook,
    double submit) returns the first entry and does not credit again.
    """
    _require_positive(amount)
    if kind not in ADDABLE_KINDS:
        raise BadRequestError(f"Invalid kind for add: {kind}")
    if external_ref:
        existing = await ledger_store.find_by_reference(account_id, external_ref)
        if existing:
            return await _duplicate_result(account_id, existing)
    try:
        entry, balance = await ledger_store.apply_delta(account_id, amount, kind, source, external_ref=external_ref)
    except ledger_store.DuplicateReferenceError:
        # Lost a race with a concurrent delivery of the same reference
        existing = await ledger_store.find_by_reference(account_id, external_ref)
        return await _duplicate_result(account_id, existing)
    log.info(
        "credits_added",
        account_id=str(account_id),
        amount=amount,
        kind=kind.value,
        source=source,
        external_ref=external_ref,
        balance=balance,
    )
    return LedgerResult(success=True, new_balance=balance, entry=entry)


async def _duplicate_result(account_id: PydanticObjectId, existing: CreditLedgerEntry | None) -> LedgerResult:
    balance = await ledger_store.get_balance(account_id)
    log.info(
        "credits_duplicate_ref",
        account_id=str(account_id),
        external_ref=existing.external_ref if existing else None,
        balance=balance,
    )
    return LedgerResult(success=True, new_balance=balance, entry=existing, duplicate=True)


async def consume_credits(account_id: PydanticObjectId, amount: int, source: str = "System") -> LedgerResult:
    """
    Debit `amount` as USAGE. The balance check and the decrement are one conditional
    update. Raises InsufficientCreditsError (carrying the current balance) without
    touching the ledger when the balance is short.
    """
    _require_positive(amount)
    try:
        entry, balance = await ledger_store.apply_delta(account_id, -amount, LedgerKind.USAGE, source, floor=0)
    except InsufficientCreditsError as e:
        log.info("credits_insufficient", account_id=str(account_id), required=amount, current=e.current)
        raise
    log.info("credits_consumed", account_id=str(account_id), amount=amount, source=source, balance=balance)
    return LedgerResult(success=True, new_balance=balance, entry=entry)


def adjustment_source(acting_admin_id: str, reason: str) -> str:
    return f"Manual adjustment by admin {acting_admin_id}: {reason}"


async def adjust_credits(
    account_id: PydanticObjectId,
    amount: int,
    reason: str,
    acting_admin_id: str,
) -> LedgerResult:
    """
    Admin correction by a signed amount. Adjustments are floored at zero like
    consumption: one that would leave a negative balance raises
    InsufficientCreditsError and writes nothing.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
        raise BadRequestError("amount must be a non-zero integer", details={"amount": amount})
    reason = (reason or "").strip()
    if not reason:
        raise BadRequestError("reason is required")
    if not acting_admin_id:
        raise BadRequestError("acting admin is required")
    entry, balance = await ledger_store.apply_delta(
        account_id,
        amount,
        LedgerKind.ADJUSTMENT,
        adjustment_source(acting_admin_id, reason),
        floor=0,
    )
    log.info(
        "credits_adjusted",
        account_id=str(account_id),
        amount=amount,
        admin_id=acting_admin_id,
        balance=balance,
    )
    await log_event(
        acting_admin_id,
        "credits_adjusted",
        "account",
        str(account_id),
        {"amount": amount, "reason": reason, "balance_after": balance, "entry_id": str(entry.id)},
    )
    return LedgerResult(success=True, new_balance=balance, entry=entry)


async def get_history(account_id: PydanticObjectId, limit: int = 50, offset: int = 0) -> list[CreditLedgerEntry]:
    return await ledger_store.history(account_id, limit, offset)


async def get_stats() -> dict:
    return await ledger_store.aggregate()


def serialize_entry(e: CreditLedgerEntry) -> dict:
    return {
        "id": str(e.id),
        "kind": e.kind.value,
        "amount": e.amount,
        "balance_after": e.balance_after,
        "source": e.source,
        "external_ref": e.external_ref,
        "created_at": e.created_at.isoformat(),
    }
