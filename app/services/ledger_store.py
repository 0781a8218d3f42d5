"""
Durable credit balances and the append-only ledger.

Every balance change goes through apply_delta: one conditional $inc on the
account document plus one ledger insert, inside a MongoDB transaction. With
transactions disabled the insert comes first and claims the dedupe key.
"""

import secrets
from datetime import datetime

from beanie import PydanticObjectId
from beanie.odm.operators.update.general import Inc, Set
from beanie.odm.queries.update import UpdateResponse
from pymongo.errors import DuplicateKeyError, PyMongoError

from app.core.exceptions import AccountNotFoundError, InsufficientCreditsError, LedgerWriteError
from app.core.logging import get_logger
from app.core.pagination import paginate
from app.db.init import transaction
from app.models.account import Account
from app.models.credit_ledger import CreditLedgerEntry, LedgerKind

log = get_logger(__name__)

CREDIT_KINDS = (LedgerKind.PURCHASE, LedgerKind.BONUS)
TRANSIENT_RETRIES = 3


class DuplicateReferenceError(Exception):
    """external_ref already recorded for this account; nothing was applied."""

    def __init__(self, dedupe_key: str):
        self.dedupe_key = dedupe_key
        super().__init__(dedupe_key)


def dedupe_key_for(account_id: PydanticObjectId, external_ref: str | None) -> str:
    if external_ref:
        return f"{account_id}:{external_ref}"
    return f"{account_id}:local:{secrets.token_hex(12)}"


async def get_balance(account_id: PydanticObjectId) -> int:
    """Return current balance (0 for unknown accounts)."""
    account = await Account.find_one(Account.id == account_id)
    return account.balance if account else 0


async def find_by_reference(account_id: PydanticObjectId, external_ref: str) -> CreditLedgerEntry | None:
    return await CreditLedgerEntry.find_one(
        CreditLedgerEntry.dedupe_key == dedupe_key_for(account_id, external_ref)
    )


async def _increment(
    account_id: PydanticObjectId,
    delta: int,
    floor: int | None,
    session,
) -> Account | None:
    """Apply $inc only if the result stays >= floor; None when no document matched."""
    if floor is None:
        query = Account.find_one(Account.id == account_id, session=session)
    else:
        query = Account.find_one(
            Account.id == account_id,
            Account.balance >= floor - delta,
            session=session,
        )
    return await query.update(
        Inc({Account.balance: delta}),
        Set({Account.updated_at: datetime.utcnow()}),
        session=session,
        response_type=UpdateResponse.NEW_DOCUMENT,
    )


async def _raise_rejected(account_id: PydanticObjectId, delta: int, floor: int | None, session) -> None:
    current = await Account.find_one(Account.id == account_id, session=session)
    if current is None or floor is None:
        raise AccountNotFoundError(account_id)
    raise InsufficientCreditsError(required=floor - delta, current=current.balance)


async def _withdraw(entry: CreditLedgerEntry, reason: str) -> None:
    """Remove a claimed entry whose balance change never happened (only used without transactions)."""
    try:
        await entry.delete()
    except PyMongoError:
        # Entry stays without its balance change; reconcile_all reports the drift
        log.exception(
            "ledger_withdraw_failed",
            entry_id=str(entry.id),
            account_id=str(entry.account_id),
            reason=reason,
        )
        return
    log.warning("ledger_compensated", account_id=str(entry.account_id), delta=entry.amount, reason=reason)


async def apply_delta(
    account_id: PydanticObjectId,
    delta: int,
    kind: LedgerKind,
    source: str,
    external_ref: str | None = None,
    floor: int | None = None,
) -> tuple[CreditLedgerEntry, int]:
    """
    Atomically change the balance by `delta` and append the matching ledger entry.
    Returns (entry, balance_after).

    With `floor` set, the increment only happens when balance + delta >= floor; the
    check and the write are the same conditional update, so concurrent callers cannot
    both pass on a stale read.
    Raises AccountNotFoundError, InsufficientCreditsError, DuplicateReferenceError or
    LedgerWriteError; in every case neither the balance nor the log was changed.
    """
    dedupe_key = dedupe_key_for(account_id, external_ref)
    attempt = 0
    while True:
        attempt += 1
        try:
            return await _apply_once(account_id, delta, kind, source, external_ref, dedupe_key, floor)
        except DuplicateKeyError as e:
            raise DuplicateReferenceError(dedupe_key) from e
        except PyMongoError as e:
            # Write conflicts between concurrent transactions abort cleanly; run again
            if e.has_error_label("TransientTransactionError") and attempt < TRANSIENT_RETRIES:
                log.info("ledger_transaction_retry", account_id=str(account_id), attempt=attempt)
                continue
            log.exception("ledger_write_failed", account_id=str(account_id), delta=delta, kind=kind.value)
            raise LedgerWriteError() from e


async def _apply_once(
    account_id: PydanticObjectId,
    delta: int,
    kind: LedgerKind,
    source: str,
    external_ref: str | None,
    dedupe_key: str,
    floor: int | None,
) -> tuple[CreditLedgerEntry, int]:
    entry = CreditLedgerEntry(
        account_id=account_id,
        kind=kind,
        amount=delta,
        balance_after=0,
        source=source,
        external_ref=external_ref,
        dedupe_key=dedupe_key,
    )
    async with transaction() as session:
        if session is None:
            return await _apply_claimed(entry, floor)
        account = await _increment(account_id, delta, floor, session)
        if account is None:
            await _raise_rejected(account_id, delta, floor, session)
        entry.balance_after = account.balance
        await entry.insert(session=session)
    return entry, account.balance


async def _apply_claimed(entry: CreditLedgerEntry, floor: int | None) -> tuple[CreditLedgerEntry, int]:
    """
    Without transactions the entry is inserted first, so the unique dedupe_key is
    claimed before the balance moves: a duplicate reference fails on insert and
    never touches the balance. If the increment is then refused or fails, the
    entry is withdrawn; the balance is never reversed after the fact.
    """
    await entry.insert()
    try:
        account = await _increment(entry.account_id, entry.amount, floor, None)
    except PyMongoError as e:
        await _withdraw(entry, type(e).__name__)
        raise
    if account is None:
        await _withdraw(entry, "rejected")
        await _raise_rejected(entry.account_id, entry.amount, floor, None)
    entry.balance_after = account.balance
    try:
        await CreditLedgerEntry.find_one(CreditLedgerEntry.id == entry.id).update(
            Set({CreditLedgerEntry.balance_after: account.balance})
        )
    except PyMongoError:
        # Amount and balance are both applied; only the snapshot column is stale
        log.warning("ledger_balance_after_unset", entry_id=str(entry.id), balance=account.balance)
    return entry, account.balance


async def history(account_id: PydanticObjectId, limit: int = 50, offset: int = 0) -> list[CreditLedgerEntry]:
    """Ledger entries for account, newest first."""
    limit, offset = paginate(limit, offset)
    return (
        await CreditLedgerEntry.find(CreditLedgerEntry.account_id == account_id)
        .sort(-CreditLedgerEntry.created_at, "-_id")
        .skip(offset)
        .limit(limit)
        .to_list()
    )


async def count_entries(account_id: PydanticObjectId) -> int:
    return await CreditLedgerEntry.find(CreditLedgerEntry.account_id == account_id).count()


async def replay_balance(account_id: PydanticObjectId) -> int:
    """Sum of every logged amount; equals the stored balance when the ledger is consistent."""
    total = await CreditLedgerEntry.find(CreditLedgerEntry.account_id == account_id).sum(
        CreditLedgerEntry.amount
    )
    return int(total or 0)


async def aggregate() -> dict:
    """Admin rollup over the whole ledger."""
    rows = await CreditLedgerEntry.aggregate(
        [{"$group": {"_id": "$kind", "total": {"$sum": "$amount"}, "count": {"$sum": 1}}}]
    ).to_list()
    by_kind = {kind.value: {"total": 0, "count": 0} for kind in LedgerKind}
    for row in rows:
        by_kind[row["_id"]] = {"total": int(row["total"]), "count": int(row["count"])}
    positive_adjustments = await CreditLedgerEntry.find(
        CreditLedgerEntry.kind == LedgerKind.ADJUSTMENT,
        CreditLedgerEntry.amount > 0,
    ).sum(CreditLedgerEntry.amount)
    accounts = await CreditLedgerEntry.distinct("account_id")
    return {
        "total_issued": sum(by_kind[k.value]["total"] for k in CREDIT_KINDS) + int(positive_adjustments or 0),
        "total_consumed": abs(by_kind[LedgerKind.USAGE.value]["total"]),
        "distinct_accounts": len(accounts),
        "total_entries": sum(v["count"] for v in by_kind.values()),
        "by_kind": by_kind,
    }
