from datetime import datetime
from enum import Enum

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field


class LedgerKind(str, Enum):
    PURCHASE = "PURCHASE"
    BONUS = "BONUS"
    ADJUSTMENT = "ADJUSTMENT"
    USAGE = "USAGE"


class CreditLedgerEntry(Document):
    """Append-only. Without transactions balance_after is filled in right after the insert."""
    account_id: PydanticObjectId
    kind: LedgerKind
    amount: int  # positive = credit, negative = debit
    balance_after: int
    source: str  # gateway name, feature name, "Manual adjustment by admin N: reason"
    external_ref: str | None = None  # gateway transaction id
    dedupe_key: Indexed(str, unique=True)  # "<account_id>:<external_ref>" or random
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_ledger"
        indexes = [
            [("account_id", 1), ("created_at", -1)],
            [("kind", 1)],
        ]
