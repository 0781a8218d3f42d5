"""Ledger discrepancies awaiting manual review."""

from datetime import datetime
from typing import Any

from beanie import Document, PydanticObjectId
from pydantic import Field


class ReconciliationIssue(Document):
    account_id: PydanticObjectId
    kind: str  # "uncharged_operation" | "balance_drift"
    operation: str | None = None
    expected: int = 0  # credits owed, or balance replayed from the log
    observed: int = 0  # balance at detection time
    details: dict[str, Any] = Field(default_factory=dict)
    resolved: bool = False
    resolved_by: str | None = None
    resolution_note: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    resolved_at: datetime | None = None

    class Settings:
        name = "reconciliation_issues"
        indexes = [
            [("resolved", 1), ("created_at", -1)],
            [("account_id", 1)],
        ]
