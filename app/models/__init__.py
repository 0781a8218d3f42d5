from app.models.account import Account, Tier
from app.models.credit_ledger import CreditLedgerEntry, LedgerKind
from app.models.audit_log import AuditLog
from app.models.failed_job import FailedJob
from app.models.global_setting import GlobalSetting
from app.models.reconciliation_issue import ReconciliationIssue

__all__ = [
    "Account",
    "Tier",
    "CreditLedgerEntry",
    "LedgerKind",
    "AuditLog",
    "FailedJob",
    "GlobalSetting",
    "ReconciliationIssue",
]
