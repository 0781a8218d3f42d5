"""Cron: ledger reconciliation."""

from app.core.logging import get_logger
from app.services.accounts import repair_signup_bonuses
from app.services.reconciliation import reconcile_all

log = get_logger(__name__)


async def run_reconcile_balances() -> dict:
    """
    Grant signup bonuses that failed at registration, then compare each cached
    balance with its replayed ledger; drift becomes a ReconciliationIssue.
    """
    bonuses = await repair_signup_bonuses()
    if bonuses["repaired"] or bonuses["failed"]:
        log.info("signup_bonuses_repaired", **bonuses)
    result = await reconcile_all()
    log.info("reconcile_balances", **result)
    return result
