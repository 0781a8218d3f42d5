"""Account registration, first-time credit grant, admin account controls."""

from datetime import datetime

from beanie import PydanticObjectId
from beanie.odm.operators.update.general import Set
from beanie.odm.queries.update import UpdateResponse
from pymongo.errors import DuplicateKeyError, PyMongoError

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import AccountNotFoundError, BadRequestError, ConflictError, LedgerWriteError
from app.core.logging import get_logger
from app.core.pagination import paginate
from app.models.account import Account, Tier
from app.models.credit_ledger import LedgerKind
from app.models.global_setting import DEFAULT_FIRST_TIME_CREDITS, GlobalSetting
from app.services import credits as credits_service
from app.services import reconciliation

log = get_logger(__name__)

SIGNUP_BONUS_REF = "signup_bonus"


async def get_account(account_id: PydanticObjectId) -> Account:
    account = await Account.get(account_id)
    if not account:
        raise AccountNotFoundError(account_id)
    return account


async def get_first_time_credits() -> int:
    """Admin setting if present, else SIGNUP_BONUS_CREDITS."""
    setting = await GlobalSetting.find_one(GlobalSetting.key == DEFAULT_FIRST_TIME_CREDITS)
    if setting:
        try:
            return max(0, int(setting.value))
        except ValueError:
            log.warning("invalid_setting", key=DEFAULT_FIRST_TIME_CREDITS, value=setting.value)
    return get_settings().signup_bonus_credits


async def set_first_time_credits(amount: int, admin_id: str) -> GlobalSetting:
    if amount < 0:
        raise BadRequestError("Amount must be a non-negative number")
    setting = await GlobalSetting.find_one(GlobalSetting.key == DEFAULT_FIRST_TIME_CREDITS)
    if setting is None:
        setting = GlobalSetting(
            key=DEFAULT_FIRST_TIME_CREDITS,
            value=str(amount),
            description="Credits granted to new accounts on registration",
            updated_by=admin_id,
        )
        await setting.insert()
    else:
        setting.value = str(amount)
        setting.updated_by = admin_id
        setting.updated_at = datetime.utcnow()
        await setting.save()
    await log_event(admin_id, "setting_updated", "global_setting", DEFAULT_FIRST_TIME_CREDITS, {"value": amount})
    return setting


async def grant_signup_bonus(account: Account) -> int:
    """Idempotent: the bonus is keyed by a fixed external ref per account."""
    amount = await get_first_time_credits()
    if amount <= 0:
        return 0
    result = await credits_service.add_credits(
        account.id,
        amount,
        "SYSTEM",
        kind=LedgerKind.BONUS,
        external_ref=SIGNUP_BONUS_REF,
    )
    return 0 if result.duplicate else amount


async def register_account(email: str, name: str = "", tier: Tier = Tier.LITE) -> Account:
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise BadRequestError("Valid email required")
    role = "admin" if email in get_settings().admin_emails else "user"
    account = Account(email=email, name=name.strip(), role=role, tier=tier)
    try:
        await account.insert()
    except DuplicateKeyError:
        raise ConflictError("Account already exists", details={"email": email}) from None
    try:
        granted = await grant_signup_bonus(account)
    except LedgerWriteError as e:
        # Account exists; a retry would only hit 409, so queue the grant for repair
        granted = 0
        await _record_missing_bonus(account, e)
    log.info("account_created", account_id=str(account.id), tier=tier.value, bonus=granted)
    await log_event(str(account.id), "account_created", "account", str(account.id), {"email": email, "bonus": granted})
    return await get_account(account.id)


async def _record_missing_bonus(account: Account, error: Exception) -> None:
    amount = await get_first_time_credits()
    log.error("signup_bonus_failed", account_id=str(account.id), amount=amount, error=type(error).__name__)
    try:
        await reconciliation.record_missing_signup_bonus(account.id, amount, type(error).__name__)
    except PyMongoError:
        log.exception("signup_bonus_unrecorded", account_id=str(account.id))


async def repair_signup_bonuses() -> dict:
    """Re-run the idempotent grant for every account whose bonus failed at registration."""
    repaired = 0
    failed = 0
    for issue in await reconciliation.open_issues_of_kind(reconciliation.MISSING_SIGNUP_BONUS):
        account = await Account.get(issue.account_id)
        if account is None:
            await reconciliation.close_issue(issue, "SYSTEM", "account no longer exists")
            continue
        try:
            granted = await grant_signup_bonus(account)
        except LedgerWriteError:
            failed += 1
            continue
        await reconciliation.close_issue(issue, "SYSTEM", f"signup bonus granted ({granted})")
        repaired += 1
    return {"repaired": repaired, "failed": failed}


async def _set_fields(account_id: PydanticObjectId, fields: dict) -> Account:
    """Targeted $set; never a full save, which could overwrite a concurrent balance change."""
    fields[Account.updated_at] = datetime.utcnow()
    account = await Account.find_one(Account.id == account_id).update(
        Set(fields),
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if account is None:
        raise AccountNotFoundError(account_id)
    return account


async def set_credit_exempt(account_id: PydanticObjectId, exempt: bool, admin_id: str) -> Account:
    account = await _set_fields(account_id, {Account.credit_exempt: exempt})
    log.info("credit_exemption_changed", account_id=str(account_id), exempt=exempt, admin_id=admin_id)
    await log_event(admin_id, "credit_exemption_changed", "account", str(account_id), {"credit_exempt": exempt})
    return account


async def set_tier(account_id: PydanticObjectId, tier: Tier, admin_id: str) -> Account:
    previous = (await get_account(account_id)).tier
    account = await _set_fields(account_id, {Account.tier: tier})
    log.info("tier_changed", account_id=str(account_id), tier=tier.value, admin_id=admin_id)
    await log_event(admin_id, "tier_changed", "account", str(account_id), {"from": previous.value, "to": tier.value})
    return account


async def list_accounts(limit: int = 50, offset: int = 0) -> list[Account]:
    limit, offset = paginate(limit, offset)
    return await Account.find().sort("-_id").skip(offset).limit(limit).to_list()


def serialize_account(account: Account) -> dict:
    return {
        "id": str(account.id),
        "email": account.email,
        "name": account.name,
        "role": account.role,
        "tier": account.tier.value,
        "credit_exempt": account.credit_exempt,
        "balance": account.balance,
        "created_at": account.created_at.isoformat(),
    }
