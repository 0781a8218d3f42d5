"""Gateway captures -> PURCHASE credits, idempotent by gateway transaction id."""

import json
import math
import uuid

from beanie import PydanticObjectId
from bson.errors import InvalidId

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ForbiddenError
from app.core.logging import get_logger
from app.core.security import verify_webhook_signature
from app.services import credits as credits_service
from app.services.pricing import usd_to_credits

log = get_logger(__name__)

CAPTURE_EVENTS = ("payment.captured", "payment.completed")


async def capture_payment(
    account_id: PydanticObjectId,
    usd_amount: float,
    gateway: str,
    transaction_id: str,
) -> dict:
    """Convert a confirmed USD payment to credits. Replays of the same transaction_id credit once."""
    settings = get_settings()
    if not math.isfinite(usd_amount) or usd_amount > settings.max_purchase_usd:
        raise BadRequestError(
            f"Purchase amount must be at most ${settings.max_purchase_usd:.2f}",
            details={"usd_amount": str(usd_amount)},
        )
    if usd_amount < settings.min_purchase_usd:
        raise BadRequestError(
            f"Minimum purchase is ${settings.min_purchase_usd:.2f}",
            details={"usd_amount": usd_amount},
        )
    transaction_id = (transaction_id or "").strip()
    if not transaction_id:
        raise BadRequestError("transaction_id required")
    credits = usd_to_credits(usd_amount)
    result = await credits_service.add_credits(account_id, credits, gateway, external_ref=transaction_id)
    if not result.duplicate:
        await log_event(
            str(account_id),
            "payment_captured",
            "payment",
            transaction_id,
            {"gateway": gateway, "usd_amount": usd_amount, "credits": credits},
        )
    return {
        "credits_added": 0 if result.duplicate else credits,
        "usd_amount": usd_amount,
        "new_balance": result.new_balance,
        "transaction_id": transaction_id,
        "duplicate": result.duplicate,
    }


async def handle_webhook(payload: bytes, signature: str) -> dict | None:
    """Verify HMAC and apply credits for capture events; other events are ignored."""
    settings = get_settings()
    if not settings.payment_webhook_secret:
        raise BadRequestError("Webhook secret not configured")
    if not verify_webhook_signature(payload, signature, settings.payment_webhook_secret):
        raise BadRequestError("Invalid webhook signature")
    try:
        data = json.loads(payload.decode())
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise BadRequestError("Malformed webhook body") from None
    if not isinstance(data, dict):
        raise BadRequestError("Malformed webhook body")
    event = data.get("event")
    if event not in CAPTURE_EVENTS:
        log.info("webhook_ignored", webhook_event=event)
        return None
    try:
        account_id = PydanticObjectId(str(data["account_id"]))
        usd_amount = float(data["usd_amount"])
    except (InvalidId, TypeError, KeyError, ValueError):
        raise BadRequestError("Webhook missing account_id or usd_amount") from None
    return await capture_payment(
        account_id,
        usd_amount,
        str(data.get("gateway") or "gateway"),
        str(data.get("transaction_id") or ""),
    )


async def complete_test_payment(account_id: PydanticObjectId, usd_amount: float, gateway: str = "TEST") -> dict:
    """Manual completion for development; disabled unless PAYMENTS_TEST_MODE is set."""
    if not get_settings().payments_test_mode:
        raise ForbiddenError("Test payments are disabled")
    return await capture_payment(account_id, usd_amount, gateway, f"TEST_{uuid.uuid4().hex}")
