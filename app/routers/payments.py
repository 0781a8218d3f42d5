from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from app.deps import get_current_account
from app.models.account import Account
from app.services import payments as payments_service

router = APIRouter()


class SimulatedPaymentRequest(BaseModel):
    usd_amount: float = Field(default=5.00, gt=0, allow_inf_nan=False)
    gateway: str = "TEST"


@router.post("/capture")
async def payment_capture(request: Request, x_signature: str = Header(..., alias="X-Signature")):
    """Gateway callback: payment captured -> apply credits (idempotent per transaction_id)."""
    body = await request.body()
    result = await payments_service.handle_webhook(body, x_signature)
    return {"status": "ok", "result": result}


@router.post("/test-complete")
async def payment_test_complete(body: SimulatedPaymentRequest, account: Account = Depends(get_current_account)):
    """Simulate a successful payment (PAYMENTS_TEST_MODE only)."""
    return await payments_service.complete_test_payment(account.id, body.usd_amount, body.gateway)
