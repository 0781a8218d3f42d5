from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from app.core.security import SESSION_MAX_AGE, create_session_cookie
from app.deps import SESSION_COOKIE_NAME, get_current_account
from app.models.account import Account, Tier
from app.services import accounts as accounts_service

router = APIRouter()


class RegisterRequest(BaseModel):
    email: str
    name: str = ""
    tier: Tier = Tier.LITE


def _set_session(response: Response, account: Account) -> None:
    session_value = create_session_cookie(
        {"account_id": str(account.id), "session_version": account.session_version}
    )
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=session_value,
        max_age=SESSION_MAX_AGE,
        httponly=True,
        secure=False,  # set True in prod with HTTPS
        samesite="lax",
        path="/",
    )


@router.post("/register")
async def auth_register(body: RegisterRequest, response: Response):
    """Create an account, grant first-time credits, and set the session cookie."""
    account = await accounts_service.register_account(body.email, body.name, body.tier)
    _set_session(response, account)
    return {"account": accounts_service.serialize_account(account)}


@router.get("/me")
async def auth_me(account: Account = Depends(get_current_account)):
    return accounts_service.serialize_account(account)


@router.post("/logout")
async def auth_logout(response: Response):
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return {"status": "ok"}
