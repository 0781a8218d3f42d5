from datetime import datetime
from enum import Enum

from beanie import Document, Indexed
from pydantic import Field


class Tier(str, Enum):
    LITE = "lite"
    PRO = "pro"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class Account(Document):
    """Billable identity. `balance` is written only by the ledger store."""
    email: Indexed(str, unique=True)
    name: str = ""
    role: str = "user"  # "user" | "admin"
    tier: Tier = Tier.LITE
    credit_exempt: bool = False
    balance: int = 0
    session_version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "accounts"
