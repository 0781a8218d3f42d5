from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field

DEFAULT_FIRST_TIME_CREDITS = "default_first_time_credits"


class GlobalSetting(Document):
    """Admin-editable key/value settings (e.g. first-time credit grant)."""
    key: Indexed(str, unique=True)
    value: str
    description: str = ""
    updated_by: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "global_settings"
