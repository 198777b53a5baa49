"""Conversation summary — one row of the inbox."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator

from campus_sync.models.record import Record, naive_utc


class Conversation(BaseModel):
    """The latest message exchanged with one counterpart, plus unread state."""

    user_id: str                            # The other participant
    last_message: Optional[Record] = None
    last_activity: datetime
    unread_count: int = 0
    profile: Optional[dict] = None
    archived: bool = False
    archived_at: Optional[datetime] = None
    archived_only: bool = False             # Hidden conversation with no visible messages

    @field_validator("last_activity", "archived_at")
    @classmethod
    def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(value) if value is not None else None

    @property
    def display_name(self) -> str:
        if self.profile:
            return self.profile.get("full_name") or self.profile.get("email") or "User"
        return "User"

    @property
    def preview(self) -> str:
        if self.last_message is None:
            return "Archived conversation"
        return str(self.last_message.get("content") or "")
