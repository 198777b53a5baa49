"""Identity of the signed-in user, as reported by the backend."""

from typing import Optional

from pydantic import BaseModel


class UserIdentity(BaseModel):
    id: str
    email: Optional[str] = None
