from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class Participant(SQLModel, table=True):
    """Projection of an identity-provider user. `id` is the user id every command is authorized against."""

    id: Optional[int] = Field(default=None, primary_key=True)
    display_name: str
    phone: Optional[str] = Field(default=None)  # Any common format; normalized to E.164 before texting
    created_at: datetime = Field(default_factory=datetime.utcnow)
