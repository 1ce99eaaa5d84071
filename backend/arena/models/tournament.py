from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from arena.models.match import Match

TOURNAMENT_ACTIVE = "active"
TOURNAMENT_COMPLETED = "completed"
TOURNAMENT_CANCELLED = "cancelled"


class Tournament(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    status: str = Field(default=TOURNAMENT_ACTIVE)  # active | completed | cancelled
    starts_at: Optional[datetime] = None
    auto_confirm_minutes: Optional[int] = None  # Overrides AUTO_CONFIRM_MINUTES when set
    champion_id: Optional[int] = Field(default=None, foreign_key="participant.id")
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    # Relationships
    matches: List["Match"] = Relationship(back_populates="tournament")
