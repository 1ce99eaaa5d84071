from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from arena.models.match import Match

DISPUTE_OPEN = "open"
DISPUTE_RESOLVED = "resolved"


class Dispute(SQLModel, table=True):
    """Arbitration case for a match in `disputed`. Resolving it is the only way out of that state."""

    id: Optional[int] = Field(default=None, primary_key=True)
    match_id: int = Field(foreign_key="match.id", index=True)
    raised_by: int
    reason: str
    evidence_ref: Optional[str] = Field(default=None)
    status: str = Field(default=DISPUTE_OPEN, index=True)  # open | resolved

    # Context for the admin: the report being disputed
    reported_by: Optional[int] = Field(default=None)
    participant1_score: Optional[int] = Field(default=None)
    participant2_score: Optional[int] = Field(default=None)

    resolution: Optional[str] = Field(default=None)
    resolved_by: Optional[int] = Field(default=None)
    resolved_winner_id: Optional[int] = Field(default=None)
    resolved_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    match: "Match" = Relationship(back_populates="disputes")
