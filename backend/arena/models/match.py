from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import UniqueConstraint as SAUniqueConstraint
from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from arena.models.dispute import Dispute
    from arena.models.tournament import Tournament

# Lifecycle states
STATUS_SCHEDULED = "scheduled"
STATUS_AWAITING_ACTIVATION = "awaiting_activation"
STATUS_LIVE = "live"
STATUS_AWAITING_CONFIRMATION = "awaiting_confirmation"
STATUS_DISPUTED = "disputed"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"

PRE_LIVE_STATUSES = (STATUS_SCHEDULED, STATUS_AWAITING_ACTIVATION)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_CANCELLED)

# How a completed match got its winner
REASON_CONFIRMED = "confirmed"
REASON_AUTO_CONFIRMED = "auto_confirmed"
REASON_ADMIN_DECISION = "admin_decision"
REASON_FORFEIT = "forfeit"
REASON_LIVE_TIMEOUT = "live_timeout"  # Live match with no score reported in time


class Match(SQLModel, table=True):
    __table_args__ = (
        SAUniqueConstraint("tournament_id", "round_number", "match_order", name="uq_match_bracket_position"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tournament_id: int = Field(foreign_key="tournament.id", index=True)
    round_number: int
    match_order: int  # Position within round; pairs (1,2)->1, (3,4)->2 in the next round

    # Nullable until the bracket populates the slot (TBD)
    participant1_id: Optional[int] = Field(default=None, foreign_key="participant.id")
    participant2_id: Optional[int] = Field(default=None, foreign_key="participant.id")

    status: str = Field(default=STATUS_SCHEDULED, index=True)
    lock_version: int = Field(default=0)  # Optimistic concurrency guard, bumped on every engine write

    # Ready handshake
    participant1_ready: bool = Field(default=False)
    participant2_ready: bool = Field(default=False)
    participant1_active_confirmed: bool = Field(default=False)
    participant2_active_confirmed: bool = Field(default=False)

    # Score report (single writer, pending counterparty confirmation)
    reported_by: Optional[int] = Field(default=None)
    participant1_score: Optional[int] = Field(default=None)
    participant2_score: Optional[int] = Field(default=None)
    evidence_ref: Optional[str] = Field(default=None)  # Opaque pointer into external evidence storage
    provisional_winner_id: Optional[int] = Field(default=None)

    # Timing
    scheduled_at: Optional[datetime] = Field(default=None)
    ready_at: Optional[datetime] = Field(default=None)
    active_confirmed_at: Optional[datetime] = Field(default=None)
    live_at: Optional[datetime] = Field(default=None)
    reported_at: Optional[datetime] = Field(default=None)
    auto_confirm_at: Optional[datetime] = Field(default=None, index=True)
    confirm_warning_sent_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    cancelled_at: Optional[datetime] = Field(default=None)

    # Outcome (winner_id only ever set together with status=completed)
    winner_id: Optional[int] = Field(default=None)
    confirmed_by: Optional[int] = Field(default=None)  # None when the system finalized
    resolved_reason: Optional[str] = Field(default=None)  # confirmed | auto_confirmed | admin_decision | forfeit | live_timeout

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    # Relationships
    tournament: "Tournament" = Relationship(back_populates="matches")
    disputes: List["Dispute"] = Relationship(back_populates="match")

    def participant_ids(self) -> List[int]:
        return [pid for pid in (self.participant1_id, self.participant2_id) if pid is not None]

    def is_participant(self, user_id: Optional[int]) -> bool:
        return user_id is not None and user_id in self.participant_ids()

    def opponent_of(self, user_id: int) -> Optional[int]:
        if user_id == self.participant1_id:
            return self.participant2_id
        if user_id == self.participant2_id:
            return self.participant1_id
        return None
