"""Notification log model: one row per message dispatched to a participant."""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class NotificationLog(SQLModel, table=True):
    """In-app inbox entry, plus a second row per SMS attempt."""

    __tablename__ = "notification_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    match_id: Optional[int] = Field(default=None, index=True)
    message_type: str  # opponent_ready|both_ready|opponent_active|match_live|opponent_not_ready|score_reported|confirm_reminder|match_completed|dispute_opened|match_cancelled|next_match_ready|tournament_won|forfeit|no_contest
    title: str
    body: str
    channel: str = Field(default="in_app")  # in_app|sms
    status: str = Field(default="delivered")  # delivered|queued|sent|dry_run|failed
    error_message: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)
