"""
Dispute Resolver: administrator arbitration of disputed matches.

Resolution is one atomic versioned write under the match lock: the dispute is
closed and the match completed together, or neither happens. A second
resolution of the same dispute is rejected with AlreadyResolved.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlmodel import Session, select

from arena.errors import AlreadyResolved, InvalidState, InvalidWinner, NotFound
from arena.models.dispute import DISPUTE_OPEN, DISPUTE_RESOLVED, Dispute
from arena.models.match import REASON_ADMIN_DECISION, STATUS_DISPUTED, Match
from arena.models.participant import Participant
from arena.services.match_state_machine import (
    after_completion,
    cancel_timers,
    complete_match,
    completion_notices,
)
from arena.services.match_store import run_match_action
from arena.services.notification_service import Notice
from arena.services.timer_service import get_timer_service

logger = logging.getLogger(__name__)


@dataclass
class DisputeSummary:
    """What an administrator needs to rule on a dispute."""

    dispute_id: int
    match_id: int
    tournament_id: int
    round_number: int
    raised_by: int
    reason: str
    evidence_ref: Optional[str]
    reported_by: Optional[int]
    participant1_id: Optional[int]
    participant2_id: Optional[int]
    participant1_name: Optional[str]
    participant2_name: Optional[str]
    participant1_score: Optional[int]
    participant2_score: Optional[int]
    created_at: datetime


def list_open_disputes(session: Session) -> List[DisputeSummary]:
    """Open disputes, oldest first."""
    disputes = session.exec(
        select(Dispute).where(Dispute.status == DISPUTE_OPEN).order_by(Dispute.created_at, Dispute.id)
    ).all()
    names: Dict[int, str] = {}

    def name_of(user_id: Optional[int]) -> Optional[str]:
        if user_id is None:
            return None
        if user_id not in names:
            participant = session.get(Participant, user_id)
            names[user_id] = participant.display_name if participant else f"User {user_id}"
        return names[user_id]

    summaries = []
    for dispute in disputes:
        match = session.get(Match, dispute.match_id)
        summaries.append(DisputeSummary(
            dispute_id=dispute.id,
            match_id=dispute.match_id,
            tournament_id=match.tournament_id,
            round_number=match.round_number,
            raised_by=dispute.raised_by,
            reason=dispute.reason,
            evidence_ref=dispute.evidence_ref,
            reported_by=dispute.reported_by,
            participant1_id=match.participant1_id,
            participant2_id=match.participant2_id,
            participant1_name=name_of(match.participant1_id),
            participant2_name=name_of(match.participant2_id),
            participant1_score=dispute.participant1_score,
            participant2_score=dispute.participant2_score,
            created_at=dispute.created_at,
        ))
    return summaries


def resolve_dispute(
    session: Session,
    dispute_id: int,
    admin_id: int,
    resolution: str,
    winner_id: int,
) -> Dispute:
    """
    Close an open dispute and complete its match with the admin's winner.

    Raises:
      - NotFound if the dispute doesn't exist
      - AlreadyResolved if it is not open
      - InvalidWinner if winner_id is not one of the match participants
      - InvalidState if the match is no longer disputed
    """
    dispute = session.get(Dispute, dispute_id)
    if not dispute:
        raise NotFound(f"Dispute {dispute_id} not found")
    match_id = dispute.match_id
    notices: List[Notice] = []

    def action(match: Match) -> Dispute:
        # Re-read under the lock: a concurrent resolution may have closed it
        current = session.exec(
            select(Dispute).where(Dispute.id == dispute_id).execution_options(populate_existing=True)
        ).one()
        if current.status != DISPUTE_OPEN:
            raise AlreadyResolved(f"Dispute {dispute_id} was already resolved")
        if not match.is_participant(winner_id):
            raise InvalidWinner(f"Winner {winner_id} is not a participant of match {match.id}")
        if match.status != STATUS_DISPUTED:
            raise InvalidState(f"Match {match.id} is not disputed (match is {match.status})")

        now = get_timer_service().now()
        complete_match(match, winner_id, REASON_ADMIN_DECISION, admin_id, now)
        current.status = DISPUTE_RESOLVED
        current.resolution = (resolution or "").strip() or None
        current.resolved_by = admin_id
        current.resolved_winner_id = winner_id
        current.resolved_at = now
        session.add(current)

        body = "An administrator resolved the dispute on your match."
        if current.resolution:
            body = f"{body} Resolution: {current.resolution}"
        notices.extend(completion_notices(match, body))
        logger.info("Dispute %s resolved by admin %s; match %s winner %s", dispute_id, admin_id, match.id, winner_id)
        return current

    resolved = run_match_action(session, match_id, action)
    cancel_timers(match_id)
    after_completion(session, match_id, winner_id, notices)
    session.refresh(resolved)
    return resolved
