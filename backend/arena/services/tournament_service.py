"""
Tournament completion callback, invoked when the final-round match completes.
"""
import logging

from sqlmodel import Session

from arena.config import get_settings
from arena.errors import NotFound
from arena.models.tournament import TOURNAMENT_COMPLETED, Tournament
from arena.services.match_store import get_lock_registry
from arena.services.notification_service import Notice, dispatch_notices
from arena.services.timer_service import get_timer_service

logger = logging.getLogger(__name__)


def complete_tournament(session: Session, tournament_id: int, champion_id: int) -> bool:
    """
    Mark the tournament completed with its champion.

    Returns True if this call completed it, False if it was already completed
    (idempotent; the stored champion is never overwritten).
    """
    with get_lock_registry().hold(("tournament", tournament_id), get_settings().lock_timeout_seconds):
        session.expire_all()
        tournament = session.get(Tournament, tournament_id)
        if not tournament:
            raise NotFound(f"Tournament {tournament_id} not found")
        if tournament.status == TOURNAMENT_COMPLETED:
            if tournament.champion_id != champion_id:
                logger.warning(
                    "Tournament %s already completed with champion %s; ignoring %s",
                    tournament_id, tournament.champion_id, champion_id,
                )
            return False

        tournament.status = TOURNAMENT_COMPLETED
        tournament.champion_id = champion_id
        tournament.completed_at = get_timer_service().now()
        session.add(tournament)
        session.commit()
        name = tournament.name

    logger.info("Tournament %s completed; champion %s", tournament_id, champion_id)
    dispatch_notices(session, [
        Notice(
            user_id=champion_id,
            message_type="tournament_won",
            title="Tournament Champion",
            body=f"Congratulations! You won {name}.",
        )
    ])
    return True
