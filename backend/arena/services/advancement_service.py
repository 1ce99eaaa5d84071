"""
Bracket Advancement: when a match completes, move its winner into the next round.

Single elimination only. Match (round r, order k) feeds (round r+1, order ceil(k/2));
the next-round match is created on first use and filled first-come (participant1
then participant2). A round of one match is the final; its winner completes the
tournament instead.
"""
import logging
import math
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from arena.config import get_settings
from arena.errors import InvalidWinner, NotFound
from arena.models.match import PRE_LIVE_STATUSES, STATUS_COMPLETED, STATUS_SCHEDULED, Match
from arena.models.tournament import TOURNAMENT_COMPLETED, Tournament
from arena.services.match_store import get_lock_registry, run_match_action
from arena.services.notification_service import Notice, dispatch_notices
from arena.services.timer_service import get_timer_service
from arena.services.tournament_service import complete_tournament

logger = logging.getLogger(__name__)

ADVANCED = "advanced"
ALREADY_APPLIED = "already_applied"
SLOT_FULL = "slot_full"
TARGET_CLOSED = "target_closed"
TOURNAMENT_COMPLETED_ACTION = "tournament_completed"
SKIPPED = "skipped"


def next_position(round_number: int, match_order: int) -> Tuple[int, int]:
    """(round, order) of the match the winner of (round_number, match_order) plays next."""
    return round_number + 1, math.ceil(match_order / 2)


def expected_round_size(first_round_size: int, round_number: int) -> int:
    """Matches in a round of a bracket whose first round has first_round_size matches."""
    size = first_round_size
    for _ in range(1, round_number):
        size = math.ceil(size / 2)
    return size


def is_final_round(session: Session, tournament_id: int, round_number: int) -> bool:
    first_round_size = session.exec(
        select(func.count(Match.id)).where(Match.tournament_id == tournament_id, Match.round_number == 1)
    ).one()
    if not first_round_size:
        # No first round on record; fall back to what this round holds
        current = session.exec(
            select(func.count(Match.id)).where(
                Match.tournament_id == tournament_id, Match.round_number == round_number
            )
        ).one()
        return current <= 1
    return expected_round_size(first_round_size, round_number) <= 1


def _find_match(session: Session, tournament_id: int, round_number: int, match_order: int) -> Optional[Match]:
    return session.exec(
        select(Match).where(
            Match.tournament_id == tournament_id,
            Match.round_number == round_number,
            Match.match_order == match_order,
        )
    ).first()


def _get_or_create_next_match(session: Session, tournament_id: int, round_number: int, match_order: int) -> int:
    """Id of the bracket match at (round_number, match_order), creating it in `scheduled` if absent."""
    slot_key = ("slot", tournament_id, round_number, match_order)
    with get_lock_registry().hold(slot_key, get_settings().lock_timeout_seconds):
        existing = _find_match(session, tournament_id, round_number, match_order)
        if existing:
            return existing.id

        target = Match(
            tournament_id=tournament_id,
            round_number=round_number,
            match_order=match_order,
            status=STATUS_SCHEDULED,
        )
        session.add(target)
        try:
            session.commit()
        except IntegrityError:
            # Another process created it first; the unique bracket position wins
            session.rollback()
            existing = _find_match(session, tournament_id, round_number, match_order)
            if existing is None:
                raise
            return existing.id
        logger.info("Created match %s for round %s order %s", target.id, round_number, match_order)
        return target.id


def on_match_completed(session: Session, match_id: int, winner_id: int) -> Dict:
    """
    Advance the winner of a completed match.

    Returns:
        Dict with:
        - match_id, winner_id
        - action: advanced | already_applied | slot_full | target_closed |
          tournament_completed | skipped
        - next_match_id: the next-round match written to (None for the final)

    Guarantees:
        - Idempotent: a repeat call leaves the next-round match unchanged
        - Only the next-round match (or the tournament) is written
    """
    session.expire_all()
    match = session.get(Match, match_id)
    if not match:
        raise NotFound(f"Match {match_id} not found")
    result = {"match_id": match_id, "winner_id": winner_id, "action": SKIPPED, "next_match_id": None}

    if match.status != STATUS_COMPLETED or match.winner_id is None:
        logger.warning("Match %s is not completed; nothing to advance", match_id)
        return result
    if match.winner_id != winner_id:
        raise InvalidWinner(f"Match {match_id} was won by {match.winner_id}, not {winner_id}")

    tournament_id = match.tournament_id
    if is_final_round(session, tournament_id, match.round_number):
        completed = complete_tournament(session, tournament_id, winner_id)
        result["action"] = TOURNAMENT_COMPLETED_ACTION if completed else ALREADY_APPLIED
        return result

    next_round, next_order = next_position(match.round_number, match.match_order)
    next_match_id = _get_or_create_next_match(session, tournament_id, next_round, next_order)
    result["next_match_id"] = next_match_id
    notices: List[Notice] = []

    def fill_slot(target: Match) -> str:
        if target.is_participant(winner_id):
            return ALREADY_APPLIED
        if target.status not in PRE_LIVE_STATUSES:
            logger.warning(
                "Match %s is %s; not placing winner %s of match %s",
                target.id, target.status, winner_id, match_id,
            )
            return TARGET_CLOSED
        if target.participant1_id is None:
            target.participant1_id = winner_id
        elif target.participant2_id is None:
            target.participant2_id = winner_id
        else:
            logger.warning(
                "Match %s already has participants %s and %s; not placing winner %s of match %s",
                target.id, target.participant1_id, target.participant2_id, winner_id, match_id,
            )
            return SLOT_FULL

        if target.participant1_id is not None and target.participant2_id is not None:
            # The no-show grace period runs from the moment both players are known
            now = get_timer_service().now()
            if target.scheduled_at is None or target.scheduled_at < now:
                target.scheduled_at = now
            for pid in target.participant_ids():
                notices.append(Notice(
                    user_id=pid,
                    match_id=target.id,
                    message_type="next_match_ready",
                    title="Next Match Ready",
                    body=f"Your round {target.round_number} match is set. Mark ready when you are prepared.",
                ))
        return ADVANCED

    result["action"] = run_match_action(session, next_match_id, fill_slot)
    if result["action"] == ADVANCED:
        logger.info("Advanced winner %s of match %s into match %s", winner_id, match_id, next_match_id)
    dispatch_notices(session, notices)
    return result


def resolve_all_advancements(session: Session, tournament_id: int) -> Dict:
    """
    Replay advancement for every completed match of a tournament.

    Returns:
        Dict with:
        - matches_processed: completed matches replayed
        - slots_filled: next-round slots written by this call
        - targets_closed: winners not placed because the next match is already closed
        - tbd_before / tbd_after: matches with an empty participant slot
        - tournament_completed: whether the tournament is completed afterwards

    Guarantees:
        - Idempotent (safe to call multiple times)
        - Deterministic ordering (round_number, match_order)
    """
    if not session.get(Tournament, tournament_id):
        raise NotFound(f"Tournament {tournament_id} not found")

    tbd_before = _count_tbd(session, tournament_id)
    matches_processed = 0
    slots_filled = 0
    targets_closed = 0
    round_number = 1
    # Rounds are walked one at a time because advancing a round can complete the next
    while True:
        completed = session.exec(
            select(Match)
            .where(
                Match.tournament_id == tournament_id,
                Match.round_number == round_number,
                Match.status == STATUS_COMPLETED,
                Match.winner_id.is_not(None),
            )
            .order_by(Match.match_order)
        ).all()
        if not completed and round_number > _max_round(session, tournament_id):
            break
        for match_id, winner_id in [(m.id, m.winner_id) for m in completed]:
            outcome = on_match_completed(session, match_id, winner_id)
            if outcome["action"] == ADVANCED:
                slots_filled += 1
            elif outcome["action"] == TARGET_CLOSED:
                targets_closed += 1
            matches_processed += 1
        round_number += 1

    session.expire_all()
    tournament = session.get(Tournament, tournament_id)
    return {
        "matches_processed": matches_processed,
        "slots_filled": slots_filled,
        "targets_closed": targets_closed,
        "tbd_before": tbd_before,
        "tbd_after": _count_tbd(session, tournament_id),
        "tournament_completed": tournament.status == TOURNAMENT_COMPLETED,
    }


def _count_tbd(session: Session, tournament_id: int) -> int:
    matches = session.exec(select(Match).where(Match.tournament_id == tournament_id)).all()
    return sum(1 for m in matches if m.participant1_id is None or m.participant2_id is None)


def _max_round(session: Session, tournament_id: int) -> int:
    return session.exec(
        select(func.max(Match.round_number)).where(Match.tournament_id == tournament_id)
    ).one() or 0
