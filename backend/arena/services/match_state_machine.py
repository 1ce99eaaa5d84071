"""
Match State Machine: the authoritative transition function for a match.

    scheduled -> awaiting_activation -> live          (handshake, see handshake.py)
    live -> awaiting_confirmation                     (ReportScore)
    awaiting_confirmation -> completed                (ConfirmScore | AutoConfirmTimeout)
    awaiting_confirmation -> disputed -> completed    (Dispute, then admin ResolveDispute)
    scheduled|awaiting_activation -> cancelled        (admin cancel, no-show without a winner)
    scheduled|awaiting_activation -> completed        (no-show forfeit)
    live -> completed|cancelled                       (no score reported within the live window)

Two invariants keep the mechanism honest against one dishonest participant:
the reporter can never confirm their own report, and ties are never accepted.
The auto-confirm deadline keeps the bracket moving when the counterparty is
silent ("silence is acceptance").

All mutations run under run_match_action, so of ConfirmScore, Dispute and
AutoConfirmTimeout exactly one wins per report; human losers get InvalidState,
a losing timer is a silent no-op.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlmodel import Session, select

from arena.config import get_settings
from arena.database import session_factory
from arena.errors import (
    ConcurrencyConflict,
    InvalidReason,
    InvalidScore,
    InvalidState,
    InvalidWinner,
    NotAuthorized,
    NotFound,
    NotParticipant,
)
from arena.models.dispute import DISPUTE_OPEN, Dispute
from arena.models.match import (
    PRE_LIVE_STATUSES,
    REASON_AUTO_CONFIRMED,
    REASON_CONFIRMED,
    REASON_FORFEIT,
    REASON_LIVE_TIMEOUT,
    STATUS_AWAITING_ACTIVATION,
    STATUS_AWAITING_CONFIRMATION,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_DISPUTED,
    STATUS_LIVE,
    STATUS_SCHEDULED,
    Match,
)
from arena.models.tournament import Tournament
from arena.services.advancement_service import on_match_completed
from arena.services.match_store import run_match_action
from arena.services.notification_service import Notice, dispatch_notices
from arena.services.timer_service import auto_confirm_key, confirm_warning_key, get_timer_service

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    STATUS_SCHEDULED: (STATUS_AWAITING_ACTIVATION, STATUS_LIVE, STATUS_CANCELLED, STATUS_COMPLETED),
    STATUS_AWAITING_ACTIVATION: (STATUS_SCHEDULED, STATUS_LIVE, STATUS_CANCELLED, STATUS_COMPLETED),
    STATUS_LIVE: (STATUS_AWAITING_CONFIRMATION, STATUS_COMPLETED, STATUS_CANCELLED),
    STATUS_AWAITING_CONFIRMATION: (STATUS_COMPLETED, STATUS_DISPUTED),
    STATUS_DISPUTED: (STATUS_COMPLETED,),
    STATUS_COMPLETED: (),
    STATUS_CANCELLED: (),
}

OUTCOME_FORFEIT = "forfeit"
OUTCOME_NO_CONTEST = "no_contest"


def transition(match: Match, new_status: str) -> None:
    """Apply a status change, rejecting edges the lifecycle does not allow."""
    current = match.status or STATUS_SCHEDULED
    if new_status not in ALLOWED_TRANSITIONS.get(current, ()):
        raise InvalidState(f"Cannot move match {match.id} from {current} to {new_status}")
    match.status = new_status


def get_match(session: Session, match_id: int) -> Match:
    match = session.get(Match, match_id)
    if not match:
        raise NotFound(f"Match {match_id} not found")
    return match


def list_tournament_matches(session: Session, tournament_id: int) -> List[Match]:
    """Bracket order: round_number, match_order."""
    if not session.get(Tournament, tournament_id):
        raise NotFound(f"Tournament {tournament_id} not found")
    return list(
        session.exec(
            select(Match)
            .where(Match.tournament_id == tournament_id)
            .order_by(Match.round_number, Match.match_order)
        ).all()
    )


def seconds_until_auto_confirm(match: Match, now: Optional[datetime] = None) -> Optional[int]:
    """Time left on a pending report, clamped at zero. None when nothing is pending."""
    if match.status != STATUS_AWAITING_CONFIRMATION or match.auto_confirm_at is None:
        return None
    now = now or get_timer_service().now()
    return max(0, int((match.auto_confirm_at - now).total_seconds()))


def auto_confirm_window(session: Session, match: Match) -> timedelta:
    tournament = session.get(Tournament, match.tournament_id)
    if tournament and tournament.auto_confirm_minutes:
        return timedelta(minutes=tournament.auto_confirm_minutes)
    return timedelta(minutes=get_settings().auto_confirm_minutes)


def complete_match(
    match: Match,
    winner_id: Optional[int],
    reason: str,
    confirmed_by: Optional[int],
    now: datetime,
) -> None:
    """Terminal transition shared by every completion path. winner_id is only ever written here."""
    if winner_id is None or not match.is_participant(winner_id):
        raise InvalidWinner(f"Winner {winner_id} is not a participant of match {match.id}")
    transition(match, STATUS_COMPLETED)
    match.winner_id = winner_id
    match.resolved_reason = reason
    match.confirmed_by = confirmed_by
    match.completed_at = now


def _validate_scores(p1_score, p2_score) -> None:
    for score in (p1_score, p2_score):
        if isinstance(score, bool) or not isinstance(score, int):
            raise InvalidScore("Scores must be whole numbers")
        if score < 0:
            raise InvalidScore("Scores cannot be negative")
    if p1_score == p2_score:
        raise InvalidScore("Ties are not allowed; every match must produce a winner")


def _require_participant(match: Match, user_id: int) -> None:
    if not match.is_participant(user_id):
        raise NotParticipant(f"User {user_id} is not a participant of match {match.id}")


def _require_counterparty(match: Match, user_id: int) -> None:
    """Caller must be the participant who did not report."""
    _require_participant(match, user_id)
    if match.reported_by is not None and match.reported_by == user_id:
        raise NotAuthorized("You cannot confirm or dispute your own reported score")


def cancel_timers(match_id: int) -> None:
    timers = get_timer_service()
    timers.cancel(auto_confirm_key(match_id))
    timers.cancel(confirm_warning_key(match_id))


def arm_timers(session: Session, match: Match) -> None:
    """Schedule the auto-confirm deadline and its reminder for a pending report."""
    if match.status != STATUS_AWAITING_CONFIRMATION or match.auto_confirm_at is None:
        return
    timers = get_timer_service()
    open_session = session_factory(session)
    match_id = match.id

    def fire_auto_confirm() -> None:
        with open_session() as s:
            auto_confirm_timeout(s, match_id)

    def fire_warning() -> None:
        with open_session() as s:
            send_confirmation_warning(s, match_id)

    timers.schedule(auto_confirm_key(match_id), match.auto_confirm_at, fire_auto_confirm)
    warning_at = match.auto_confirm_at - timedelta(minutes=get_settings().auto_confirm_warning_minutes)
    if match.confirm_warning_sent_at is None and warning_at > timers.now():
        timers.schedule(confirm_warning_key(match_id), warning_at, fire_warning)
    logger.info("Match %s: auto-confirm armed for %s", match_id, match.auto_confirm_at.isoformat())


def after_completion(session: Session, match_id: int, winner_id: int, notices: List[Notice]) -> None:
    """Post-commit side effects of the one transition that completed the match."""
    try:
        on_match_completed(session, match_id, winner_id)
    except ConcurrencyConflict:
        logger.exception("Advancement for match %s deferred; rerun resolve-advancements", match_id)
    dispatch_notices(session, notices)


def completion_notices(match: Match, body: str) -> List[Notice]:
    return [
        Notice(
            user_id=pid,
            match_id=match.id,
            message_type="match_completed",
            title="Match Completed",
            body=body,
        )
        for pid in match.participant_ids()
    ]


def report_score(
    session: Session,
    match_id: int,
    user_id: int,
    participant1_score: int,
    participant2_score: int,
    evidence_ref: Optional[str] = None,
) -> Match:
    """Single-writer score report. Moves live -> awaiting_confirmation and arms auto-confirm."""
    notices: List[Notice] = []

    def action(match: Match) -> Match:
        _require_participant(match, user_id)
        if match.status != STATUS_LIVE:
            raise InvalidState(f"Scores can only be reported for live matches (match is {match.status})")
        _validate_scores(participant1_score, participant2_score)

        now = get_timer_service().now()
        match.participant1_score = participant1_score
        match.participant2_score = participant2_score
        match.reported_by = user_id
        match.reported_at = now
        match.evidence_ref = evidence_ref or None
        match.provisional_winner_id = (
            match.participant1_id if participant1_score > participant2_score else match.participant2_id
        )
        match.auto_confirm_at = now + auto_confirm_window(session, match)
        match.confirm_warning_sent_at = None
        transition(match, STATUS_AWAITING_CONFIRMATION)

        opponent = match.opponent_of(user_id)
        if opponent is not None:
            notices.append(Notice(
                user_id=opponent,
                match_id=match.id,
                message_type="score_reported",
                title="Score Reported",
                body=(
                    f"Your opponent reported {participant1_score}-{participant2_score}. "
                    "Please confirm or dispute the result before it is confirmed automatically."
                ),
            ))
        logger.info(
            "Match %s: user %s reported %s-%s", match.id, user_id, participant1_score, participant2_score
        )
        return match

    match = run_match_action(session, match_id, action)
    arm_timers(session, match)
    dispatch_notices(session, notices)
    return match


def confirm_score(session: Session, match_id: int, user_id: int) -> Match:
    """Counterparty accepts the report; the provisional winner becomes final."""
    notices: List[Notice] = []

    def action(match: Match) -> Match:
        _require_counterparty(match, user_id)
        if match.status != STATUS_AWAITING_CONFIRMATION:
            raise InvalidState(f"Match is not awaiting confirmation (match is {match.status})")
        complete_match(match, match.provisional_winner_id, REASON_CONFIRMED, user_id, get_timer_service().now())
        notices.extend(completion_notices(match, "The reported score was confirmed."))
        logger.info("Match %s confirmed by %s; winner %s", match.id, user_id, match.winner_id)
        return match

    match = run_match_action(session, match_id, action)
    cancel_timers(match_id)
    after_completion(session, match_id, match.winner_id, notices)
    return match


def dispute_match(
    session: Session,
    match_id: int,
    user_id: int,
    reason: str,
    evidence_ref: Optional[str] = None,
) -> Dispute:
    """Counterparty rejects the report; the match waits for an administrator."""
    notices: List[Notice] = []

    def action(match: Match) -> Dispute:
        _require_counterparty(match, user_id)
        if match.status != STATUS_AWAITING_CONFIRMATION:
            raise InvalidState(f"Match is not awaiting confirmation (match is {match.status})")
        if not reason or not reason.strip():
            raise InvalidReason("A reason is required to dispute a score")
        already_open = session.exec(
            select(Dispute).where(Dispute.match_id == match.id, Dispute.status == DISPUTE_OPEN)
        ).first()
        if already_open:
            raise InvalidState(f"Match {match.id} already has open dispute {already_open.id}")

        dispute = Dispute(
            match_id=match.id,
            raised_by=user_id,
            reason=reason.strip(),
            evidence_ref=evidence_ref or None,
            reported_by=match.reported_by,
            participant1_score=match.participant1_score,
            participant2_score=match.participant2_score,
            created_at=get_timer_service().now(),
        )
        session.add(dispute)
        transition(match, STATUS_DISPUTED)

        if match.reported_by is not None:
            notices.append(Notice(
                user_id=match.reported_by,
                match_id=match.id,
                message_type="dispute_opened",
                title="Score Disputed",
                body="Your opponent disputed the reported score. An administrator will review the match.",
            ))
        logger.info("Match %s disputed by %s", match.id, user_id)
        return dispute

    dispute = run_match_action(session, match_id, action)
    cancel_timers(match_id)
    dispatch_notices(session, notices)
    session.refresh(dispute)
    return dispute


def auto_confirm_timeout(session: Session, match_id: int) -> Optional[Match]:
    """
    Deadline callback. Completes with the provisional winner if the report is
    still pending and overdue; returns None (no-op) otherwise.
    """
    notices: List[Notice] = []

    def action(match: Match) -> Optional[Match]:
        now = get_timer_service().now()
        if match.status != STATUS_AWAITING_CONFIRMATION:
            return None
        if match.auto_confirm_at is None or match.auto_confirm_at > now:
            return None
        complete_match(match, match.provisional_winner_id, REASON_AUTO_CONFIRMED, None, now)
        notices.extend(completion_notices(match, "No response was received in time; the reported score stands."))
        logger.info("Match %s auto-confirmed; winner %s", match.id, match.winner_id)
        return match

    match = run_match_action(session, match_id, action)
    if match is None:
        logger.debug("Auto-confirm for match %s skipped", match_id)
        return None
    cancel_timers(match_id)
    after_completion(session, match_id, match.winner_id, notices)
    return match


def send_confirmation_warning(session: Session, match_id: int) -> bool:
    """Remind the counterparty before auto-confirm. Sent at most once per report."""
    notices: List[Notice] = []

    def action(match: Match) -> bool:
        if match.status != STATUS_AWAITING_CONFIRMATION or match.confirm_warning_sent_at is not None:
            return False
        now = get_timer_service().now()
        match.confirm_warning_sent_at = now
        counterparty = match.opponent_of(match.reported_by) if match.reported_by is not None else None
        if counterparty is not None:
            remaining = max(0, int((match.auto_confirm_at - now).total_seconds() // 60)) if match.auto_confirm_at else 0
            notices.append(Notice(
                user_id=counterparty,
                match_id=match.id,
                message_type="confirm_reminder",
                title="Score Confirmation Reminder",
                body=(
                    f"Your opponent reported a score. You have {remaining} minutes to confirm or dispute "
                    "before it is confirmed automatically."
                ),
            ))
        return True

    sent = run_match_action(session, match_id, action)
    dispatch_notices(session, notices)
    return sent


def cancel_match(session: Session, match_id: int, admin_id: int) -> Match:
    """Tournament-level cancellation; only before the match goes live."""
    notices: List[Notice] = []

    def action(match: Match) -> Match:
        if match.status not in PRE_LIVE_STATUSES:
            raise InvalidState(f"Only scheduled matches can be cancelled (match is {match.status})")
        transition(match, STATUS_CANCELLED)
        match.cancelled_at = get_timer_service().now()
        for pid in match.participant_ids():
            notices.append(Notice(
                user_id=pid,
                match_id=match.id,
                message_type="match_cancelled",
                title="Match Cancelled",
                body="Your match was cancelled by the tournament administrators.",
            ))
        logger.info("Match %s cancelled by admin %s", match.id, admin_id)
        return match

    match = run_match_action(session, match_id, action)
    dispatch_notices(session, notices)
    return match


def determine_no_show_outcome(match: Match) -> Tuple[str, Optional[int]]:
    """
    Who showed up for a match that never went live.

    The side that marked ready wins over a side that did not; when both were
    ready, the side that also confirmed active wins. Anything else is no contest.
    """
    if match.participant1_id is None or match.participant2_id is None:
        return OUTCOME_NO_CONTEST, None
    p1_ready, p2_ready = bool(match.participant1_ready), bool(match.participant2_ready)
    p1_active, p2_active = bool(match.participant1_active_confirmed), bool(match.participant2_active_confirmed)

    if p1_ready and not p2_ready:
        return OUTCOME_FORFEIT, match.participant1_id
    if p2_ready and not p1_ready:
        return OUTCOME_FORFEIT, match.participant2_id
    if p1_ready and p2_ready:
        if p1_active and not p2_active:
            return OUTCOME_FORFEIT, match.participant1_id
        if p2_active and not p1_active:
            return OUTCOME_FORFEIT, match.participant2_id
    return OUTCOME_NO_CONTEST, None


def resolve_no_show(session: Session, match_id: int) -> Optional[str]:
    """
    Settle a pre-live match whose start time lapsed by NO_SHOW_HOURS.

    Returns "forfeit", "no_contest", or None when the match is not due.
    """
    notices: List[Notice] = []
    grace = timedelta(hours=get_settings().no_show_hours)

    def action(match: Match) -> Tuple[Optional[str], Optional[int]]:
        if match.status not in PRE_LIVE_STATUSES:
            return None, None
        if match.participant1_id is None or match.participant2_id is None:
            # Still waiting for a feeder match; nobody can be absent yet
            return None, None
        tournament = session.get(Tournament, match.tournament_id)
        starts_at = match.scheduled_at or (tournament.starts_at if tournament else None)
        now = get_timer_service().now()
        if starts_at is None or starts_at + grace > now:
            return None, None

        outcome, winner_id = determine_no_show_outcome(match)
        if outcome == OUTCOME_FORFEIT:
            complete_match(match, winner_id, REASON_FORFEIT, None, now)
            notices.extend(_forfeit_notices(
                match,
                winner_id,
                winner_body="Your opponent did not show up in time. You win by forfeit.",
                loser_body="You forfeited the match for not being ready before the deadline.",
            ))
        else:
            transition(match, STATUS_CANCELLED)
            match.cancelled_at = now
            notices.extend(_no_contest_notices(match, "The match was marked no contest due to a no-show."))
        logger.info("Match %s no-show resolved: %s", match.id, outcome)
        return outcome, winner_id

    return _settle(session, match_id, action, notices)


def determine_live_outcome(match: Match) -> Tuple[str, Optional[int]]:
    """Who is owed a live match nobody reported: only a side that confirmed active while the other did not."""
    if match.participant1_id is None or match.participant2_id is None:
        return OUTCOME_NO_CONTEST, None
    p1_active = bool(match.participant1_active_confirmed)
    p2_active = bool(match.participant2_active_confirmed)
    if p1_active and not p2_active:
        return OUTCOME_FORFEIT, match.participant1_id
    if p2_active and not p1_active:
        return OUTCOME_FORFEIT, match.participant2_id
    return OUTCOME_NO_CONTEST, None


def resolve_live_no_score(session: Session, match_id: int) -> Optional[str]:
    """
    Settle a live match that has gone LIVE_REPORT_WINDOW_MINUTES without a score report.

    Both sides confirmed active to go live, so this normally ends as no contest;
    a forfeit is only possible for a match whose flags were corrected by hand.

    Returns "forfeit", "no_contest", or None when the match is not due.
    """
    notices: List[Notice] = []
    window = timedelta(minutes=get_settings().live_report_window_minutes)

    def action(match: Match) -> Tuple[Optional[str], Optional[int]]:
        if match.status != STATUS_LIVE:
            return None, None
        if match.live_at is None:
            logger.warning("Match %s is live without live_at; skipping", match.id)
            return None, None
        now = get_timer_service().now()
        if match.live_at + window > now:
            return None, None

        outcome, winner_id = determine_live_outcome(match)
        if outcome == OUTCOME_FORFEIT:
            complete_match(match, winner_id, REASON_LIVE_TIMEOUT, None, now)
            notices.extend(_forfeit_notices(
                match,
                winner_id,
                winner_body="Your opponent did not report a score in time. You win by forfeit.",
                loser_body="You forfeited the match for not reporting a score in time.",
            ))
        else:
            transition(match, STATUS_CANCELLED)
            match.cancelled_at = now
            match.resolved_reason = REASON_LIVE_TIMEOUT
            notices.extend(_no_contest_notices(match, "No score was reported in time; the match is no contest."))
        logger.info("Live match %s without a score resolved: %s", match.id, outcome)
        return outcome, winner_id

    return _settle(session, match_id, action, notices)


def _settle(session: Session, match_id: int, action, notices: List[Notice]) -> Optional[str]:
    outcome, winner_id = run_match_action(session, match_id, action)
    if outcome == OUTCOME_FORFEIT:
        after_completion(session, match_id, winner_id, notices)
    else:
        dispatch_notices(session, notices)
    return outcome


def _forfeit_notices(match: Match, winner_id: int, winner_body: str, loser_body: str) -> List[Notice]:
    notices = [Notice(
        user_id=winner_id,
        match_id=match.id,
        message_type="forfeit",
        title="Match Forfeited",
        body=winner_body,
    )]
    loser_id = match.opponent_of(winner_id)
    if loser_id is not None:
        notices.append(Notice(
            user_id=loser_id,
            match_id=match.id,
            message_type="forfeit",
            title="Match Forfeited",
            body=loser_body,
        ))
    return notices


def _no_contest_notices(match: Match, body: str) -> List[Notice]:
    return [
        Notice(user_id=pid, match_id=match.id, message_type="no_contest", title="Match No Contest", body=body)
        for pid in match.participant_ids()
    ]
