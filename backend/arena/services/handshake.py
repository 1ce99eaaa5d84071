"""
Ready Handshake Coordinator.

A match only goes live once both participants have (1) marked ready and then
(2) confirmed they are active. The two phases are kept as independent per-side
flags so either participant can act in either order; the overall handshake
status is derived from the flags, never stored.

The second ConfirmActive is the single linearization point for the
scheduled -> live transition: it runs under the per-match lock, so concurrent
confirmations from both sides produce exactly one live transition.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from sqlmodel import Session

from arena.errors import InvalidState, NotParticipant
from arena.models.match import (
    PRE_LIVE_STATUSES,
    STATUS_AWAITING_ACTIVATION,
    STATUS_LIVE,
    STATUS_SCHEDULED,
    Match,
)
from arena.services.match_state_machine import get_match, transition
from arena.services.match_store import run_match_action
from arena.services.notification_service import Notice, dispatch_notices
from arena.services.timer_service import get_timer_service

logger = logging.getLogger(__name__)

HANDSHAKE_WAITING = "waiting"
HANDSHAKE_ONE_READY = "one_ready"
HANDSHAKE_BOTH_READY = "both_ready"
HANDSHAKE_COMPLETED = "handshake_completed"

REQUIRED_PARTICIPANTS = 2


@dataclass(frozen=True)
class ReadyState:
    participant1_ready: bool = False
    participant2_ready: bool = False
    participant1_active_confirmed: bool = False
    participant2_active_confirmed: bool = False

    @classmethod
    def from_match(cls, match: Match) -> "ReadyState":
        return cls(
            participant1_ready=bool(match.participant1_ready),
            participant2_ready=bool(match.participant2_ready),
            participant1_active_confirmed=bool(match.participant1_active_confirmed),
            participant2_active_confirmed=bool(match.participant2_active_confirmed),
        )

    @property
    def total_ready(self) -> int:
        return int(self.participant1_ready) + int(self.participant2_ready)

    @property
    def total_active_confirmed(self) -> int:
        return int(self.participant1_active_confirmed) + int(self.participant2_active_confirmed)

    @property
    def handshake_status(self) -> str:
        return derive_handshake_status(self)


def derive_handshake_status(state: ReadyState) -> str:
    """Pure derivation of the handshake status from the four flags."""
    if state.participant1_active_confirmed and state.participant2_active_confirmed:
        return HANDSHAKE_COMPLETED
    if state.participant1_ready and state.participant2_ready:
        return HANDSHAKE_BOTH_READY
    if state.participant1_ready or state.participant2_ready:
        return HANDSHAKE_ONE_READY
    return HANDSHAKE_WAITING


@dataclass
class HandshakeResult:
    match: Match
    ready_state: ReadyState
    match_live: bool = False
    changed: bool = False

    @property
    def handshake_status(self) -> str:
        return self.ready_state.handshake_status


def _side(match: Match, user_id: int) -> int:
    """Return 1 or 2 for the caller's slot. Raises NotParticipant."""
    if user_id is not None and user_id == match.participant1_id:
        return 1
    if user_id is not None and user_id == match.participant2_id:
        return 2
    raise NotParticipant(f"User {user_id} is not a participant of match {match.id}")


def _flags(match: Match, side: int) -> Tuple[bool, bool]:
    if side == 1:
        return bool(match.participant1_ready), bool(match.participant1_active_confirmed)
    return bool(match.participant2_ready), bool(match.participant2_active_confirmed)


def _set_flags(match: Match, side: int, ready: bool, active: bool) -> None:
    if side == 1:
        match.participant1_ready = ready
        match.participant1_active_confirmed = active
    else:
        match.participant2_ready = ready
        match.participant2_active_confirmed = active


def _result(match: Match, match_live: bool = False, changed: bool = False) -> HandshakeResult:
    return HandshakeResult(
        match=match,
        ready_state=ReadyState.from_match(match),
        match_live=match_live,
        changed=changed,
    )


def get_ready_status(session: Session, match_id: int, user_id: int) -> HandshakeResult:
    """Read-only handshake snapshot for a participant (clients poll this)."""
    match = get_match(session, match_id)
    _side(match, user_id)
    return _result(match, match_live=match.live_at is not None)


def mark_ready(session: Session, match_id: int, user_id: int) -> HandshakeResult:
    """Phase 1: caller declares presence. Idempotent for a caller already ready."""
    notices: List[Notice] = []

    def action(match: Match) -> HandshakeResult:
        side = _side(match, user_id)
        ready, _active = _flags(match, side)
        if ready:
            return _result(match, match_live=match.live_at is not None)
        if match.status not in PRE_LIVE_STATUSES:
            raise InvalidState(f"Cannot mark ready while match is {match.status}")
        if match.participant1_id is None or match.participant2_id is None:
            raise InvalidState("Both participants must be known before marking ready")

        now = get_timer_service().now()
        before = derive_handshake_status(ReadyState.from_match(match))
        _set_flags(match, side, True, False)
        if match.ready_at is None:
            match.ready_at = now
        if match.status == STATUS_SCHEDULED:
            transition(match, STATUS_AWAITING_ACTIVATION)

        state = ReadyState.from_match(match)
        opponent = match.opponent_of(user_id)
        if state.handshake_status == HANDSHAKE_BOTH_READY and before != HANDSHAKE_BOTH_READY:
            for pid in match.participant_ids():
                notices.append(Notice(
                    user_id=pid,
                    match_id=match.id,
                    message_type="both_ready",
                    title="Match Starting Soon",
                    body="Both players are ready! Confirm you are active to start the match.",
                ))
        elif opponent is not None:
            notices.append(Notice(
                user_id=opponent,
                match_id=match.id,
                message_type="opponent_ready",
                title="Opponent Ready",
                body='Your opponent is ready and waiting for you. Click "Ready" when you are prepared.',
            ))
        logger.info("Match %s: user %s ready (%s)", match.id, user_id, state.handshake_status)
        return _result(match, changed=True)

    result = run_match_action(session, match_id, action)
    dispatch_notices(session, notices)
    return result


def mark_not_ready(session: Session, match_id: int, user_id: int) -> HandshakeResult:
    """Retract readiness. Not allowed once the caller confirmed active."""
    notices: List[Notice] = []

    def action(match: Match) -> HandshakeResult:
        side = _side(match, user_id)
        ready, active = _flags(match, side)
        if active:
            raise InvalidState("Cannot retract readiness after confirming active")
        if not ready:
            return _result(match, match_live=match.live_at is not None)
        if match.status not in PRE_LIVE_STATUSES:
            raise InvalidState(f"Cannot mark not ready while match is {match.status}")

        _set_flags(match, side, False, False)
        state = ReadyState.from_match(match)
        if state.total_ready == 0:
            match.ready_at = None
            match.active_confirmed_at = None
            transition(match, STATUS_SCHEDULED)

        opponent = match.opponent_of(user_id)
        if opponent is not None:
            notices.append(Notice(
                user_id=opponent,
                match_id=match.id,
                message_type="opponent_not_ready",
                title="Opponent Not Ready",
                body="Your opponent is no longer ready.",
            ))
        logger.info("Match %s: user %s no longer ready (%s)", match.id, user_id, state.handshake_status)
        return _result(match, changed=True)

    result = run_match_action(session, match_id, action)
    dispatch_notices(session, notices)
    return result


def confirm_active(session: Session, match_id: int, user_id: int) -> HandshakeResult:
    """
    Phase 2: caller confirms they are active. The second confirmation moves the
    match to live and stamps live_at; repeated calls change nothing.
    """
    notices: List[Notice] = []

    def action(match: Match) -> HandshakeResult:
        side = _side(match, user_id)
        ready, active = _flags(match, side)
        if active:
            return _result(match, match_live=match.live_at is not None)
        if not ready:
            raise InvalidState("Mark ready before confirming active")
        if match.status not in PRE_LIVE_STATUSES:
            raise InvalidState(f"Cannot confirm active while match is {match.status}")

        now = get_timer_service().now()
        _set_flags(match, side, True, True)
        if match.active_confirmed_at is None:
            match.active_confirmed_at = now

        state = ReadyState.from_match(match)
        if state.handshake_status == HANDSHAKE_COMPLETED:
            transition(match, STATUS_LIVE)
            match.live_at = now
            for pid in match.participant_ids():
                notices.append(Notice(
                    user_id=pid,
                    match_id=match.id,
                    message_type="match_live",
                    title="Match is Live!",
                    body="The match has started. Report the score when you finish.",
                ))
            logger.info("Match %s is now LIVE", match.id)
            return _result(match, match_live=True, changed=True)

        opponent: Optional[int] = match.opponent_of(user_id)
        if opponent is not None:
            notices.append(Notice(
                user_id=opponent,
                match_id=match.id,
                message_type="opponent_active",
                title="Opponent Confirmed Active",
                body="Your opponent has confirmed they are active. Please confirm when you are ready.",
            ))
        return _result(match, changed=True)

    result = run_match_action(session, match_id, action)
    dispatch_notices(session, notices)
    return result
