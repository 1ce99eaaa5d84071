"""
Participant-facing match routes: ready handshake, score reporting, confirm/dispute.

Clients poll GET /matches/{id} and /matches/{id}/ready-status; every POST returns
the fresh snapshot so a client never has to guess what its action did.
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from sqlmodel import Session

from arena.database import get_session
from arena.errors import MatchEngineError, http_error
from arena.identity import get_current_user_id
from arena.models.match import Match
from arena.services import handshake
from arena.services import match_state_machine as machine
from arena.services.handshake import REQUIRED_PARTICIPANTS, HandshakeResult
from arena.services.timer_service import get_timer_service

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class ReportScoreRequest(BaseModel):
    participant1_score: int
    participant2_score: int
    evidence_ref: Optional[str] = None  # Pointer into external evidence storage


class DisputeRequest(BaseModel):
    reason: str = ""
    evidence_ref: Optional[str] = None


class MatchSnapshot(BaseModel):
    """Consistent read of the last committed match state."""

    id: int
    tournament_id: int
    round_number: int
    match_order: int
    participant1_id: Optional[int] = None
    participant2_id: Optional[int] = None
    status: str
    participant1_ready: bool
    participant2_ready: bool
    participant1_active_confirmed: bool
    participant2_active_confirmed: bool
    reported_by: Optional[int] = None
    participant1_score: Optional[int] = None
    participant2_score: Optional[int] = None
    evidence_ref: Optional[str] = None
    provisional_winner_id: Optional[int] = None
    winner_id: Optional[int] = None
    resolved_reason: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    live_at: Optional[datetime] = None
    reported_at: Optional[datetime] = None
    auto_confirm_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    seconds_until_auto_confirm: Optional[int] = None


class ReadyStatusResponse(BaseModel):
    match_id: int
    status: str
    handshake_status: str
    participant1_ready: bool
    participant2_ready: bool
    participant1_active_confirmed: bool
    participant2_active_confirmed: bool
    total_ready: int
    total_active_confirmed: int
    required: int = REQUIRED_PARTICIPANTS
    match_live: bool = False


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    match_id: int
    raised_by: int
    reason: str
    evidence_ref: Optional[str] = None
    status: str
    created_at: datetime


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _snapshot(match: Match) -> MatchSnapshot:
    return MatchSnapshot(
        id=match.id,
        tournament_id=match.tournament_id,
        round_number=match.round_number,
        match_order=match.match_order,
        participant1_id=match.participant1_id,
        participant2_id=match.participant2_id,
        status=match.status,
        participant1_ready=bool(match.participant1_ready),
        participant2_ready=bool(match.participant2_ready),
        participant1_active_confirmed=bool(match.participant1_active_confirmed),
        participant2_active_confirmed=bool(match.participant2_active_confirmed),
        reported_by=match.reported_by,
        participant1_score=match.participant1_score,
        participant2_score=match.participant2_score,
        evidence_ref=match.evidence_ref,
        provisional_winner_id=match.provisional_winner_id,
        winner_id=match.winner_id,
        resolved_reason=match.resolved_reason,
        scheduled_at=match.scheduled_at,
        live_at=match.live_at,
        reported_at=match.reported_at,
        auto_confirm_at=match.auto_confirm_at,
        completed_at=match.completed_at,
        seconds_until_auto_confirm=machine.seconds_until_auto_confirm(match, get_timer_service().now()),
    )


def _ready_status(result: HandshakeResult) -> ReadyStatusResponse:
    state = result.ready_state
    return ReadyStatusResponse(
        match_id=result.match.id,
        status=result.match.status,
        handshake_status=state.handshake_status,
        participant1_ready=state.participant1_ready,
        participant2_ready=state.participant2_ready,
        participant1_active_confirmed=state.participant1_active_confirmed,
        participant2_active_confirmed=state.participant2_active_confirmed,
        total_ready=state.total_ready,
        total_active_confirmed=state.total_active_confirmed,
        match_live=result.match_live,
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/matches/{match_id}", response_model=MatchSnapshot)
def get_match(
    match_id: int,
    session: Session = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    try:
        return _snapshot(machine.get_match(session, match_id))
    except MatchEngineError as e:
        raise http_error(e)


@router.get("/matches/{match_id}/ready-status", response_model=ReadyStatusResponse)
def get_ready_status(
    match_id: int,
    session: Session = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    try:
        return _ready_status(handshake.get_ready_status(session, match_id, user_id))
    except MatchEngineError as e:
        raise http_error(e)


@router.get("/tournaments/{tournament_id}/matches", response_model=List[MatchSnapshot])
def list_tournament_matches(
    tournament_id: int,
    session: Session = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    """Bracket view ordered by round, then position."""
    try:
        matches = machine.list_tournament_matches(session, tournament_id)
    except MatchEngineError as e:
        raise http_error(e)
    return [_snapshot(m) for m in matches]


# ---------------------------------------------------------------------------
# Ready handshake
# ---------------------------------------------------------------------------


@router.post("/matches/{match_id}/ready", response_model=ReadyStatusResponse)
def mark_ready(
    match_id: int,
    session: Session = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    try:
        return _ready_status(handshake.mark_ready(session, match_id, user_id))
    except MatchEngineError as e:
        raise http_error(e)


@router.post("/matches/{match_id}/not-ready", response_model=ReadyStatusResponse)
def mark_not_ready(
    match_id: int,
    session: Session = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    try:
        return _ready_status(handshake.mark_not_ready(session, match_id, user_id))
    except MatchEngineError as e:
        raise http_error(e)


@router.post("/matches/{match_id}/confirm-active", response_model=ReadyStatusResponse)
def confirm_active(
    match_id: int,
    session: Session = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    try:
        return _ready_status(handshake.confirm_active(session, match_id, user_id))
    except MatchEngineError as e:
        raise http_error(e)


# ---------------------------------------------------------------------------
# Result reporting
# ---------------------------------------------------------------------------


@router.post("/matches/{match_id}/report-score", response_model=MatchSnapshot)
def report_score(
    match_id: int,
    payload: ReportScoreRequest,
    session: Session = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    try:
        match = machine.report_score(
            session,
            match_id,
            user_id,
            payload.participant1_score,
            payload.participant2_score,
            evidence_ref=payload.evidence_ref,
        )
    except MatchEngineError as e:
        raise http_error(e)
    return _snapshot(match)


@router.post("/matches/{match_id}/confirm-score", response_model=MatchSnapshot)
def confirm_score(
    match_id: int,
    session: Session = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    try:
        match = machine.confirm_score(session, match_id, user_id)
    except MatchEngineError as e:
        raise http_error(e)
    return _snapshot(match)


@router.post("/matches/{match_id}/dispute", response_model=DisputeResponse, status_code=201)
def dispute_match(
    match_id: int,
    payload: DisputeRequest,
    session: Session = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
):
    try:
        dispute = machine.dispute_match(session, match_id, user_id, payload.reason, payload.evidence_ref)
    except MatchEngineError as e:
        raise http_error(e)
    return DisputeResponse.model_validate(dispute)
