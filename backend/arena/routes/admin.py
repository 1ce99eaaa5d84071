"""
Administrator routes: dispute arbitration and bracket/deadline repair.

All endpoints require ``X-User-Role: admin``.
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from sqlmodel import Session

from arena.database import get_session
from arena.errors import MatchEngineError, http_error
from arena.identity import require_admin
from arena.services import advancement_service, dispute_resolver
from arena.services import match_state_machine as machine
from arena.services.deadline_worker import run_deadline_scan

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")


class DisputeSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    dispute_id: int
    match_id: int
    tournament_id: int
    round_number: int
    raised_by: int
    reason: str
    evidence_ref: Optional[str] = None
    reported_by: Optional[int] = None
    participant1_id: Optional[int] = None
    participant2_id: Optional[int] = None
    participant1_name: Optional[str] = None
    participant2_name: Optional[str] = None
    participant1_score: Optional[int] = None
    participant2_score: Optional[int] = None
    created_at: datetime


class ResolveDisputeRequest(BaseModel):
    winner_id: int
    resolution: str = ""


class ResolveDisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    match_id: int
    status: str
    resolution: Optional[str] = None
    resolved_by: Optional[int] = None
    resolved_winner_id: Optional[int] = None
    resolved_at: Optional[datetime] = None


class CancelMatchResponse(BaseModel):
    match_id: int
    status: str
    cancelled_at: Optional[datetime] = None


class AdvanceMatchResponse(BaseModel):
    match_id: int
    winner_id: int
    action: str
    next_match_id: Optional[int] = None


class ResolveAdvancementsResponse(BaseModel):
    matches_processed: int
    slots_filled: int
    targets_closed: int
    tbd_before: int
    tbd_after: int
    tournament_completed: bool


class DeadlineScanResponse(BaseModel):
    skipped: bool = False
    auto_confirmed: int = 0
    reminders_sent: int = 0
    forfeits: int = 0
    no_contests: int = 0
    errors: int = 0


@router.get("/disputes", response_model=List[DisputeSummaryResponse])
def list_open_disputes(
    session: Session = Depends(get_session),
    admin_id: int = Depends(require_admin),
):
    """Open disputes with the reported scores and participant names, oldest first."""
    return [DisputeSummaryResponse.model_validate(s) for s in dispute_resolver.list_open_disputes(session)]


@router.post("/disputes/{dispute_id}/resolve", response_model=ResolveDisputeResponse)
def resolve_dispute(
    dispute_id: int,
    payload: ResolveDisputeRequest,
    session: Session = Depends(get_session),
    admin_id: int = Depends(require_admin),
):
    try:
        dispute = dispute_resolver.resolve_dispute(
            session, dispute_id, admin_id, payload.resolution, payload.winner_id
        )
    except MatchEngineError as e:
        raise http_error(e)
    return ResolveDisputeResponse.model_validate(dispute)


@router.post("/matches/{match_id}/cancel", response_model=CancelMatchResponse)
def cancel_match(
    match_id: int,
    session: Session = Depends(get_session),
    admin_id: int = Depends(require_admin),
):
    try:
        match = machine.cancel_match(session, match_id, admin_id)
    except MatchEngineError as e:
        raise http_error(e)
    return CancelMatchResponse(match_id=match.id, status=match.status, cancelled_at=match.cancelled_at)


@router.post("/matches/{match_id}/advance", response_model=AdvanceMatchResponse)
def advance_match(
    match_id: int,
    session: Session = Depends(get_session),
    admin_id: int = Depends(require_admin),
):
    """Re-run advancement for a completed match. Safe to repeat."""
    try:
        match = machine.get_match(session, match_id)
        if match.winner_id is None:
            raise HTTPException(status_code=409, detail=f"INVALID_STATE: Match {match_id} has no winner yet")
        result = advancement_service.on_match_completed(session, match_id, match.winner_id)
    except MatchEngineError as e:
        raise http_error(e)
    return AdvanceMatchResponse(**result)


@router.post("/tournaments/{tournament_id}/resolve-advancements", response_model=ResolveAdvancementsResponse)
def resolve_advancements(
    tournament_id: int,
    session: Session = Depends(get_session),
    admin_id: int = Depends(require_admin),
):
    """Replay advancement for every completed match (repair after a failed or partial run)."""
    try:
        result = advancement_service.resolve_all_advancements(session, tournament_id)
    except MatchEngineError as e:
        raise http_error(e)
    return ResolveAdvancementsResponse(**result)


@router.post("/deadlines/scan", response_model=DeadlineScanResponse)
def scan_deadlines(
    session: Session = Depends(get_session),
    admin_id: int = Depends(require_admin),
):
    """Run one deadline sweep now instead of waiting for the worker."""
    counts = run_deadline_scan(session)
    if counts is None:
        return DeadlineScanResponse(skipped=True)
    return DeadlineScanResponse(**counts)
