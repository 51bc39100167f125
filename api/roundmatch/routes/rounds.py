import dataclasses
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends

from .. import engine
from ..deps import current_time, require_admin
from ..domain import MatchingResult
from ..schemas import CreateRoundRequest, CreateSessionRequest, MatchingResponse, MeetingPointInput, RunMatchingRequest

router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


def matching_payload(result: MatchingResult) -> MatchingResponse:
    return MatchingResponse(
        round_id=result.round_id,
        already_matched=result.already_matched,
        no_match=result.no_match,
        matches=[
            {
                "id": m.id,
                "meeting_point_id": m.meeting_point_id,
                "member_ids": m.member_ids,
            }
            for m in result.matches
        ],
        unmatched=result.unmatched,
        unconfirmed=result.unconfirmed,
    )


@router.post("/sessions")
def create_session(payload: CreateSessionRequest, now: datetime = Depends(current_time)) -> dict[str, Any]:
    points = [p.model_dump(exclude_none=True) for p in payload.meeting_points]
    return engine.create_session(
        payload.name,
        now,
        points,
        matching_type=payload.matching_type,
        ice_breakers=payload.ice_breakers,
    )


@router.post("/sessions/{session_id}/meeting-points")
def add_meeting_point(session_id: str, payload: MeetingPointInput) -> dict[str, Any]:
    point = engine.add_meeting_point(session_id, payload.name, image_url=payload.image_url, position=payload.position)
    return dataclasses.asdict(point)


@router.post("/sessions/{session_id}/rounds")
def create_round(session_id: str, payload: CreateRoundRequest, now: datetime = Depends(current_time)) -> dict[str, Any]:
    round_ = engine.create_round(
        session_id,
        payload.start_time,
        now,
        duration_minutes=payload.duration_minutes,
        target_group_size=payload.target_group_size,
        max_group_size=payload.max_group_size,
        allow_overflow_matching=payload.allow_overflow_matching,
        confirmation_window_minutes=payload.confirmation_window_minutes,
        match_offset_minutes=payload.match_offset_minutes,
        name=payload.name,
    )
    return dataclasses.asdict(round_)


@router.post("/rounds/{round_id}/cancel")
def cancel_round(round_id: str, now: datetime = Depends(current_time)) -> dict[str, Any]:
    return dataclasses.asdict(engine.cancel_round(round_id, now))


@router.post("/rounds/{round_id}/run-matching", response_model=MatchingResponse)
def run_matching(
    round_id: str,
    payload: RunMatchingRequest | None = None,
    now: datetime = Depends(current_time),
) -> MatchingResponse:
    seed = payload.seed if payload else None
    return matching_payload(engine.run_matching(round_id, now, seed=seed))


@router.post("/matching/run-due")
def run_due_matching(now: datetime = Depends(current_time)) -> dict[str, Any]:
    results = engine.run_due_matching(now)
    return {"rounds": [matching_payload(r) for r in results]}


@router.post("/rounds/{round_id}/sweep")
def sweep(round_id: str, now: datetime = Depends(current_time)) -> dict[str, Any]:
    return engine.sweep_round_statuses(round_id, now)


@router.get("/rounds/{round_id}/summary")
def round_summary(round_id: str, now: datetime = Depends(current_time)) -> dict[str, Any]:
    return engine.get_round_summary(round_id, now)


@router.get("/rounds/{round_id}/eligible")
def eligible(round_id: str) -> dict[str, Any]:
    return {"participant_ids": [r.participant_id for r in engine.list_eligible_for_matching(round_id)]}
