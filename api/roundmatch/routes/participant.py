import dataclasses
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends

from .. import engine
from ..deps import current_participant_id, current_time
from ..schemas import (
    ContactDecisionInput,
    ContactDecisionsRequest,
    RegisterRequest,
    SelectionResponse,
    SelectNumberRequest,
)

router = APIRouter()


@router.get("/rounds/{round_id}/registration")
def get_registration(
    round_id: str,
    participant_id: str = Depends(current_participant_id),
    now: datetime = Depends(current_time),
) -> dict[str, Any]:
    return engine.get_registration_view(round_id, participant_id, now)


@router.post("/rounds/{round_id}/register")
def register(
    round_id: str,
    payload: RegisterRequest | None = None,
    participant_id: str = Depends(current_participant_id),
    now: datetime = Depends(current_time),
) -> dict[str, Any]:
    payload = payload or RegisterRequest()
    reg = engine.register_participant(
        round_id,
        participant_id,
        now,
        display_name=payload.display_name,
        email=payload.email,
        phone=payload.phone,
        team=payload.team,
        topics=payload.topics,
    )
    return {"registration": dataclasses.asdict(reg)}


@router.post("/rounds/{round_id}/confirm")
def confirm(
    round_id: str,
    participant_id: str = Depends(current_participant_id),
    now: datetime = Depends(current_time),
) -> dict[str, Any]:
    reg = engine.confirm_attendance(round_id, participant_id, now)
    return {"status": reg.status, "confirmed_at": reg.confirmed_at}


@router.post("/rounds/{round_id}/cancel")
def cancel(
    round_id: str,
    participant_id: str = Depends(current_participant_id),
    now: datetime = Depends(current_time),
) -> dict[str, Any]:
    reg = engine.cancel_registration(round_id, participant_id, now)
    return {"status": reg.status}


@router.post("/matches/{match_id}/acknowledge")
def acknowledge(
    match_id: str,
    participant_id: str = Depends(current_participant_id),
    now: datetime = Depends(current_time),
) -> dict[str, str]:
    return {"status": engine.acknowledge_match(match_id, participant_id, now)}


@router.post("/matches/{match_id}/arrive")
def arrive(
    match_id: str,
    participant_id: str = Depends(current_participant_id),
    now: datetime = Depends(current_time),
) -> dict[str, str]:
    return {"status": engine.confirm_arrival(match_id, participant_id, now)}


@router.get("/matches/{match_id}/challenge")
def get_challenge(
    match_id: str,
    participant_id: str = Depends(current_participant_id),
    now: datetime = Depends(current_time),
) -> dict[str, Any]:
    return dataclasses.asdict(engine.get_confirmation_challenge(match_id, participant_id, now))


@router.post("/matches/{match_id}/select-number", response_model=SelectionResponse)
def select_number(
    match_id: str,
    payload: SelectNumberRequest,
    participant_id: str = Depends(current_participant_id),
    now: datetime = Depends(current_time),
) -> SelectionResponse:
    result = engine.select_partner_number(match_id, participant_id, payload.selected_value, now)
    return SelectionResponse(outcome=result.outcome, status=result.status, match_met=result.match_met)


@router.get("/matches/{match_id}/networking")
def networking(
    match_id: str,
    participant_id: str = Depends(current_participant_id),
    now: datetime = Depends(current_time),
) -> dict[str, Any]:
    return engine.get_networking_view(match_id, participant_id, now)


@router.get("/matches/{match_id}/contact-decisions")
def get_contact_decisions(
    match_id: str,
    participant_id: str = Depends(current_participant_id),
) -> dict[str, Any]:
    return engine.get_contact_submission(match_id, participant_id)


@router.post("/matches/{match_id}/contact-decisions")
def submit_contact_decisions(
    match_id: str,
    payload: ContactDecisionsRequest,
    participant_id: str = Depends(current_participant_id),
    now: datetime = Depends(current_time),
) -> dict[str, Any]:
    decisions = {d.partner_id: {"share": d.share, "feedback_tags": d.feedback_tags} for d in payload.decisions}
    return engine.submit_contact_decisions(match_id, participant_id, decisions, now)


@router.post("/matches/{match_id}/contact-decisions/{partner_id}")
def submit_contact_decision(
    match_id: str,
    partner_id: str,
    payload: ContactDecisionInput,
    participant_id: str = Depends(current_participant_id),
    now: datetime = Depends(current_time),
) -> dict[str, Any]:
    return engine.submit_contact_decision(match_id, participant_id, partner_id, payload.share, payload.feedback_tags, now)


@router.get("/contacts/shared")
def shared_contacts(
    participant_id: str = Depends(current_participant_id),
    now: datetime = Depends(current_time),
) -> dict[str, Any]:
    return {"contacts": [dataclasses.asdict(c) for c in engine.get_shared_contacts(participant_id, now)]}


@router.get("/feedback/received")
def received_feedback(participant_id: str = Depends(current_participant_id)) -> dict[str, Any]:
    return {"feedback": engine.get_received_feedback(participant_id)}
