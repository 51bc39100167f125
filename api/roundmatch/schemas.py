from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .config import (
    DEFAULT_MATCHING_TYPE,
    DEFAULT_MAX_GROUP_SIZE,
    DEFAULT_ROUND_DURATION_MINUTES,
    DEFAULT_TARGET_GROUP_SIZE,
)


class MeetingPointInput(BaseModel):
    name: str
    image_url: str | None = None
    position: int | None = None


class CreateSessionRequest(BaseModel):
    name: str
    meeting_points: list[MeetingPointInput] = Field(default_factory=list)
    matching_type: str = DEFAULT_MATCHING_TYPE
    ice_breakers: list[str] | None = None


class CreateRoundRequest(BaseModel):
    start_time: datetime
    name: str = ""
    duration_minutes: int = DEFAULT_ROUND_DURATION_MINUTES
    target_group_size: int = DEFAULT_TARGET_GROUP_SIZE
    max_group_size: int = DEFAULT_MAX_GROUP_SIZE
    allow_overflow_matching: bool = True
    confirmation_window_minutes: int | None = None
    match_offset_minutes: int = 0


class RegisterRequest(BaseModel):
    display_name: str | None = None
    email: str | None = None
    phone: str | None = None
    team: str | None = None
    topics: list[str] | None = None


class RunMatchingRequest(BaseModel):
    seed: int | None = None


class SelectNumberRequest(BaseModel):
    selected_value: int


class ContactDecisionInput(BaseModel):
    share: bool
    feedback_tags: list[str] = Field(default_factory=list)


class PartnerContactDecision(ContactDecisionInput):
    partner_id: str


class ContactDecisionsRequest(BaseModel):
    decisions: list[PartnerContactDecision] = Field(default_factory=list)


class SelectionResponse(BaseModel):
    outcome: str
    status: str
    match_met: bool


class MatchingResponse(BaseModel):
    round_id: str
    already_matched: bool
    no_match: bool
    matches: list[dict[str, Any]]
    unmatched: list[str]
    unconfirmed: list[str]
