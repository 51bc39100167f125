"""Domain records shared by the round engine services and the store."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

REGISTERED = "registered"
CONFIRMED = "confirmed"
UNCONFIRMED = "unconfirmed"
MATCHED = "matched"
WALKING = "walking-to-meeting-point"
WAITING = "waiting-for-meet-confirmation"
CHECKED_IN = "checked-in"
MET = "met"
COMPLETED = "completed"
CANCELLED = "cancelled"
MISSED = "missed"

TERMINAL_STATUSES = frozenset({UNCONFIRMED, COMPLETED, CANCELLED, MISSED})
IN_MATCH_STATUSES = (MATCHED, WALKING, WAITING, CHECKED_IN)
STATUS_ORDER = (REGISTERED, CONFIRMED, MATCHED, WALKING, WAITING, CHECKED_IN, MET, COMPLETED)

# Per-member tag of the find-each-other protocol.
MEMBER_PENDING = "pending"
MEMBER_AWAITING_SELECTION = "awaiting-selection"
MEMBER_CHECKED_IN = "checked-in"

ROUND_SCHEDULED = "scheduled"
ROUND_CANCELLED = "cancelled"

COMPLETION_ON_ROUND_END = "round_end"
COMPLETION_ON_CONTACT_DECISIONS = "contact_decisions"

# Session team rule applied when scoring candidate partners.
MATCH_ACROSS_TEAMS = "across-teams"
MATCH_WITHIN_TEAMS = "within-teams"
MATCHING_TYPES = (MATCH_ACROSS_TEAMS, MATCH_WITHIN_TEAMS)


@dataclass(frozen=True)
class Round:
    id: str
    session_id: str
    start_time: datetime
    duration_minutes: int
    target_group_size: int = 2
    max_group_size: int = 3
    allow_overflow_matching: bool = True
    confirmation_window_minutes: int | None = None
    match_offset_minutes: int = 0
    status: str = ROUND_SCHEDULED
    name: str = ""

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)

    @property
    def match_instant(self) -> datetime:
        return self.start_time - timedelta(minutes=self.match_offset_minutes)

    @property
    def confirmation_opens_at(self) -> datetime | None:
        if self.confirmation_window_minutes is None:
            return None
        return self.start_time - timedelta(minutes=self.confirmation_window_minutes)

    @property
    def is_cancelled(self) -> bool:
        return self.status == ROUND_CANCELLED


@dataclass(frozen=True)
class ShareDecision:
    share: bool
    decided_at: datetime


@dataclass
class Registration:
    participant_id: str
    session_id: str
    round_id: str
    status: str
    registered_at: datetime
    confirmed_at: datetime | None = None
    matched_at: datetime | None = None
    arrived_at: datetime | None = None
    checked_in_at: datetime | None = None
    met_at: datetime | None = None
    status_updated_at: datetime | None = None
    match_id: str | None = None
    meeting_point_id: str | None = None
    partner_ids: list[str] = field(default_factory=list)
    share_decisions: dict[str, ShareDecision] = field(default_factory=dict)
    feedback_tags: dict[str, list[str]] = field(default_factory=dict)
    contact_submitted_at: datetime | None = None
    no_match_reason: str | None = None


@dataclass(frozen=True)
class MeetingPoint:
    id: str
    session_id: str
    name: str
    image_url: str | None = None
    position: int = 0


@dataclass(frozen=True)
class ParticipantProfile:
    team: str | None = None
    topics: frozenset[str] = frozenset()


@dataclass
class MatchMember:
    participant_id: str
    position: int
    identification_number: int
    confirmation_state: str = MEMBER_PENDING
    arrived_at: datetime | None = None
    checked_in_at: datetime | None = None


@dataclass
class Match:
    id: str
    session_id: str
    round_id: str
    meeting_point_id: str | None
    created_at: datetime
    members: list[MatchMember] = field(default_factory=list)

    @property
    def member_ids(self) -> list[str]:
        return [m.participant_id for m in sorted(self.members, key=lambda m: m.position)]

    def member(self, participant_id: str) -> MatchMember | None:
        for m in self.members:
            if m.participant_id == participant_id:
                return m
        return None


@dataclass(frozen=True)
class StatusPolicy:
    completion_trigger: str = COMPLETION_ON_ROUND_END
    stale_match_minutes: int | None = None


@dataclass
class MatchingResult:
    round_id: str
    matches: list[Match] = field(default_factory=list)
    unmatched: list[str] = field(default_factory=list)
    unconfirmed: list[str] = field(default_factory=list)
    already_matched: bool = False

    @property
    def no_match(self) -> bool:
        return not self.matches


@dataclass(frozen=True)
class Challenge:
    match_id: str
    own_number: int
    partner_id: str
    options: list[int]


@dataclass(frozen=True)
class SelectionResult:
    outcome: str  # "success" | "retry"
    status: str
    match_met: bool = False

    @property
    def succeeded(self) -> bool:
        return self.outcome == "success"


@dataclass(frozen=True)
class SharedContact:
    partner_id: str
    match_id: str
    round_id: str
    shared_at: datetime
    contact: dict[str, Any] = field(default_factory=dict)
