from datetime import datetime, timedelta

from ..domain import (
    CANCELLED,
    CHECKED_IN,
    COMPLETED,
    COMPLETION_ON_CONTACT_DECISIONS,
    CONFIRMED,
    IN_MATCH_STATUSES,
    MATCHED,
    MET,
    MISSED,
    REGISTERED,
    TERMINAL_STATUSES,
    UNCONFIRMED,
    WAITING,
    WALKING,
    Registration,
    Round,
    StatusPolicy,
)
from ..errors import InvalidInput, InvalidStateTransition

# action -> (statuses it may start from, resulting status)
ACTION_TRANSITIONS: dict[str, tuple[frozenset[str], str]] = {
    "confirm": (frozenset({REGISTERED}), CONFIRMED),
    "cancel": (frozenset({REGISTERED, CONFIRMED}), CANCELLED),
    "acknowledge": (frozenset({MATCHED}), WALKING),
    "arrive": (frozenset({MATCHED, WALKING}), WAITING),
    "check_in": (frozenset({WAITING}), CHECKED_IN),
    "meet": (frozenset({CHECKED_IN}), MET),
}


def effective_status(registration: Registration, round_: Round, now: datetime, policy: StatusPolicy | None = None) -> str:
    policy = policy or StatusPolicy()
    current = registration.status

    if current in TERMINAL_STATUSES:
        return current

    if round_.is_cancelled:
        return CANCELLED

    if current == REGISTERED:
        return UNCONFIRMED if now >= round_.start_time else REGISTERED

    if current == MET:
        if policy.completion_trigger == COMPLETION_ON_CONTACT_DECISIONS:
            return COMPLETED if registration.contact_submitted_at is not None else MET
        return COMPLETED if now >= round_.end_time else MET

    if current in IN_MATCH_STATUSES and policy.stale_match_minutes is not None:
        if now >= round_.end_time + timedelta(minutes=policy.stale_match_minutes):
            return MISSED

    return current


def transition_status(current: str, action: str) -> str:
    if action not in ACTION_TRANSITIONS:
        raise InvalidInput(f"Unknown action '{action}'")

    allowed, target = ACTION_TRANSITIONS[action]
    if current == target:
        return current
    if current not in allowed:
        raise InvalidStateTransition(current, action)
    return target
