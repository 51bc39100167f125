"""
Find-each-other protocol.

Every match member gets a short identification number when the match is
created. At the meeting point a member is asked to pick the number of the
partner they must identify (the next member in ring order) from a small set
of candidates; a correct pick checks them in. Numbers and decoys are derived
from the match and participant ids, so repeated reads show the same challenge.
"""
from __future__ import annotations

import hashlib
import random
from collections.abc import Sequence

from ..config import CHALLENGE_DECOYS, IDENTIFICATION_NUMBER_MAX, IDENTIFICATION_NUMBER_MIN
from ..domain import (
    MEMBER_AWAITING_SELECTION,
    MEMBER_CHECKED_IN,
    MEMBER_PENDING,
    Challenge,
    Match,
)
from ..errors import InvalidInput, InvalidStateTransition

MEMBER_TRANSITIONS: dict[str, tuple[str, str]] = {
    "arrive": (MEMBER_PENDING, MEMBER_AWAITING_SELECTION),
    "select": (MEMBER_AWAITING_SELECTION, MEMBER_CHECKED_IN),
}


def _seed(*parts: str) -> int:
    digest = hashlib.sha256(":".join(parts).encode("utf-8")).hexdigest()
    return int(digest[:16], 16)


def _number_range() -> list[int]:
    return list(range(IDENTIFICATION_NUMBER_MIN, IDENTIFICATION_NUMBER_MAX + 1))


def identification_numbers(match_id: str, member_ids: Sequence[str]) -> dict[str, int]:
    numbers = random.Random(_seed(match_id)).sample(_number_range(), len(member_ids))
    return dict(zip(member_ids, numbers))


def partner_to_identify(member_ids: Sequence[str], participant_id: str) -> str:
    if participant_id not in member_ids:
        raise InvalidInput(f"Participant {participant_id} is not a member of this match")
    idx = list(member_ids).index(participant_id)
    return member_ids[(idx + 1) % len(member_ids)]


def build_challenge(match: Match, participant_id: str, decoys: int = CHALLENGE_DECOYS) -> Challenge:
    me = match.member(participant_id)
    if me is None:
        raise InvalidInput(f"Participant {participant_id} is not a member of match {match.id}")

    partner_id = partner_to_identify(match.member_ids, participant_id)
    genuine = match.member(partner_id).identification_number

    taken = {m.identification_number for m in match.members}
    candidates = [n for n in _number_range() if n not in taken]
    rng = random.Random(_seed(match.id, participant_id, "decoys"))
    picked = rng.sample(candidates, min(decoys, len(candidates)))

    return Challenge(
        match_id=match.id,
        own_number=me.identification_number,
        partner_id=partner_id,
        options=sorted([genuine, *picked]),
    )


def is_correct_selection(match: Match, participant_id: str, selected_value: int) -> bool:
    partner_id = partner_to_identify(match.member_ids, participant_id)
    return match.member(partner_id).identification_number == int(selected_value)


def advance_member_state(current: str, step: str) -> str:
    start, target = MEMBER_TRANSITIONS[step]
    if current == target:
        return current
    if current != start:
        raise InvalidStateTransition(current, step)
    return target


def all_checked_in(match: Match) -> bool:
    return bool(match.members) and all(m.confirmation_state == MEMBER_CHECKED_IN for m in match.members)
