from __future__ import annotations

import random
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence

from ..config import MIN_GROUP_SIZE
from ..domain import MATCH_ACROSS_TEAMS, MATCH_WITHIN_TEAMS, MATCHING_TYPES, MeetingPoint, ParticipantProfile
from ..errors import InvalidInput

MEETING_MEMORY_POINTS = 30
TEAM_RULE_POINTS = 20
SHARED_TOPIC_POINTS = 10

_NO_PROFILE = ParticipantProfile()


def validate_group_sizes(target_group_size: int, max_group_size: int, min_group_size: int = MIN_GROUP_SIZE) -> None:
    if target_group_size < min_group_size:
        raise InvalidInput(f"target_group_size must be at least {min_group_size}")
    if max_group_size < target_group_size:
        raise InvalidInput("max_group_size must be greater than or equal to target_group_size")


def validate_matching_type(matching_type: str) -> None:
    if matching_type not in MATCHING_TYPES:
        raise InvalidInput(f"matching_type must be one of {', '.join(MATCHING_TYPES)}")


def build_meeting_history(past_groups: Iterable[Sequence[str]]) -> dict[str, set[str]]:
    history: dict[str, set[str]] = defaultdict(set)
    for group in past_groups:
        members = list(group)
        for i, a in enumerate(members):
            for b in members[i + 1:]:
                history[a].add(b)
                history[b].add(a)
    return dict(history)


def order_participants(participant_ids: Iterable[str], seed: int | None = None) -> list[str]:
    # Sorting first makes the shuffle independent of the order rows came back from the store.
    ordered = sorted(set(participant_ids))
    random.Random(seed).shuffle(ordered)
    return ordered


def pairing_score(
    a: str,
    b: str,
    history: Mapping[str, set[str]],
    profiles: Mapping[str, ParticipantProfile],
    matching_type: str = MATCH_ACROSS_TEAMS,
) -> int:
    """Desirability of putting ``a`` and ``b`` in the same group.

    30 points when they have not met earlier in the session, 20 when the
    session team rule holds (different teams for across-teams, the same team
    for within-teams; both teams must be known), 10 when they share a topic.
    """
    score = 0
    if b not in (history.get(a) or set()):
        score += MEETING_MEMORY_POINTS

    pa = profiles.get(a, _NO_PROFILE)
    pb = profiles.get(b, _NO_PROFILE)
    if pa.team and pb.team:
        if matching_type == MATCH_ACROSS_TEAMS and pa.team != pb.team:
            score += TEAM_RULE_POINTS
        elif matching_type == MATCH_WITHIN_TEAMS and pa.team == pb.team:
            score += TEAM_RULE_POINTS

    if pa.topics & pb.topics:
        score += SHARED_TOPIC_POINTS
    return score


def form_groups(
    ordered: Sequence[str],
    target_group_size: int,
    history: Mapping[str, set[str]] | None = None,
    profiles: Mapping[str, ParticipantProfile] | None = None,
    matching_type: str = MATCH_ACROSS_TEAMS,
) -> tuple[list[list[str]], list[str]]:
    history = history or {}
    profiles = profiles or {}
    pool = list(ordered)
    groups: list[list[str]] = []

    def fit(candidate: str, group: Sequence[str]) -> int:
        return sum(pairing_score(candidate, member, history, profiles, matching_type) for member in group)

    while len(pool) >= target_group_size:
        group = [pool.pop(0)]
        while len(group) < target_group_size:
            # Highest score wins; ties keep shuffled order.
            best = min(range(len(pool)), key=lambda i: (-fit(pool[i], group), i))
            group.append(pool.pop(best))
        groups.append(group)

    return groups, pool


def distribute_remainder(
    groups: list[list[str]],
    remainder: Sequence[str],
    *,
    max_group_size: int,
    allow_overflow: bool,
    min_group_size: int = MIN_GROUP_SIZE,
) -> tuple[list[list[str]], list[str]]:
    leftover = list(remainder)

    if allow_overflow:
        while leftover:
            open_groups = [g for g in groups if len(g) < max_group_size]
            if not open_groups:
                break
            smallest = min(open_groups, key=len)
            smallest.append(leftover.pop(0))

    if len(leftover) >= min_group_size:
        groups.append(leftover)
        return groups, []
    return groups, leftover


def partition_participants(
    participant_ids: Iterable[str],
    *,
    target_group_size: int,
    max_group_size: int,
    allow_overflow: bool,
    seed: int | None = None,
    history: Mapping[str, set[str]] | None = None,
    profiles: Mapping[str, ParticipantProfile] | None = None,
    matching_type: str = MATCH_ACROSS_TEAMS,
    min_group_size: int = MIN_GROUP_SIZE,
) -> tuple[list[list[str]], list[str]]:
    """Split participants into disjoint groups of min_group_size..max_group_size.

    Returns ``(groups, unmatched)``. Groups of exactly ``target_group_size`` are
    formed first, each filled with the best-scoring candidates; the remainder
    is folded into existing groups when overflow is allowed, forms its own
    group when it is large enough, and is otherwise left unmatched.
    """
    validate_group_sizes(target_group_size, max_group_size, min_group_size)
    ordered = order_participants(participant_ids, seed)
    groups, remainder = form_groups(ordered, target_group_size, history, profiles, matching_type)
    return distribute_remainder(
        groups,
        remainder,
        max_group_size=max_group_size,
        allow_overflow=allow_overflow,
        min_group_size=min_group_size,
    )


def assign_meeting_points(group_count: int, pool: Sequence[MeetingPoint]) -> list[str | None]:
    if not pool:
        return [None] * group_count
    ordered = sorted(pool, key=lambda p: (p.position, p.id))
    return [ordered[i % len(ordered)].id for i in range(group_count)]
