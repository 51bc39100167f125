from datetime import datetime, timedelta, timezone

import pytest

from roundmatch import engine
from roundmatch.errors import InvalidInput, InvalidStateTransition, NotFound

ROUND_START = datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc)
T = ROUND_START + timedelta(minutes=1)


def _matched(make_round, confirmed: int = 2):
    round_, _ = make_round(confirmed=confirmed)
    result = engine.run_matching(round_.id, ROUND_START, seed=8)
    return round_, result.matches[0]


def _partner_number(match_id: str, participant_id: str, now: datetime) -> tuple[list[int], int]:
    challenge = engine.get_confirmation_challenge(match_id, participant_id, now)
    partner = engine.get_confirmation_challenge(match_id, challenge.partner_id, now)
    return challenge.options, partner.own_number


def test_confirm_before_start_then_never_confirming_is_unconfirmed(make_round):
    round_, ids = make_round(confirmed=1, registered=1)
    before = ROUND_START - timedelta(minutes=10)

    assert engine.get_effective_status(round_.id, ids[0], before) == "confirmed"
    assert engine.get_effective_status(round_.id, ids[1], before) == "registered"
    assert engine.get_effective_status(round_.id, ids[1], ROUND_START + timedelta(minutes=5)) == "unconfirmed"
    assert engine.get_effective_status(round_.id, ids[0], ROUND_START + timedelta(minutes=5)) == "confirmed"


def test_confirm_attendance_is_idempotent(make_round):
    round_, ids = make_round(confirmed=1)
    reg = engine.confirm_attendance(round_.id, ids[0], ROUND_START - timedelta(minutes=5))
    assert reg.status == "confirmed"


def test_confirm_attendance_closes_at_round_start(make_round):
    round_, ids = make_round(registered=1)
    with pytest.raises(InvalidStateTransition):
        engine.confirm_attendance(round_.id, ids[0], ROUND_START)
    assert engine.get_effective_status(round_.id, ids[0], ROUND_START) == "unconfirmed"


def test_confirm_attendance_respects_confirmation_window(make_round):
    round_, ids = make_round(registered=1, confirmation_window_minutes=30)
    with pytest.raises(InvalidStateTransition):
        engine.confirm_attendance(round_.id, ids[0], ROUND_START - timedelta(minutes=31))
    reg = engine.confirm_attendance(round_.id, ids[0], ROUND_START - timedelta(minutes=30))
    assert reg.status == "confirmed"


def test_cancel_registration_removes_participant_from_matching(make_round):
    round_, ids = make_round(confirmed=3)
    engine.cancel_registration(round_.id, ids[0], ROUND_START - timedelta(minutes=5))

    assert [r.participant_id for r in engine.list_eligible_for_matching(round_.id)] == ids[1:]
    result = engine.run_matching(round_.id, ROUND_START)
    assert sorted(result.matches[0].member_ids) == ids[1:]


def test_cancelled_round_cancels_registrations_and_blocks_matching(make_round):
    round_, ids = make_round(confirmed=2)
    engine.cancel_round(round_.id, ROUND_START - timedelta(minutes=5))

    assert all(engine.get_effective_status(round_.id, pid, ROUND_START) == "cancelled" for pid in ids)
    assert engine.list_eligible_for_matching(round_.id) == []
    with pytest.raises(InvalidStateTransition):
        engine.run_matching(round_.id, ROUND_START)


def test_register_participant_is_idempotent_and_closes_at_start(make_round):
    round_, ids = make_round(registered=1)
    again = engine.register_participant(round_.id, ids[0], ROUND_START - timedelta(minutes=30))
    assert again.status == "registered"
    with pytest.raises(InvalidStateTransition):
        engine.register_participant(round_.id, "latecomer", ROUND_START)


def test_find_each_other_protocol(make_round):
    _, match = _matched(make_round)
    a, b = match.member_ids

    assert engine.acknowledge_match(match.id, a, T) == "walking-to-meeting-point"
    assert engine.acknowledge_match(match.id, a, T) == "walking-to-meeting-point"
    assert engine.confirm_arrival(match.id, a, T) == "waiting-for-meet-confirmation"
    assert engine.confirm_arrival(match.id, b, T) == "waiting-for-meet-confirmation"

    options, correct = _partner_number(match.id, a, T)
    assert correct in options
    wrong = next(o for o in options if o != correct)

    retry = engine.select_partner_number(match.id, a, wrong, T)
    assert retry.outcome == "retry"
    assert engine.get_effective_status(match.round_id, a, T) == "waiting-for-meet-confirmation"

    first = engine.select_partner_number(match.id, a, correct, T)
    assert first.succeeded and first.status == "checked-in" and not first.match_met
    assert engine.get_effective_status(match.round_id, b, T) == "waiting-for-meet-confirmation"
    assert engine.select_partner_number(match.id, a, correct, T).status == "checked-in"

    _, correct_b = _partner_number(match.id, b, T)
    second = engine.select_partner_number(match.id, b, correct_b, T)
    assert second.succeeded and second.status == "met" and second.match_met

    assert engine.get_effective_status(match.round_id, a, T) == "met"
    assert engine.get_effective_status(match.round_id, b, T) == "met"
    assert engine.get_effective_status(match.round_id, a, ROUND_START + timedelta(minutes=10)) == "completed"


def test_selection_requires_arrival_and_membership(make_round):
    _, match = _matched(make_round)
    a = match.member_ids[0]

    with pytest.raises(InvalidStateTransition):
        engine.select_partner_number(match.id, a, 42, T)
    with pytest.raises(InvalidInput):
        engine.select_partner_number(match.id, "stranger", 42, T)
    with pytest.raises(NotFound):
        engine.select_partner_number("no-such-match", a, 42, T)


def test_triple_is_met_only_after_every_member_checks_in(make_round):
    _, match = _matched(make_round, confirmed=3)
    assert len(match.members) == 3

    for pid in match.member_ids:
        engine.confirm_arrival(match.id, pid, T)
    outcomes = []
    for pid in match.member_ids:
        _, correct = _partner_number(match.id, pid, T)
        outcomes.append(engine.select_partner_number(match.id, pid, correct, T).match_met)

    assert outcomes == [False, False, True]
    assert all(engine.get_effective_status(match.round_id, pid, T) == "met" for pid in match.member_ids)


def test_retried_on_my_way_and_arrival_return_current_status(make_round):
    _, match = _matched(make_round)
    a, b = match.member_ids
    engine.confirm_arrival(match.id, a, T)

    assert engine.acknowledge_match(match.id, a, T) == "waiting-for-meet-confirmation"

    _, correct = _partner_number(match.id, a, T)
    engine.select_partner_number(match.id, a, correct, T)
    assert engine.acknowledge_match(match.id, a, T) == "checked-in"
    assert engine.confirm_arrival(match.id, a, T) == "checked-in"

    engine.confirm_arrival(match.id, b, T)
    _, correct_b = _partner_number(match.id, b, T)
    engine.select_partner_number(match.id, b, correct_b, T)
    assert engine.confirm_arrival(match.id, b, T) == "met"
    assert engine.acknowledge_match(match.id, b, T) == "met"
