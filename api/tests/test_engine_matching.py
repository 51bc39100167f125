from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from roundmatch import engine
from roundmatch.errors import InvalidStateTransition, NotFound
from roundmatch.store import MatchWriter

ROUND_START = datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc)


def _count(session_factory, table: str, round_id: str) -> int:
    with session_factory() as db:
        return db.execute(text(f"SELECT COUNT(*) FROM {table} WHERE round_id=:r"), {"r": round_id}).scalar()


def test_five_confirmed_with_overflow_forms_pair_and_triple(make_round):
    round_, ids = make_round(confirmed=5, target_group_size=2, max_group_size=3, allow_overflow_matching=True)

    result = engine.run_matching(round_.id, ROUND_START, seed=3)

    assert not result.already_matched
    assert sorted(len(m.members) for m in result.matches) == [2, 3]
    assert result.unmatched == []
    members = [pid for m in result.matches for pid in m.member_ids]
    assert sorted(members) == ids
    assert all(m.meeting_point_id for m in result.matches)
    assert len({m.meeting_point_id for m in result.matches}) == 2

    for match in result.matches:
        for pid in match.member_ids:
            view = engine.get_registration_view(round_.id, pid, ROUND_START)
            reg = view["registration"]
            assert reg["status"] == "matched"
            assert reg["match_id"] == match.id
            assert sorted(reg["partner_ids"]) == sorted(p for p in match.member_ids if p != pid)
            assert view["meeting_point"]["id"] == match.meeting_point_id


def test_running_matching_twice_returns_the_same_matches(make_round, session_factory):
    round_, _ = make_round(confirmed=4)

    first = engine.run_matching(round_.id, ROUND_START, seed=1)
    second = engine.run_matching(round_.id, ROUND_START + timedelta(minutes=1), seed=99)

    assert second.already_matched
    assert {m.id for m in second.matches} == {m.id for m in first.matches}
    assert {tuple(m.member_ids) for m in second.matches} == {tuple(m.member_ids) for m in first.matches}
    assert _count(session_factory, "round_match", round_.id) == 2
    assert _count(session_factory, "match_member", round_.id) == 4


def test_zero_eligible_reports_no_match_and_locks_round(make_round):
    round_, _ = make_round(registered=2)

    result = engine.run_matching(round_.id, ROUND_START)

    assert result.no_match
    assert result.matches == []
    assert sorted(result.unconfirmed) == ["p01", "p02"]
    assert engine.get_effective_status(round_.id, "p01", ROUND_START) == "unconfirmed"
    assert engine.run_matching(round_.id, ROUND_START).already_matched


def test_unconfirmed_registrations_are_excluded(make_round):
    round_, ids = make_round(confirmed=2, registered=1)

    result = engine.run_matching(round_.id, ROUND_START)

    assert len(result.matches) == 1
    assert sorted(result.matches[0].member_ids) == ids[:2]
    assert result.unconfirmed == [ids[2]]


def test_without_overflow_single_remainder_gets_no_match(make_round):
    round_, _ = make_round(confirmed=5, allow_overflow_matching=False)

    result = engine.run_matching(round_.id, ROUND_START, seed=11)

    assert [len(m.members) for m in result.matches] == [2, 2]
    assert len(result.unmatched) == 1
    leftover = result.unmatched[0]
    view = engine.get_registration_view(round_.id, leftover, ROUND_START)
    assert view["registration"]["status"] == "confirmed"
    assert view["no_match"] is True


def test_matching_before_match_instant_is_rejected(make_round):
    round_, _ = make_round(confirmed=2, match_offset_minutes=5)

    with pytest.raises(InvalidStateTransition):
        engine.run_matching(round_.id, ROUND_START - timedelta(minutes=6))
    result = engine.run_matching(round_.id, ROUND_START - timedelta(minutes=5))
    assert len(result.matches) == 1


def test_unknown_round_is_not_found(session_factory):
    with pytest.raises(NotFound):
        engine.run_matching("missing", ROUND_START)


def test_failed_group_write_rolls_back_everything(make_round, session_factory, monkeypatch):
    round_, ids = make_round(confirmed=4)
    real_assign = MatchWriter.assign_registration
    calls = {"n": 0}

    def flaky(self, match, participant_id, now):
        calls["n"] += 1
        if calls["n"] == 3:
            raise RuntimeError("store went away mid-write")
        return real_assign(self, match, participant_id, now)

    monkeypatch.setattr(MatchWriter, "assign_registration", flaky)
    with pytest.raises(RuntimeError):
        engine.run_matching(round_.id, ROUND_START, seed=5)

    assert _count(session_factory, "round_match", round_.id) == 0
    assert _count(session_factory, "match_member", round_.id) == 0
    with session_factory() as db:
        assert db.execute(text("SELECT COUNT(*) FROM matching_lock")).scalar() == 0
    assert all(engine.get_effective_status(round_.id, pid, ROUND_START) == "confirmed" for pid in ids)

    monkeypatch.setattr(MatchWriter, "assign_registration", real_assign)
    retry = engine.run_matching(round_.id, ROUND_START, seed=5)
    assert not retry.already_matched
    assert len(retry.matches) == 2


def test_run_due_matching_skips_cancelled_and_future_rounds(make_round):
    due, _ = make_round(confirmed=2)
    cancelled, _ = make_round(confirmed=2)
    engine.cancel_round(cancelled.id, ROUND_START - timedelta(minutes=30))

    assert engine.run_due_matching(ROUND_START - timedelta(minutes=1)) == []
    results = engine.run_due_matching(ROUND_START)
    assert [r.round_id for r in results] == [due.id]


def test_repeat_meetings_avoided_across_rounds_of_a_session(make_round):
    first, ids = make_round(confirmed=4)
    first_result = engine.run_matching(first.id, ROUND_START, seed=2)
    met_before = {frozenset(m.member_ids) for m in first_result.matches}

    second = engine.create_round(first.session_id, ROUND_START + timedelta(minutes=30), ROUND_START)
    for pid in ids:
        engine.register_participant(second.id, pid, ROUND_START + timedelta(minutes=15))
        engine.confirm_attendance(second.id, pid, ROUND_START + timedelta(minutes=20))

    second_result = engine.run_matching(second.id, ROUND_START + timedelta(minutes=30), seed=2)
    assert {frozenset(m.member_ids) for m in second_result.matches}.isdisjoint(met_before)


def test_sweep_persists_effective_statuses(make_round):
    round_, ids = make_round(confirmed=1, registered=2)

    swept = engine.sweep_round_statuses(round_.id, ROUND_START + timedelta(minutes=1))

    assert sorted(row["participant_id"] for row in swept["updated"]) == ids[1:]
    assert all(row["to"] == "unconfirmed" for row in swept["updated"])
    assert engine.sweep_round_statuses(round_.id, ROUND_START + timedelta(minutes=2))["updated"] == []


def test_round_summary_reports_matches_and_counts(make_round):
    round_, _ = make_round(confirmed=3, registered=1)
    engine.run_matching(round_.id, ROUND_START, seed=4)

    summary = engine.get_round_summary(round_.id, ROUND_START)

    assert summary["matched"] is True
    assert summary["status_counts"] == {"matched": 3, "unconfirmed": 1}
    assert len(summary["matches"]) == 1
    assert len(summary["matches"][0]["members"]) == 3
    assert summary["matches"][0]["meeting_point"] == "Point 1"


def test_run_that_loses_the_lock_race_returns_the_winning_matches(make_round, session_factory, monkeypatch):
    round_, _ = make_round(confirmed=4)
    real_insert_lock = MatchWriter.insert_lock
    state = {"raced": False}

    def lock_after_concurrent_run(self, round_arg, now, match_count, unmatched_count):
        if not state["raced"]:
            state["raced"] = True
            state["winner"] = engine.run_matching(round_.id, now, seed=1)
        return real_insert_lock(self, round_arg, now, match_count=match_count, unmatched_count=unmatched_count)

    monkeypatch.setattr(MatchWriter, "insert_lock", lock_after_concurrent_run)

    loser = engine.run_matching(round_.id, ROUND_START, seed=2)

    winner = state["winner"]
    assert not winner.already_matched
    assert loser.already_matched
    assert {m.id for m in loser.matches} == {m.id for m in winner.matches}
    assert _count(session_factory, "round_match", round_.id) == 2
    assert _count(session_factory, "match_member", round_.id) == 4


def _teams_round(matching_type: str, teams: dict[str, str]) -> str:
    created = ROUND_START - timedelta(days=1)
    session = engine.create_session("Team mixer", created, [{"name": "Hall"}], matching_type=matching_type)
    round_ = engine.create_round(session["id"], ROUND_START, created)
    for pid, team in teams.items():
        engine.register_participant(round_.id, pid, ROUND_START - timedelta(hours=1), team=team)
        engine.confirm_attendance(round_.id, pid, ROUND_START - timedelta(minutes=5))
    return round_.id


@pytest.mark.parametrize("seed", [1, 2, 3, 4])
def test_across_teams_session_pairs_different_teams(session_factory, seed):
    teams = {"ana": "red", "ben": "red", "cy": "blue", "dee": "blue"}
    round_id = _teams_round("across-teams", teams)

    result = engine.run_matching(round_id, ROUND_START, seed=seed)

    assert len(result.matches) == 2
    assert all({teams[pid] for pid in m.member_ids} == {"red", "blue"} for m in result.matches)


@pytest.mark.parametrize("seed", [1, 2, 3, 4])
def test_within_teams_session_pairs_teammates(session_factory, seed):
    teams = {"ana": "red", "ben": "red", "cy": "blue", "dee": "blue"}
    round_id = _teams_round("within-teams", teams)

    result = engine.run_matching(round_id, ROUND_START, seed=seed)

    assert sorted(sorted(m.member_ids) for m in result.matches) == [["ana", "ben"], ["cy", "dee"]]
