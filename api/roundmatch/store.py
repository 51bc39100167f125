"""
Registration store access, split by write authority.

Each class wraps an open SQLAlchemy session and exposes only the statements
its owner may run:

- RegistrationReader: reads only.
- SetupWriter: sessions, rounds, meeting points, participants, sign-ups.
- StatusWriter: the registration status column (lazy write-back, sweep, cancel).
- MatchWriter: matching lock, matches, members and the match fields of a registration.
- ConfirmationWriter: statuses between confirmed and met plus member confirmation state.
- ContactWriter: share decisions and feedback tags.

None of them commit; the caller owns the transaction.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import text

from .domain import (
    CHECKED_IN,
    CONFIRMED,
    MATCHED,
    MEMBER_CHECKED_IN,
    MET,
    REGISTERED,
    ROUND_CANCELLED,
    WAITING,
    WALKING,
    Match,
    MatchMember,
    MeetingPoint,
    ParticipantProfile,
    Registration,
    Round,
    ShareDecision,
)
from .errors import InvalidStateTransition


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_ts(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def _row_to_round(row: dict[str, Any]) -> Round:
    window = row.get("confirmation_window_minutes")
    return Round(
        id=str(row["id"]),
        session_id=str(row["session_id"]),
        name=str(row.get("name") or ""),
        start_time=parse_ts(row["start_time"]),
        duration_minutes=int(row["duration_minutes"]),
        confirmation_window_minutes=int(window) if window is not None else None,
        match_offset_minutes=int(row.get("match_offset_minutes") or 0),
        target_group_size=int(row["target_group_size"]),
        max_group_size=int(row["max_group_size"]),
        allow_overflow_matching=bool(row["allow_overflow_matching"]),
        status=str(row["status"]),
    )


def _row_to_registration(row: dict[str, Any]) -> Registration:
    decisions = {
        str(pid): ShareDecision(share=bool(d.get("share")), decided_at=parse_ts(d.get("decided_at")))
        for pid, d in (_json(row.get("share_decisions"), {}) or {}).items()
    }
    return Registration(
        participant_id=str(row["participant_id"]),
        session_id=str(row["session_id"]),
        round_id=str(row["round_id"]),
        status=str(row["status"]),
        registered_at=parse_ts(row["registered_at"]),
        confirmed_at=parse_ts(row.get("confirmed_at")),
        matched_at=parse_ts(row.get("matched_at")),
        arrived_at=parse_ts(row.get("arrived_at")),
        checked_in_at=parse_ts(row.get("checked_in_at")),
        met_at=parse_ts(row.get("met_at")),
        status_updated_at=parse_ts(row.get("status_updated_at")),
        match_id=row.get("match_id"),
        meeting_point_id=row.get("meeting_point_id"),
        partner_ids=[str(p) for p in _json(row.get("partner_ids"), [])],
        share_decisions=decisions,
        feedback_tags={str(k): list(v) for k, v in (_json(row.get("feedback_tags"), {}) or {}).items()},
        contact_submitted_at=parse_ts(row.get("contact_submitted_at")),
        no_match_reason=row.get("no_match_reason"),
    )


def _row_to_meeting_point(row: dict[str, Any]) -> MeetingPoint:
    return MeetingPoint(
        id=str(row["id"]),
        session_id=str(row["session_id"]),
        name=str(row["name"]),
        image_url=row.get("image_url"),
        position=int(row.get("position") or 0),
    )


def _row_to_member(row: dict[str, Any]) -> MatchMember:
    return MatchMember(
        participant_id=str(row["participant_id"]),
        position=int(row["position"]),
        identification_number=int(row["identification_number"]),
        confirmation_state=str(row["confirmation_state"]),
        arrived_at=parse_ts(row.get("arrived_at")),
        checked_in_at=parse_ts(row.get("checked_in_at")),
    )


class _StoreAccess:
    def __init__(self, db):
        self.db = db


class RegistrationReader(_StoreAccess):
    def get_round(self, round_id: str) -> Round | None:
        row = self.db.execute(text("SELECT * FROM event_round WHERE id=:id"), {"id": round_id}).mappings().first()
        return _row_to_round(dict(row)) if row else None

    def list_scheduled_rounds_without_lock(self) -> list[Round]:
        rows = self.db.execute(
            text(
                """
                SELECT r.*
                FROM event_round r
                LEFT JOIN matching_lock l ON l.round_id = r.id
                WHERE r.status = 'scheduled'
                  AND l.round_id IS NULL
                ORDER BY r.start_time
                """
            )
        ).mappings().all()
        return [_row_to_round(dict(r)) for r in rows]

    def session_exists(self, session_id: str) -> bool:
        row = self.db.execute(text("SELECT 1 FROM event_session WHERE id=:id"), {"id": session_id}).first()
        return row is not None

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        row = self.db.execute(
            text("SELECT id, name, matching_type, ice_breakers FROM event_session WHERE id=:id"),
            {"id": session_id},
        ).mappings().first()
        if not row:
            return None
        out = dict(row)
        out["ice_breakers"] = [str(q) for q in _json(out.get("ice_breakers"), [])]
        return out

    def list_round_profiles(self, round_id: str) -> dict[str, ParticipantProfile]:
        rows = self.db.execute(
            text(
                """
                SELECT p.id, p.team, p.topics
                FROM participant p
                JOIN registration r ON r.participant_id = p.id
                WHERE r.round_id=:round_id
                """
            ),
            {"round_id": round_id},
        ).mappings().all()
        return {
            str(r["id"]): ParticipantProfile(
                team=r["team"] or None,
                topics=frozenset(str(t) for t in _json(r["topics"], [])),
            )
            for r in rows
        }

    def get_registration(self, round_id: str, participant_id: str) -> Registration | None:
        row = self.db.execute(
            text("SELECT * FROM registration WHERE round_id=:round_id AND participant_id=:participant_id"),
            {"round_id": round_id, "participant_id": participant_id},
        ).mappings().first()
        return _row_to_registration(dict(row)) if row else None

    def list_round_registrations(self, round_id: str, status: str | None = None) -> list[Registration]:
        rows = self.db.execute(
            text(
                """
                SELECT * FROM registration
                WHERE round_id=:round_id
                  AND (:status IS NULL OR status=:status)
                ORDER BY registered_at, participant_id
                """
            ),
            {"round_id": round_id, "status": status},
        ).mappings().all()
        return [_row_to_registration(dict(r)) for r in rows]

    def list_participant_registrations(self, participant_id: str) -> list[Registration]:
        rows = self.db.execute(
            text("SELECT * FROM registration WHERE participant_id=:participant_id ORDER BY registered_at"),
            {"participant_id": participant_id},
        ).mappings().all()
        return [_row_to_registration(dict(r)) for r in rows]

    def list_meeting_points(self, session_id: str) -> list[MeetingPoint]:
        rows = self.db.execute(
            text("SELECT * FROM meeting_point WHERE session_id=:session_id ORDER BY position, id"),
            {"session_id": session_id},
        ).mappings().all()
        return [_row_to_meeting_point(dict(r)) for r in rows]

    def get_meeting_point(self, meeting_point_id: str | None) -> MeetingPoint | None:
        if not meeting_point_id:
            return None
        row = self.db.execute(text("SELECT * FROM meeting_point WHERE id=:id"), {"id": meeting_point_id}).mappings().first()
        return _row_to_meeting_point(dict(row)) if row else None

    def _members(self, match_id: str) -> list[MatchMember]:
        rows = self.db.execute(
            text("SELECT * FROM match_member WHERE match_id=:match_id ORDER BY position"),
            {"match_id": match_id},
        ).mappings().all()
        return [_row_to_member(dict(r)) for r in rows]

    def get_match(self, match_id: str) -> Match | None:
        row = self.db.execute(text("SELECT * FROM round_match WHERE id=:id"), {"id": match_id}).mappings().first()
        if not row:
            return None
        return Match(
            id=str(row["id"]),
            session_id=str(row["session_id"]),
            round_id=str(row["round_id"]),
            meeting_point_id=row.get("meeting_point_id"),
            created_at=parse_ts(row["created_at"]),
            members=self._members(str(row["id"])),
        )

    def list_round_matches(self, round_id: str) -> list[Match]:
        rows = self.db.execute(
            text("SELECT id FROM round_match WHERE round_id=:round_id ORDER BY created_at, id"),
            {"round_id": round_id},
        ).mappings().all()
        return [m for m in (self.get_match(str(r["id"])) for r in rows) if m is not None]

    def get_matching_lock(self, round_id: str) -> dict[str, Any] | None:
        row = self.db.execute(text("SELECT * FROM matching_lock WHERE round_id=:round_id"), {"round_id": round_id}).mappings().first()
        return dict(row) if row else None

    def list_session_groups(self, session_id: str, exclude_round_id: str | None = None) -> list[list[str]]:
        rows = self.db.execute(
            text(
                """
                SELECT mm.match_id, mm.participant_id
                FROM match_member mm
                JOIN round_match rm ON rm.id = mm.match_id
                WHERE rm.session_id=:session_id
                  AND (:exclude_round_id IS NULL OR rm.round_id <> :exclude_round_id)
                ORDER BY mm.match_id, mm.position
                """
            ),
            {"session_id": session_id, "exclude_round_id": exclude_round_id},
        ).mappings().all()
        groups: dict[str, list[str]] = {}
        for r in rows:
            groups.setdefault(str(r["match_id"]), []).append(str(r["participant_id"]))
        return list(groups.values())

    def get_participant(self, participant_id: str) -> dict[str, Any] | None:
        row = self.db.execute(
            text("SELECT id, display_name, email, phone FROM participant WHERE id=:id"),
            {"id": participant_id},
        ).mappings().first()
        return dict(row) if row else None


class SetupWriter(_StoreAccess):
    def insert_session(
        self,
        session_id: str,
        name: str,
        now: datetime,
        matching_type: str,
        ice_breakers: list[str],
    ) -> None:
        self.db.execute(
            text(
                """
                INSERT INTO event_session (id, name, matching_type, ice_breakers, created_at)
                VALUES (:id, :name, :matching_type, :ice_breakers, :created_at)
                """
            ),
            {
                "id": session_id,
                "name": name,
                "matching_type": matching_type,
                "ice_breakers": json.dumps(ice_breakers),
                "created_at": to_iso(now),
            },
        )

    def insert_meeting_point(self, point: MeetingPoint) -> None:
        self.db.execute(
            text(
                """
                INSERT INTO meeting_point (id, session_id, name, image_url, position)
                VALUES (:id, :session_id, :name, :image_url, :position)
                """
            ),
            {
                "id": point.id,
                "session_id": point.session_id,
                "name": point.name,
                "image_url": point.image_url,
                "position": point.position,
            },
        )

    def insert_round(self, round_: Round, now: datetime) -> None:
        self.db.execute(
            text(
                """
                INSERT INTO event_round (
                  id, session_id, name, start_time, duration_minutes, confirmation_window_minutes,
                  match_offset_minutes, target_group_size, max_group_size, allow_overflow_matching,
                  status, created_at
                )
                VALUES (
                  :id, :session_id, :name, :start_time, :duration_minutes, :confirmation_window_minutes,
                  :match_offset_minutes, :target_group_size, :max_group_size, :allow_overflow_matching,
                  :status, :created_at
                )
                """
            ),
            {
                "id": round_.id,
                "session_id": round_.session_id,
                "name": round_.name,
                "start_time": to_iso(round_.start_time),
                "duration_minutes": round_.duration_minutes,
                "confirmation_window_minutes": round_.confirmation_window_minutes,
                "match_offset_minutes": round_.match_offset_minutes,
                "target_group_size": round_.target_group_size,
                "max_group_size": round_.max_group_size,
                "allow_overflow_matching": round_.allow_overflow_matching,
                "status": round_.status,
                "created_at": to_iso(now),
            },
        )

    def cancel_round(self, round_id: str) -> None:
        self.db.execute(
            text("UPDATE event_round SET status=:status WHERE id=:id"),
            {"status": ROUND_CANCELLED, "id": round_id},
        )

    def upsert_participant(
        self,
        participant_id: str,
        now: datetime,
        display_name: str | None = None,
        email: str | None = None,
        phone: str | None = None,
        team: str | None = None,
        topics: list[str] | None = None,
    ) -> None:
        self.db.execute(
            text(
                """
                INSERT INTO participant (id, display_name, email, phone, team, topics, created_at)
                VALUES (:id, :display_name, :email, :phone, :team, COALESCE(:topics, '[]'), :created_at)
                ON CONFLICT (id) DO UPDATE SET
                  display_name = COALESCE(EXCLUDED.display_name, participant.display_name),
                  email = COALESCE(EXCLUDED.email, participant.email),
                  phone = COALESCE(EXCLUDED.phone, participant.phone),
                  team = COALESCE(EXCLUDED.team, participant.team),
                  topics = COALESCE(:topics, participant.topics)
                """
            ),
            {
                "id": participant_id,
                "display_name": display_name,
                "email": email,
                "phone": phone,
                "team": team,
                "topics": json.dumps(topics) if topics is not None else None,
                "created_at": to_iso(now),
            },
        )

    def insert_registration(self, round_: Round, participant_id: str, now: datetime) -> None:
        self.db.execute(
            text(
                """
                INSERT INTO registration (session_id, round_id, participant_id, status, registered_at, status_updated_at)
                VALUES (:session_id, :round_id, :participant_id, :status, :now, :now)
                ON CONFLICT (session_id, round_id, participant_id) DO NOTHING
                """
            ),
            {
                "session_id": round_.session_id,
                "round_id": round_.id,
                "participant_id": participant_id,
                "status": REGISTERED,
                "now": to_iso(now),
            },
        )


class StatusWriter(_StoreAccess):
    def set_status(self, registration: Registration, status: str, now: datetime) -> None:
        self.db.execute(
            text(
                """
                UPDATE registration
                SET status=:status, status_updated_at=:now
                WHERE round_id=:round_id AND participant_id=:participant_id
                """
            ),
            {
                "status": status,
                "now": to_iso(now),
                "round_id": registration.round_id,
                "participant_id": registration.participant_id,
            },
        )


class MatchWriter(_StoreAccess):
    def insert_lock(self, round_: Round, now: datetime, match_count: int, unmatched_count: int) -> None:
        # Primary key on round_id: a concurrent or repeated run fails here with IntegrityError.
        self.db.execute(
            text(
                """
                INSERT INTO matching_lock (round_id, session_id, completed_at, match_count, unmatched_count)
                VALUES (:round_id, :session_id, :completed_at, :match_count, :unmatched_count)
                """
            ),
            {
                "round_id": round_.id,
                "session_id": round_.session_id,
                "completed_at": to_iso(now),
                "match_count": match_count,
                "unmatched_count": unmatched_count,
            },
        )

    def insert_match(self, match: Match) -> None:
        self.db.execute(
            text(
                """
                INSERT INTO round_match (id, session_id, round_id, meeting_point_id, created_at)
                VALUES (:id, :session_id, :round_id, :meeting_point_id, :created_at)
                """
            ),
            {
                "id": match.id,
                "session_id": match.session_id,
                "round_id": match.round_id,
                "meeting_point_id": match.meeting_point_id,
                "created_at": to_iso(match.created_at),
            },
        )
        for member in match.members:
            self.db.execute(
                text(
                    """
                    INSERT INTO match_member (match_id, round_id, participant_id, position, identification_number, confirmation_state)
                    VALUES (:match_id, :round_id, :participant_id, :position, :identification_number, :confirmation_state)
                    """
                ),
                {
                    "match_id": match.id,
                    "round_id": match.round_id,
                    "participant_id": member.participant_id,
                    "position": member.position,
                    "identification_number": member.identification_number,
                    "confirmation_state": member.confirmation_state,
                },
            )

    def assign_registration(self, match: Match, participant_id: str, now: datetime) -> None:
        partners = [pid for pid in match.member_ids if pid != participant_id]
        self.db.execute(
            text(
                """
                UPDATE registration
                SET status=:status,
                    match_id=:match_id,
                    partner_ids=:partner_ids,
                    meeting_point_id=:meeting_point_id,
                    matched_at=:now,
                    status_updated_at=:now,
                    no_match_reason=NULL
                WHERE round_id=:round_id AND participant_id=:participant_id AND status=:expected
                """
            ),
            {
                "status": MATCHED,
                "match_id": match.id,
                "partner_ids": json.dumps(partners),
                "meeting_point_id": match.meeting_point_id,
                "now": to_iso(now),
                "round_id": match.round_id,
                "participant_id": participant_id,
                "expected": CONFIRMED,
            },
        )

    def mark_no_match(self, round_id: str, participant_id: str, reason: str) -> None:
        self.db.execute(
            text(
                """
                UPDATE registration
                SET no_match_reason=:reason
                WHERE round_id=:round_id AND participant_id=:participant_id
                """
            ),
            {"reason": reason, "round_id": round_id, "participant_id": participant_id},
        )


_CONFIRMATION_TIMESTAMPS = {
    CONFIRMED: "confirmed_at",
    WALKING: None,
    WAITING: "arrived_at",
    CHECKED_IN: "checked_in_at",
    MET: "met_at",
}


class ConfirmationWriter(_StoreAccess):
    def advance_registration(self, registration: Registration, status: str, now: datetime) -> None:
        if status not in _CONFIRMATION_TIMESTAMPS:
            raise InvalidStateTransition(registration.status, status, f"Confirmation handler cannot set status '{status}'")
        column = _CONFIRMATION_TIMESTAMPS[status]
        stamp = f", {column}=:now" if column else ""
        self.db.execute(
            text(
                f"""
                UPDATE registration
                SET status=:status, status_updated_at=:now{stamp}
                WHERE round_id=:round_id AND participant_id=:participant_id
                """
            ),
            {
                "status": status,
                "now": to_iso(now),
                "round_id": registration.round_id,
                "participant_id": registration.participant_id,
            },
        )

    def lock_members(self, match_id: str) -> None:
        # Row-locks every member of the match so concurrent selections see each other's check-in.
        self.db.execute(
            text("UPDATE match_member SET confirmation_state=confirmation_state WHERE match_id=:match_id"),
            {"match_id": match_id},
        )

    def set_member_state(self, match_id: str, participant_id: str, state: str, now: datetime) -> None:
        column = "checked_in_at" if state == MEMBER_CHECKED_IN else "arrived_at"
        self.db.execute(
            text(
                f"""
                UPDATE match_member
                SET confirmation_state=:state, {column}=:now
                WHERE match_id=:match_id AND participant_id=:participant_id
                """
            ),
            {"state": state, "now": to_iso(now), "match_id": match_id, "participant_id": participant_id},
        )


class ContactWriter(_StoreAccess):
    def lock_registration(self, registration: Registration) -> None:
        # Row-locks the caller's registration so concurrent submissions merge instead of overwriting.
        self.db.execute(
            text(
                """
                UPDATE registration
                SET share_decisions=share_decisions
                WHERE round_id=:round_id AND participant_id=:participant_id
                """
            ),
            {"round_id": registration.round_id, "participant_id": registration.participant_id},
        )

    def record_submission(
        self,
        registration: Registration,
        decisions: dict[str, ShareDecision],
        feedback_tags: dict[str, list[str]],
        submitted_at: datetime | None,
    ) -> None:
        self.db.execute(
            text(
                """
                UPDATE registration
                SET share_decisions=:share_decisions,
                    feedback_tags=:feedback_tags,
                    contact_submitted_at=:submitted_at
                WHERE round_id=:round_id AND participant_id=:participant_id
                """
            ),
            {
                "share_decisions": json.dumps(
                    {pid: {"share": d.share, "decided_at": to_iso(d.decided_at)} for pid, d in decisions.items()}
                ),
                "feedback_tags": json.dumps(feedback_tags),
                "submitted_at": to_iso(submitted_at),
                "round_id": registration.round_id,
                "participant_id": registration.participant_id,
            },
        )


