"""
Round engine operations.

Every operation takes ``now`` explicitly, opens one short transaction on a
fresh session and touches the store only through the capability it owns
(see store.py). Reads apply the status rules lazily and write the effective
status back when it differs from the stored one.
"""
from __future__ import annotations

import dataclasses
import logging
import uuid
from collections import Counter
from collections.abc import Iterable, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import IntegrityError, OperationalError

from .config import (
    AVOID_REPEAT_MEETINGS,
    COMPLETION_TRIGGER,
    DEFAULT_ICE_BREAKERS,
    DEFAULT_MATCHING_TYPE,
    DEFAULT_MAX_GROUP_SIZE,
    DEFAULT_ROUND_DURATION_MINUTES,
    DEFAULT_TARGET_GROUP_SIZE,
    MATCHING_SEED,
    STALE_MATCH_MINUTES,
)
from .database import SessionLocal
from .domain import (
    CHECKED_IN,
    COMPLETED,
    CONFIRMED,
    IN_MATCH_STATUSES,
    MEMBER_AWAITING_SELECTION,
    MEMBER_CHECKED_IN,
    MET,
    REGISTERED,
    ROUND_CANCELLED,
    STATUS_ORDER,
    TERMINAL_STATUSES,
    UNCONFIRMED,
    WAITING,
    WALKING,
    Challenge,
    Match,
    MatchingResult,
    MatchMember,
    MeetingPoint,
    Registration,
    Round,
    SelectionResult,
    ShareDecision,
    SharedContact,
    StatusPolicy,
)
from .errors import InvalidInput, InvalidStateTransition, NotFound, StoreUnavailable
from .services.confirmation import (
    advance_member_state,
    all_checked_in,
    build_challenge,
    identification_numbers,
    is_correct_selection,
)
from .services.contact_sharing import normalize_feedback_tags, reveal_time
from .services.events import enqueue_notification, log_match_event
from .services.matching import (
    assign_meeting_points,
    build_meeting_history,
    partition_participants,
    validate_group_sizes,
    validate_matching_type,
)
from .services.state_machine import effective_status, transition_status
from .store import (
    ConfirmationWriter,
    ContactWriter,
    MatchWriter,
    RegistrationReader,
    SetupWriter,
    StatusWriter,
)

logger = logging.getLogger(__name__)

NO_MATCH_REASON = "not_enough_confirmed_participants"


def status_policy() -> StatusPolicy:
    return StatusPolicy(completion_trigger=COMPLETION_TRIGGER, stale_match_minutes=STALE_MATCH_MINUTES)


@contextmanager
def _transaction():
    try:
        with SessionLocal() as db:
            yield db
    except OperationalError as exc:
        logger.warning("[STORE] registration store unavailable: %s", exc)
        raise StoreUnavailable("Registration store is temporarily unavailable") from exc


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _load_round(reader: RegistrationReader, round_id: str) -> Round:
    round_ = reader.get_round(round_id)
    if round_ is None:
        raise NotFound("round", round_id)
    return round_


def _load_registration(reader: RegistrationReader, round_id: str, participant_id: str) -> Registration:
    reg = reader.get_registration(round_id, participant_id)
    if reg is None:
        raise NotFound("registration", f"{round_id}/{participant_id}")
    return reg


def _refresh(db, round_: Round, reg: Registration, now: datetime) -> Registration:
    status = effective_status(reg, round_, now, status_policy())
    if status != reg.status:
        StatusWriter(db).set_status(reg, status, now)
        logger.info(
            "[STATUS] participant_id=%s round_id=%s %s -> %s",
            reg.participant_id,
            reg.round_id,
            reg.status,
            status,
        )
        reg.status = status
        reg.status_updated_at = now
    return reg


def _is_past(status: str, step: str) -> bool:
    return status in STATUS_ORDER and STATUS_ORDER.index(status) > STATUS_ORDER.index(step)


def _member_context(
    reader: RegistrationReader, match_id: str, participant_id: str
) -> tuple[Match, Round, Registration]:
    match = reader.get_match(match_id)
    if match is None:
        raise NotFound("match", match_id)
    if match.member(participant_id) is None:
        raise InvalidInput(f"Participant {participant_id} is not a member of match {match_id}")
    round_ = _load_round(reader, match.round_id)
    reg = _load_registration(reader, match.round_id, participant_id)
    return match, round_, reg


# ---------------------------------------------------------------------------
# Status reads


def get_effective_status(round_id: str, participant_id: str, now: datetime) -> str:
    with _transaction() as db:
        reader = RegistrationReader(db)
        round_ = _load_round(reader, round_id)
        reg = _refresh(db, round_, _load_registration(reader, round_id, participant_id), now)
        db.commit()
        return reg.status


def get_registration_view(round_id: str, participant_id: str, now: datetime) -> dict[str, Any]:
    with _transaction() as db:
        reader = RegistrationReader(db)
        round_ = _load_round(reader, round_id)
        reg = _refresh(db, round_, _load_registration(reader, round_id, participant_id), now)
        db.commit()

        point = reader.get_meeting_point(reg.meeting_point_id)
        return {
            "round": dataclasses.asdict(round_),
            "registration": dataclasses.asdict(reg),
            "meeting_point": dataclasses.asdict(point) if point else None,
            "no_match": reg.no_match_reason is not None and reg.status == CONFIRMED,
        }


def sweep_round_statuses(round_id: str, now: datetime) -> dict[str, Any]:
    """Apply the status rules to every registration of a round and persist the changes."""
    with _transaction() as db:
        reader = RegistrationReader(db)
        round_ = _load_round(reader, round_id)
        changed: list[dict[str, str]] = []
        for reg in reader.list_round_registrations(round_id):
            before = reg.status
            _refresh(db, round_, reg, now)
            if reg.status != before:
                changed.append({"participant_id": reg.participant_id, "from": before, "to": reg.status})
        db.commit()

    logger.info("[STATUS] sweep round_id=%s updated=%s", round_id, len(changed))
    return {"round_id": round_id, "updated": changed}


# ---------------------------------------------------------------------------
# Matching


def list_eligible_for_matching(round_id: str) -> list[Registration]:
    with _transaction() as db:
        reader = RegistrationReader(db)
        round_ = _load_round(reader, round_id)
        if round_.is_cancelled:
            return []
        return reader.list_round_registrations(round_id, status=CONFIRMED)


def _existing_result(reader: RegistrationReader, round_id: str) -> MatchingResult:
    matches = reader.list_round_matches(round_id)
    unmatched = [r.participant_id for r in reader.list_round_registrations(round_id) if r.no_match_reason and r.status == CONFIRMED]
    return MatchingResult(round_id=round_id, matches=matches, unmatched=unmatched, already_matched=True)


def run_matching(round_id: str, now: datetime, seed: int | None = None) -> MatchingResult:
    seed = MATCHING_SEED if seed is None else seed

    with _transaction() as db:
        reader = RegistrationReader(db)
        round_ = _load_round(reader, round_id)
        if round_.is_cancelled:
            raise InvalidStateTransition(round_.status, "match", f"Round {round_id} is cancelled")
        if now < round_.match_instant:
            raise InvalidStateTransition(
                round_.status, "match", f"Round {round_id} cannot be matched before {round_.match_instant.isoformat()}"
            )

        if reader.get_matching_lock(round_id) is not None:
            logger.info("[MATCHING] round_id=%s already matched, returning persisted matches", round_id)
            return _existing_result(reader, round_id)

        unconfirmed: list[str] = []
        eligible: list[str] = []
        for reg in reader.list_round_registrations(round_id):
            before = reg.status
            _refresh(db, round_, reg, now)
            if before == REGISTERED and reg.status == UNCONFIRMED:
                unconfirmed.append(reg.participant_id)
            if reg.status == CONFIRMED:
                eligible.append(reg.participant_id)

        history = None
        if AVOID_REPEAT_MEETINGS:
            history = build_meeting_history(reader.list_session_groups(round_.session_id, exclude_round_id=round_id))
        session = reader.get_session(round_.session_id) or {}

        groups, unmatched = partition_participants(
            eligible,
            target_group_size=round_.target_group_size,
            max_group_size=round_.max_group_size,
            allow_overflow=round_.allow_overflow_matching,
            seed=seed,
            history=history,
            profiles=reader.list_round_profiles(round_id),
            matching_type=session.get("matching_type") or DEFAULT_MATCHING_TYPE,
        )
        points = assign_meeting_points(len(groups), reader.list_meeting_points(round_.session_id))

        writer = MatchWriter(db)
        matches: list[Match] = []
        try:
            writer.insert_lock(round_, now, match_count=len(groups), unmatched_count=len(unmatched))

            for group, point_id in zip(groups, points):
                match_id = str(uuid.uuid4())
                numbers = identification_numbers(match_id, group)
                match = Match(
                    id=match_id,
                    session_id=round_.session_id,
                    round_id=round_id,
                    meeting_point_id=point_id,
                    created_at=now,
                    members=[
                        MatchMember(participant_id=pid, position=pos, identification_number=numbers[pid])
                        for pos, pid in enumerate(group)
                    ],
                )
                writer.insert_match(match)
                for pid in group:
                    writer.assign_registration(match, pid, now)
                    log_match_event(
                        db,
                        pid,
                        round_id,
                        "matched",
                        now,
                        {"partner_ids": [p for p in group if p != pid], "meeting_point_id": point_id},
                        match_id=match_id,
                    )
                    enqueue_notification(
                        db,
                        participant_id=pid,
                        notification_type="match_ready",
                        now=now,
                        payload={"round_id": round_id, "match_id": match_id, "meeting_point_id": point_id},
                        idempotency_key=f"match_ready:{round_id}:{pid}",
                    )
                matches.append(match)

            for pid in unmatched:
                writer.mark_no_match(round_id, pid, NO_MATCH_REASON)
                log_match_event(db, pid, round_id, "no_match", now, {"reason": NO_MATCH_REASON})
                enqueue_notification(
                    db,
                    participant_id=pid,
                    notification_type="no_match",
                    now=now,
                    payload={"round_id": round_id},
                    idempotency_key=f"no_match:{round_id}:{pid}",
                )

            log_match_event(
                db,
                None,
                round_id,
                "matching_completed",
                now,
                {"eligible": len(eligible), "matches": len(matches), "unmatched": len(unmatched), "seed": seed},
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("[MATCHING] round_id=%s matched by a concurrent run", round_id)
            return _existing_result(RegistrationReader(db), round_id)

    logger.info(
        "[MATCHING] round_id=%s eligible=%s matches=%s unmatched=%s unconfirmed=%s",
        round_id,
        len(eligible),
        len(matches),
        len(unmatched),
        len(unconfirmed),
    )
    return MatchingResult(round_id=round_id, matches=matches, unmatched=unmatched, unconfirmed=unconfirmed)


def run_due_matching(now: datetime, seed: int | None = None) -> list[MatchingResult]:
    with _transaction() as db:
        due = [r.id for r in RegistrationReader(db).list_scheduled_rounds_without_lock() if r.match_instant <= now]

    results = []
    for round_id in due:
        results.append(run_matching(round_id, now, seed=seed))
    logger.info("[MATCHING] due run at %s processed %s round(s)", now.isoformat(), len(results))
    return results


# ---------------------------------------------------------------------------
# Attendance


def confirm_attendance(round_id: str, participant_id: str, now: datetime) -> Registration:
    with _transaction() as db:
        reader = RegistrationReader(db)
        round_ = _load_round(reader, round_id)
        reg = _refresh(db, round_, _load_registration(reader, round_id, participant_id), now)

        if reg.status not in TERMINAL_STATUSES and STATUS_ORDER.index(reg.status) >= STATUS_ORDER.index(CONFIRMED):
            db.commit()
            return reg
        if now >= round_.start_time:
            raise InvalidStateTransition(reg.status, "confirm", "Confirmation closed at round start")
        opens_at = round_.confirmation_opens_at
        if opens_at is not None and now < opens_at:
            raise InvalidStateTransition(reg.status, "confirm", f"Confirmation opens at {opens_at.isoformat()}")
        if reader.get_matching_lock(round_id) is not None:
            raise InvalidStateTransition(reg.status, "confirm", f"Round {round_id} has already been matched")

        status = transition_status(reg.status, "confirm")
        ConfirmationWriter(db).advance_registration(reg, status, now)
        log_match_event(db, participant_id, round_id, "attendance_confirmed", now)
        enqueue_notification(
            db,
            participant_id=participant_id,
            notification_type="attendance_confirmed",
            now=now,
            payload={"round_id": round_id},
            idempotency_key=f"attendance_confirmed:{round_id}:{participant_id}",
        )
        db.commit()

    logger.info("[CONFIRM] participant_id=%s round_id=%s confirmed attendance", participant_id, round_id)
    reg.status = status
    reg.confirmed_at = now
    return reg


def cancel_registration(round_id: str, participant_id: str, now: datetime) -> Registration:
    with _transaction() as db:
        reader = RegistrationReader(db)
        round_ = _load_round(reader, round_id)
        reg = _refresh(db, round_, _load_registration(reader, round_id, participant_id), now)

        status = transition_status(reg.status, "cancel")
        if status != reg.status:
            StatusWriter(db).set_status(reg, status, now)
            log_match_event(db, participant_id, round_id, "registration_cancelled", now, {"from": reg.status})
            reg.status = status
        db.commit()
        return reg


# ---------------------------------------------------------------------------
# Find-each-other confirmation


def acknowledge_match(match_id: str, participant_id: str, now: datetime) -> str:
    with _transaction() as db:
        reader = RegistrationReader(db)
        match, round_, reg = _member_context(reader, match_id, participant_id)
        _refresh(db, round_, reg, now)
        if _is_past(reg.status, WALKING):
            db.commit()
            return reg.status

        status = transition_status(reg.status, "acknowledge")
        if status != reg.status:
            ConfirmationWriter(db).advance_registration(reg, WALKING, now)
            log_match_event(db, participant_id, round_.id, "walking", now, match_id=match.id)
        db.commit()
        return status


def confirm_arrival(match_id: str, participant_id: str, now: datetime) -> str:
    with _transaction() as db:
        reader = RegistrationReader(db)
        match, round_, reg = _member_context(reader, match_id, participant_id)
        _refresh(db, round_, reg, now)
        if _is_past(reg.status, WAITING):
            db.commit()
            return reg.status
        member = match.member(participant_id)

        status = transition_status(reg.status, "arrive")
        member_state = advance_member_state(member.confirmation_state, "arrive")

        writer = ConfirmationWriter(db)
        if status != reg.status:
            writer.advance_registration(reg, WAITING, now)
            log_match_event(db, participant_id, round_.id, "arrived", now, match_id=match.id)
        if member_state != member.confirmation_state:
            writer.set_member_state(match.id, participant_id, member_state, now)
        db.commit()

    logger.info("[CONFIRM] participant_id=%s match_id=%s arrived", participant_id, match_id)
    return status


def get_confirmation_challenge(match_id: str, participant_id: str, now: datetime) -> Challenge:
    with _transaction() as db:
        reader = RegistrationReader(db)
        match, round_, reg = _member_context(reader, match_id, participant_id)
        _refresh(db, round_, reg, now)
        db.commit()

    if reg.status not in IN_MATCH_STATUSES and reg.status != MET:
        raise InvalidStateTransition(reg.status, "challenge", f"No active match for status '{reg.status}'")
    return build_challenge(match, participant_id)


def select_partner_number(match_id: str, participant_id: str, selected_value: int, now: datetime) -> SelectionResult:
    with _transaction() as db:
        reader = RegistrationReader(db)
        match, round_, reg = _member_context(reader, match_id, participant_id)
        _refresh(db, round_, reg, now)

        if reg.status in (CHECKED_IN, MET, COMPLETED):
            db.commit()
            return SelectionResult("success", reg.status, match_met=reg.status != CHECKED_IN)

        writer = ConfirmationWriter(db)
        writer.lock_members(match.id)
        match = reader.get_match(match.id)
        member = match.member(participant_id)
        if reg.status != WAITING or member.confirmation_state != MEMBER_AWAITING_SELECTION:
            raise InvalidStateTransition(reg.status, "check_in")

        if not is_correct_selection(match, participant_id, selected_value):
            db.commit()
            logger.info("[CONFIRM] participant_id=%s match_id=%s wrong number, retry", participant_id, match_id)
            return SelectionResult("retry", reg.status)

        member.confirmation_state = advance_member_state(member.confirmation_state, "select")
        writer.set_member_state(match.id, participant_id, MEMBER_CHECKED_IN, now)
        writer.advance_registration(reg, transition_status(reg.status, "check_in"), now)
        log_match_event(db, participant_id, round_.id, "checked_in", now, match_id=match.id)

        status = CHECKED_IN
        match_met = all_checked_in(match)
        if match_met:
            for pid in match.member_ids:
                member_reg = _load_registration(reader, round_.id, pid)
                writer.advance_registration(member_reg, transition_status(member_reg.status, "meet"), now)
                log_match_event(db, pid, round_.id, "met", now, match_id=match.id)
                enqueue_notification(
                    db,
                    participant_id=pid,
                    notification_type="met",
                    now=now,
                    payload={"round_id": round_.id, "match_id": match.id},
                    idempotency_key=f"met:{match.id}:{pid}",
                )
            status = MET
        db.commit()

    logger.info(
        "[CONFIRM] participant_id=%s match_id=%s checked in, match_met=%s", participant_id, match_id, match_met
    )
    return SelectionResult("success", status, match_met=match_met)


# ---------------------------------------------------------------------------
# Contact sharing


def _submission_view(match_id: str, reg: Registration) -> dict[str, Any]:
    decisions = {
        pid: {
            "share": d.share,
            "decided_at": d.decided_at,
            "feedback_tags": reg.feedback_tags.get(pid, []),
        }
        for pid, d in reg.share_decisions.items()
    }
    return {
        "match_id": match_id,
        "decisions": decisions,
        "pending_partner_ids": [p for p in reg.partner_ids if p not in reg.share_decisions],
        "submitted_at": reg.contact_submitted_at,
    }


def _apply_contact_decisions(
    match_id: str,
    participant_id: str,
    items: Iterable[tuple[str, bool, list[str] | None]],
    now: datetime,
) -> dict[str, Any]:
    items = list(items)
    if not items:
        raise InvalidInput("At least one contact decision is required")

    with _transaction() as db:
        reader = RegistrationReader(db)
        match, round_, reg = _member_context(reader, match_id, participant_id)
        writer = ContactWriter(db)
        writer.lock_registration(reg)
        reg = _refresh(db, round_, _load_registration(reader, round_.id, participant_id), now)
        if reg.status not in (MET, COMPLETED):
            raise InvalidStateTransition(reg.status, "share_contact", "Contact decisions open once the match has met")

        decisions = dict(reg.share_decisions)
        feedback = dict(reg.feedback_tags)
        for partner_id, share, tags in items:
            if partner_id == participant_id or partner_id not in reg.partner_ids:
                raise InvalidInput(f"Participant {partner_id} is not a partner in match {match_id}")
            if partner_id in decisions:
                raise InvalidStateTransition(
                    reg.status, "share_contact", f"Decision for partner {partner_id} was already submitted"
                )
            decisions[partner_id] = ShareDecision(share=bool(share), decided_at=now)
            normalized = normalize_feedback_tags(tags)
            if normalized:
                feedback[partner_id] = normalized

        submitted_at = reg.contact_submitted_at
        if submitted_at is None and all(p in decisions for p in reg.partner_ids):
            submitted_at = now

        writer.record_submission(reg, decisions, feedback, submitted_at)
        for partner_id, share, _ in items:
            log_match_event(
                db,
                participant_id,
                round_.id,
                "contact_decision",
                now,
                {"partner_id": partner_id, "share": bool(share)},
                match_id=match.id,
            )
        db.commit()

    logger.info(
        "[CONTACT] participant_id=%s match_id=%s decisions=%s complete=%s",
        participant_id,
        match_id,
        len(items),
        submitted_at is not None,
    )
    reg.share_decisions = decisions
    reg.feedback_tags = feedback
    reg.contact_submitted_at = submitted_at
    return _submission_view(match_id, reg)


def submit_contact_decision(
    match_id: str,
    participant_id: str,
    partner_id: str,
    share: bool,
    feedback_tags: list[str] | None,
    now: datetime,
) -> dict[str, Any]:
    return _apply_contact_decisions(match_id, participant_id, [(partner_id, share, feedback_tags)], now)


def submit_contact_decisions(
    match_id: str,
    participant_id: str,
    decisions: Mapping[str, Mapping[str, Any]],
    now: datetime,
) -> dict[str, Any]:
    """Commit the decisions for several partners at once; nothing is written if any of them is rejected."""
    items = [(pid, bool(d.get("share")), d.get("feedback_tags")) for pid, d in decisions.items()]
    return _apply_contact_decisions(match_id, participant_id, items, now)


def get_contact_submission(match_id: str, participant_id: str) -> dict[str, Any]:
    with _transaction() as db:
        reader = RegistrationReader(db)
        _, _, reg = _member_context(reader, match_id, participant_id)
    return _submission_view(match_id, reg)


def get_networking_view(match_id: str, participant_id: str, now: datetime) -> dict[str, Any]:
    """What a member sees while the group talks: partners, end time, ice breakers and their own decisions.

    Partner contact details are not part of this view; they are only revealed through mutual sharing.
    """
    with _transaction() as db:
        reader = RegistrationReader(db)
        match, round_, reg = _member_context(reader, match_id, participant_id)
        _refresh(db, round_, reg, now)
        db.commit()
        if reg.status not in (WAITING, CHECKED_IN, MET):
            raise InvalidStateTransition(reg.status, "networking", f"No active networking for status '{reg.status}'")

        session = reader.get_session(round_.session_id) or {}
        point = reader.get_meeting_point(match.meeting_point_id)
        partners = []
        for pid in match.member_ids:
            if pid == participant_id:
                continue
            profile = reader.get_participant(pid) or {}
            partners.append({"participant_id": pid, "display_name": profile.get("display_name")})

    return {
        "match_id": match.id,
        "round_id": round_.id,
        "round_name": round_.name or "Networking Round",
        "status": reg.status,
        "networking_end_time": round_.end_time,
        "meeting_point": dataclasses.asdict(point) if point else None,
        "partners": partners,
        "ice_breakers": session.get("ice_breakers", []),
        "my_contact_sharing": _submission_view(match.id, reg),
    }


def get_shared_contacts(participant_id: str, now: datetime) -> list[SharedContact]:
    out: list[SharedContact] = []
    with _transaction() as db:
        reader = RegistrationReader(db)
        for reg in reader.list_participant_registrations(participant_id):
            if not reg.match_id:
                continue
            for partner_id in reg.partner_ids:
                theirs = reader.get_registration(reg.round_id, partner_id)
                at = reveal_time(
                    reg.share_decisions.get(partner_id),
                    theirs.share_decisions.get(participant_id) if theirs else None,
                )
                if at is None or now < at:
                    continue
                contact = reader.get_participant(partner_id) or {}
                out.append(
                    SharedContact(
                        partner_id=partner_id,
                        match_id=reg.match_id,
                        round_id=reg.round_id,
                        shared_at=at,
                        contact={k: contact.get(k) for k in ("display_name", "email", "phone")},
                    )
                )
    return out


def get_received_feedback(participant_id: str) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    with _transaction() as db:
        reader = RegistrationReader(db)
        for reg in reader.list_participant_registrations(participant_id):
            if not reg.match_id:
                continue
            for partner_id in reg.partner_ids:
                theirs = reader.get_registration(reg.round_id, partner_id)
                tags = theirs.feedback_tags.get(participant_id) if theirs else None
                if tags:
                    out.append(
                        {
                            "from_participant_id": partner_id,
                            "match_id": reg.match_id,
                            "round_id": reg.round_id,
                            "tags": tags,
                        }
                    )
    return out


# ---------------------------------------------------------------------------
# Organizer setup and reporting


def create_session(
    name: str,
    now: datetime,
    meeting_points: Iterable[Mapping[str, Any]] | None = None,
    *,
    matching_type: str = DEFAULT_MATCHING_TYPE,
    ice_breakers: Iterable[str] | None = None,
) -> dict[str, Any]:
    name = (name or "").strip()
    if not name:
        raise InvalidInput("Session name is required")
    validate_matching_type(matching_type)
    if ice_breakers is None:
        ice_breakers = DEFAULT_ICE_BREAKERS
    questions = [q.strip() for q in ice_breakers if q and q.strip()]

    session_id = str(uuid.uuid4())
    points: list[MeetingPoint] = []
    with _transaction() as db:
        writer = SetupWriter(db)
        writer.insert_session(session_id, name, now, matching_type, questions)
        for pos, raw in enumerate(meeting_points or []):
            point = MeetingPoint(
                id=str(uuid.uuid4()),
                session_id=session_id,
                name=str(raw["name"]),
                image_url=raw.get("image_url"),
                position=int(raw.get("position", pos)),
            )
            writer.insert_meeting_point(point)
            points.append(point)
        db.commit()

    logger.info("[SETUP] session_id=%s created with %s meeting point(s)", session_id, len(points))
    return {
        "id": session_id,
        "name": name,
        "matching_type": matching_type,
        "ice_breakers": questions,
        "meeting_points": [dataclasses.asdict(p) for p in points],
    }


def add_meeting_point(session_id: str, name: str, image_url: str | None = None, position: int | None = None) -> MeetingPoint:
    if not (name or "").strip():
        raise InvalidInput("Meeting point name is required")

    with _transaction() as db:
        reader = RegistrationReader(db)
        if not reader.session_exists(session_id):
            raise NotFound("session", session_id)
        if position is None:
            position = len(reader.list_meeting_points(session_id))
        point = MeetingPoint(id=str(uuid.uuid4()), session_id=session_id, name=name.strip(), image_url=image_url, position=position)
        SetupWriter(db).insert_meeting_point(point)
        db.commit()
    return point


def create_round(
    session_id: str,
    start_time: datetime,
    now: datetime,
    *,
    duration_minutes: int = DEFAULT_ROUND_DURATION_MINUTES,
    target_group_size: int = DEFAULT_TARGET_GROUP_SIZE,
    max_group_size: int = DEFAULT_MAX_GROUP_SIZE,
    allow_overflow_matching: bool = True,
    confirmation_window_minutes: int | None = None,
    match_offset_minutes: int = 0,
    name: str = "",
) -> Round:
    validate_group_sizes(target_group_size, max_group_size)
    if duration_minutes <= 0:
        raise InvalidInput("duration_minutes must be positive")
    if match_offset_minutes < 0:
        raise InvalidInput("match_offset_minutes must not be negative")
    if confirmation_window_minutes is not None and confirmation_window_minutes < 0:
        raise InvalidInput("confirmation_window_minutes must not be negative")

    round_ = Round(
        id=str(uuid.uuid4()),
        session_id=session_id,
        name=name,
        start_time=_aware(start_time),
        duration_minutes=duration_minutes,
        target_group_size=target_group_size,
        max_group_size=max_group_size,
        allow_overflow_matching=allow_overflow_matching,
        confirmation_window_minutes=confirmation_window_minutes,
        match_offset_minutes=match_offset_minutes,
    )
    with _transaction() as db:
        if not RegistrationReader(db).session_exists(session_id):
            raise NotFound("session", session_id)
        SetupWriter(db).insert_round(round_, now)
        db.commit()

    logger.info("[SETUP] round_id=%s session_id=%s starts %s", round_.id, session_id, round_.start_time.isoformat())
    return round_


def cancel_round(round_id: str, now: datetime) -> Round:
    with _transaction() as db:
        reader = RegistrationReader(db)
        round_ = _load_round(reader, round_id)
        if round_.is_cancelled:
            return round_

        SetupWriter(db).cancel_round(round_id)
        round_ = dataclasses.replace(round_, status=ROUND_CANCELLED)
        for reg in reader.list_round_registrations(round_id):
            _refresh(db, round_, reg, now)
        log_match_event(db, None, round_id, "round_cancelled", now)
        db.commit()

    logger.info("[SETUP] round_id=%s cancelled", round_id)
    return round_


def register_participant(
    round_id: str,
    participant_id: str,
    now: datetime,
    display_name: str | None = None,
    email: str | None = None,
    phone: str | None = None,
    team: str | None = None,
    topics: Iterable[str] | None = None,
) -> Registration:
    if not (participant_id or "").strip():
        raise InvalidInput("participant_id is required")

    with _transaction() as db:
        reader = RegistrationReader(db)
        round_ = _load_round(reader, round_id)
        existing = reader.get_registration(round_id, participant_id)
        if existing is not None:
            _refresh(db, round_, existing, now)
            db.commit()
            return existing
        if round_.is_cancelled:
            raise InvalidStateTransition(round_.status, "register", f"Round {round_id} is cancelled")
        if now >= round_.start_time or reader.get_matching_lock(round_id) is not None:
            raise InvalidStateTransition(round_.status, "register", "Registration closed for this round")

        writer = SetupWriter(db)
        writer.upsert_participant(
            participant_id,
            now,
            display_name=display_name,
            email=email,
            phone=phone,
            team=(team or "").strip() or None,
            topics=sorted({t.strip().lower() for t in topics if t and t.strip()}) if topics is not None else None,
        )
        writer.insert_registration(round_, participant_id, now)
        log_match_event(db, participant_id, round_id, "registered", now)
        db.commit()
        return _load_registration(reader, round_id, participant_id)


def get_round_summary(round_id: str, now: datetime) -> dict[str, Any]:
    with _transaction() as db:
        reader = RegistrationReader(db)
        round_ = _load_round(reader, round_id)
        registrations = [_refresh(db, round_, reg, now) for reg in reader.list_round_registrations(round_id)]
        db.commit()

        lock = reader.get_matching_lock(round_id)
        points = {p.id: p.name for p in reader.list_meeting_points(round_.session_id)}
        matches = reader.list_round_matches(round_id)

    return {
        "round": dataclasses.asdict(round_),
        "matched": lock is not None,
        "status_counts": dict(Counter(r.status for r in registrations)),
        "matches": [
            {
                "id": m.id,
                "meeting_point": points.get(m.meeting_point_id),
                "members": [
                    {"participant_id": mm.participant_id, "confirmation_state": mm.confirmation_state}
                    for mm in sorted(m.members, key=lambda x: x.position)
                ],
            }
            for m in matches
        ],
        "unmatched": [r.participant_id for r in registrations if r.no_match_reason and r.status == CONFIRMED],
    }
