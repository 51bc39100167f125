import json
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import text

from ..store import to_iso


def log_match_event(
    db,
    participant_id: str | None,
    round_id: str,
    event_type: str,
    now: datetime,
    payload: dict[str, Any] | None = None,
    match_id: str | None = None,
) -> None:
    payload = payload or {}
    db.execute(
        text(
            """
            INSERT INTO match_event (id, participant_id, round_id, match_id, event_type, payload, created_at)
            VALUES (:id, :participant_id, :round_id, :match_id, :event_type, :payload, :created_at)
            """
        ),
        {
            "id": str(uuid.uuid4()),
            "participant_id": participant_id,
            "round_id": round_id,
            "match_id": match_id,
            "event_type": event_type,
            "payload": json.dumps(payload),
            "created_at": to_iso(now),
        },
    )


def enqueue_notification(
    db,
    *,
    participant_id: str,
    notification_type: str,
    now: datetime,
    payload: dict[str, Any] | None = None,
    idempotency_key: str,
) -> None:
    """Fire-and-forget trigger; delivery is handled outside the engine."""
    db.execute(
        text(
            """
            INSERT INTO notification_outbox (id, participant_id, notification_type, payload_json, status, idempotency_key, created_at)
            VALUES (:id, :participant_id, :notification_type, :payload_json, 'pending', :idempotency_key, :created_at)
            ON CONFLICT (idempotency_key) DO NOTHING
            """
        ),
        {
            "id": str(uuid.uuid4()),
            "participant_id": participant_id,
            "notification_type": notification_type,
            "payload_json": json.dumps(payload or {}),
            "idempotency_key": idempotency_key,
            "created_at": to_iso(now),
        },
    )
