from datetime import datetime, timezone

from fastapi import Header, HTTPException

from .config import ADMIN_TOKEN, DEV_MODE


def validate_admin_token(token: str | None, admin_token: str | None) -> None:
    if not admin_token or not token or token != admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
    validate_admin_token(x_admin_token, ADMIN_TOKEN)


def current_participant_id(x_participant_id: str | None = Header(default=None)) -> str:
    value = (x_participant_id or "").strip()
    if not value:
        raise HTTPException(status_code=401, detail="X-Participant-Id header is required")
    return value


def parse_test_time(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail="X-Test-Time must be an ISO-8601 timestamp")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def current_time(x_test_time: str | None = Header(default=None)) -> datetime:
    # Simulated clock is only honored in dev mode.
    if DEV_MODE:
        simulated = parse_test_time(x_test_time)
        if simulated is not None:
            return simulated
    return datetime.now(timezone.utc)
