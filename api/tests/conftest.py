from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from roundmatch import engine as round_engine
from roundmatch.main import run_migrations

ROUND_START = datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc)


@pytest.fixture()
def session_factory(monkeypatch):
    db_engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        future=True,
    )
    factory = sessionmaker(bind=db_engine, autoflush=False, future=True)
    run_migrations(factory)
    monkeypatch.setattr(round_engine, "SessionLocal", factory)
    yield factory
    db_engine.dispose()


@pytest.fixture()
def make_round(session_factory):
    """Create a session with meeting points and a round starting at ROUND_START."""

    def _make(
        *,
        confirmed: int = 0,
        registered: int = 0,
        meeting_points: int = 2,
        **round_kwargs,
    ):
        created_at = ROUND_START - timedelta(days=1)
        session = round_engine.create_session(
            "Tuesday mixer",
            created_at,
            [{"name": f"Point {i + 1}"} for i in range(meeting_points)],
        )
        round_ = round_engine.create_round(session["id"], ROUND_START, created_at, **round_kwargs)

        ids = []
        for i in range(confirmed + registered):
            pid = f"p{i + 1:02d}"
            round_engine.register_participant(round_.id, pid, ROUND_START - timedelta(hours=1), display_name=f"Person {i + 1}", email=f"{pid}@example.com")
            if i < confirmed:
                round_engine.confirm_attendance(round_.id, pid, ROUND_START - timedelta(minutes=10))
            ids.append(pid)
        return round_, ids

    return _make
