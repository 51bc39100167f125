from sqlalchemy import inspect

from roundmatch.main import _statements


def test_statements_skip_comment_only_chunks():
    sql = "-- header\nCREATE TABLE a (id TEXT);\n\n-- trailing note\n"
    assert _statements(sql) == ["CREATE TABLE a (id TEXT)"]


def test_migrations_create_engine_tables(session_factory):
    with session_factory() as db:
        tables = set(inspect(db.get_bind()).get_table_names())
    assert {
        "event_session",
        "event_round",
        "meeting_point",
        "participant",
        "registration",
        "round_match",
        "match_member",
        "matching_lock",
        "match_event",
        "notification_outbox",
    } <= tables


def test_migrations_are_rerunnable(session_factory):
    from roundmatch.main import run_migrations

    run_migrations(session_factory)
