from datetime import datetime, timedelta, timezone

import pytest

from roundmatch.domain import ShareDecision
from roundmatch.errors import InvalidInput
from roundmatch.services.contact_sharing import normalize_feedback_tags, reveal_time

T0 = datetime(2026, 3, 2, 18, 20, tzinfo=timezone.utc)
DELAY = timedelta(minutes=15)


def test_mutual_share_visible_after_delay_from_later_submission():
    a = ShareDecision(share=True, decided_at=T0)
    b = ShareDecision(share=True, decided_at=T0 + timedelta(minutes=2))

    assert reveal_time(a, b, DELAY) == T0 + timedelta(minutes=17)
    assert reveal_time(b, a, DELAY) == T0 + timedelta(minutes=17)


def test_decline_is_permanent():
    yes = ShareDecision(share=True, decided_at=T0)
    no = ShareDecision(share=False, decided_at=T0)
    assert reveal_time(yes, no, DELAY) is None
    assert reveal_time(no, yes, DELAY) is None


def test_missing_decision_is_not_visible():
    yes = ShareDecision(share=True, decided_at=T0)
    assert reveal_time(yes, None, DELAY) is None
    assert reveal_time(None, yes, DELAY) is None


def test_feedback_tags_are_normalized():
    assert normalize_feedback_tags(["  Funny ", "funny", "", "KIND"]) == ["funny", "kind"]
    assert normalize_feedback_tags(None) == []


def test_feedback_tag_limits():
    with pytest.raises(InvalidInput):
        normalize_feedback_tags(["a", "b", "c"], max_count=2)
    with pytest.raises(InvalidInput):
        normalize_feedback_tags(["x" * 41], max_length=40)
