from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta

from ..config import CONTACT_REVEAL_DELAY_MINUTES, FEEDBACK_TAG_MAX_COUNT, FEEDBACK_TAG_MAX_LENGTH
from ..domain import ShareDecision
from ..errors import InvalidInput


def normalize_feedback_tags(
    tags: Iterable[str] | None,
    max_count: int = FEEDBACK_TAG_MAX_COUNT,
    max_length: int = FEEDBACK_TAG_MAX_LENGTH,
) -> list[str]:
    out: list[str] = []
    for raw in tags or []:
        tag = str(raw or "").strip().lower()
        if not tag:
            continue
        if len(tag) > max_length:
            raise InvalidInput(f"feedback tag longer than {max_length} characters")
        if tag not in out:
            out.append(tag)
    if len(out) > max_count:
        raise InvalidInput(f"at most {max_count} feedback tags per partner")
    return out


def reveal_time(
    mine: ShareDecision | None,
    theirs: ShareDecision | None,
    delay: timedelta = timedelta(minutes=CONTACT_REVEAL_DELAY_MINUTES),
) -> datetime | None:
    """Instant from which the pair's contacts are visible, or None if they never will be."""
    if mine is None or theirs is None:
        return None
    if not (mine.share and theirs.share):
        return None
    return max(mine.decided_at, theirs.decided_at) + delay
