import os


def _optional_int(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else None


ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")
DEV_MODE = os.getenv("DEV_MODE", "false").lower() == "true"

# Status transition policy
COMPLETION_TRIGGER = os.getenv("COMPLETION_TRIGGER", "round_end")
STALE_MATCH_MINUTES = _optional_int("STALE_MATCH_MINUTES")

# Matching
MIN_GROUP_SIZE = 2
DEFAULT_TARGET_GROUP_SIZE = int(os.getenv("DEFAULT_TARGET_GROUP_SIZE", "2"))
DEFAULT_MAX_GROUP_SIZE = int(os.getenv("DEFAULT_MAX_GROUP_SIZE", "3"))
DEFAULT_ROUND_DURATION_MINUTES = int(os.getenv("DEFAULT_ROUND_DURATION_MINUTES", "10"))
MATCHING_SEED = _optional_int("MATCHING_SEED")
AVOID_REPEAT_MEETINGS = os.getenv("AVOID_REPEAT_MEETINGS", "true").lower() == "true"
DEFAULT_MATCHING_TYPE = os.getenv("DEFAULT_MATCHING_TYPE", "across-teams")

# Conversation starters for sessions created without their own list.
DEFAULT_ICE_BREAKERS = [
    "What's a skill you'd like to learn this year?",
    "What's the best advice you've ever received?",
    "What's something you're passionate about outside of work?",
    "What's a book that changed your perspective?",
    "What's the most interesting thing you've learned recently?",
    "What's a challenge you're currently working through?",
    "What's a place you'd love to visit and why?",
    "What's a hobby you've always wanted to try?",
]

# Find-each-other confirmation
IDENTIFICATION_NUMBER_MIN = 10
IDENTIFICATION_NUMBER_MAX = 99
CHALLENGE_DECOYS = int(os.getenv("CHALLENGE_DECOYS", "2"))

# Contact sharing
CONTACT_REVEAL_DELAY_MINUTES = int(os.getenv("CONTACT_REVEAL_DELAY_MINUTES", "15"))
FEEDBACK_TAG_MAX_COUNT = int(os.getenv("FEEDBACK_TAG_MAX_COUNT", "5"))
FEEDBACK_TAG_MAX_LENGTH = int(os.getenv("FEEDBACK_TAG_MAX_LENGTH", "40"))

MIGRATIONS_DIR = os.getenv("MIGRATIONS_DIR", "").strip()

ALLOWED_ORIGINS = [
    o.strip()
    for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if o.strip()
]
