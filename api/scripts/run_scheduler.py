import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from roundmatch import engine
from roundmatch.deps import parse_test_time


def _parse_now(raw: str | None) -> datetime:
    if not raw:
        return datetime.now(timezone.utc)
    return parse_test_time(raw)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run matching for due rounds and sweep registration statuses")
    parser.add_argument("--now", help="ISO-8601 instant to run at (defaults to the wall clock)")
    parser.add_argument("--round-id", help="Only process this round")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--sweep", action="store_true", help="Also persist effective statuses for the round")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    now = _parse_now(args.now)

    if args.round_id:
        results = [engine.run_matching(args.round_id, now, seed=args.seed)]
    else:
        results = engine.run_due_matching(now, seed=args.seed)

    report = {
        "now": now.isoformat(),
        "rounds": [
            {
                "round_id": r.round_id,
                "already_matched": r.already_matched,
                "no_match": r.no_match,
                "matches": [m.member_ids for m in r.matches],
                "unmatched": r.unmatched,
                "unconfirmed": r.unconfirmed,
            }
            for r in results
        ],
    }
    if args.sweep and args.round_id:
        report["sweep"] = engine.sweep_round_statuses(args.round_id, now)

    print(json.dumps(report, indent=2, default=str))


if __name__ == "__main__":
    main()
