"""Step a harvest run until it finishes.

Usage (from repo root, after ``pip install -e .``):
    python backend/scripts/run_harvest.py --name hotels --category Marriott --category Hilton
    python backend/scripts/run_harvest.py --run-id 3 --max-steps 10
"""

from __future__ import annotations

import argparse
import json
import logging

from harvester.db.session import SessionLocal
from harvester.harvesting.errors import StoreAuthError
from harvester.services.harvest_runs import (
    advance_run,
    build_progress,
    create_run,
    get_default_orchestrator,
    get_run,
)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--run-id", type=int, help="Resume an existing run.")
    target.add_argument("--name", help="Create a new run with this name.")
    parser.add_argument(
        "--category",
        action="append",
        dest="categories",
        help="Category to search, in priority order. Repeatable; defaults to the configured list.",
    )
    parser.add_argument("--max-steps", type=int, default=50, help="Stop after this many steps.")
    parser.add_argument("--verbose", action="store_true", help="Log each step.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    orchestrator = get_default_orchestrator()
    with SessionLocal() as db:
        run = create_run(db, args.name, args.categories) if args.name else None
        run_id = run.id if run is not None else args.run_id
        for _ in range(max(args.max_steps, 0)):
            try:
                run, result = advance_run(db, run_id, orchestrator)
            except StoreAuthError as exc:
                print(f"Message store rejected credentials: {exc}")
                return 2
            if result.done:
                break
        if run is None:
            run = get_run(db, run_id)
        print(json.dumps(build_progress(run).model_dump(mode="json"), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
