"""CLI entry point for running the scoring pipeline by hand."""

from __future__ import annotations

import argparse
import asyncio
import json
from datetime import datetime, timezone
from typing import Sequence

from .batch import connector, run_scoring_batch
from .config import Config
from .logging import setup_logging
from .utils import parse_iso_date


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pulse-score",
        description="Compute daily scores (and optionally interventions) for one or all users.",
    )
    parser.add_argument(
        "--date",
        default=None,
        help="Date to score as YYYY-MM-DD. Defaults to today (UTC).",
    )
    parser.add_argument(
        "--user-id",
        action="append",
        default=None,
        help="User UUID to score (repeatable). Defaults to every known user.",
    )
    parser.add_argument(
        "--interventions",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Evaluate intervention rules after each successful score.",
    )
    parser.add_argument(
        "--concurrency",
        default=None,
        type=int,
        help="Parallel users in flight. Defaults to PULSE_SCORE_CONCURRENCY.",
    )
    parser.add_argument(
        "--results",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Include per-user results in the JSON summary.",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    config = Config.from_env()
    now = datetime.now(timezone.utc)
    day = parse_iso_date(args.date, now.date())

    result = await run_scoring_batch(
        connector(config.database_url),
        day,
        args.user_id,
        concurrency=args.concurrency or config.score_concurrency,
        unit_timeout_seconds=config.unit_timeout_seconds,
        evaluate_interventions=bool(args.interventions),
        now=now,
    )

    print(json.dumps(result.to_dict(include_results=bool(args.results)), indent=2, sort_keys=True))
    return 1 if result.failed else 0


def main(argv: Sequence[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging("text")
    raise SystemExit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
