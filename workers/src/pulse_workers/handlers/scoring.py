"""Background jobs driving the scoring batch."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any

import psycopg

from ..batch import connector, run_scoring_batch
from ..config import Config
from ..registry import register
from ..utils import parse_iso_date

logger = logging.getLogger(__name__)

MAX_CATCH_UP_DAYS = 6


def dates_to_score(payload: dict[str, Any], today: date) -> list[date]:
    """Explicit date, or today plus one earlier day per missed nightly run."""
    if payload.get("date"):
        return [parse_iso_date(payload["date"], today)]
    missed = int(payload.get("missed_runs") or 0)
    if int(payload.get("interval_hours") or 24) < 24:
        missed = 0
    missed = max(0, min(missed, MAX_CATCH_UP_DAYS))
    return [today - timedelta(days=offset) for offset in range(missed, -1, -1)]


@register("scoring.nightly")
async def handle_nightly_scoring(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    """Score every known user; each user commits on its own connection."""
    config = Config.from_env()
    today = datetime.now(timezone.utc).date()
    for day in dates_to_score(payload, today):
        result = await run_scoring_batch(
            connector(config.database_url),
            day,
            concurrency=config.score_concurrency,
            unit_timeout_seconds=config.unit_timeout_seconds,
            evaluate_interventions=bool(payload.get("evaluate_interventions", False)) and day == today,
        )
        logger.info("scoring.nightly finished for %s: %s", day.isoformat(), result.to_dict())


@register("scoring.user")
async def handle_user_scoring(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    """On-demand score refresh for one user."""
    user_id = payload.get("user_id")
    if not user_id:
        raise ValueError("scoring.user requires user_id")
    config = Config.from_env()
    day = parse_iso_date(payload.get("date"), datetime.now(timezone.utc).date())
    result = await run_scoring_batch(
        connector(config.database_url),
        day,
        [str(user_id)],
        concurrency=1,
        unit_timeout_seconds=config.unit_timeout_seconds,
        evaluate_interventions=bool(payload.get("evaluate_interventions", True)),
    )
    if result.failed:
        raise RuntimeError(result.results[0].error or "scoring failed")
