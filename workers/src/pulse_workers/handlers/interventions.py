from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import psycopg

from ..batch import build_context, evaluate_for_user
from ..registry import register
from ..utils import parse_iso_date

logger = logging.getLogger(__name__)


@register("interventions.evaluate")
async def handle_evaluate_interventions(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    """Evaluate intervention rules for one user against the already committed score."""
    user_id = payload.get("user_id")
    if not user_id:
        raise ValueError("interventions.evaluate requires user_id")
    now = datetime.now(timezone.utc)
    day = parse_iso_date(payload.get("date"), now.date())

    ctx = await build_context(conn, str(user_id), day)
    report = await evaluate_for_user(conn, ctx, now)
    logger.info(
        "interventions.evaluate finished (applied=%d, failed=%d)",
        len(report.applied),
        len(report.failures),
        extra=ctx.log_extra,
    )
