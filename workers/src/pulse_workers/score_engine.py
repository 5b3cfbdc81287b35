"""Compute, persist and signal one user's daily score.

Persistence is upsert-on-(user_id, date) for both ``scores_daily`` and the
dashboard-facing ``daily_stats``, so recomputing a date overwrites.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

import psycopg

from .context import RequestContext
from .outbox import Effect, SystemEvent, apply_effects
from .score_facts import load_score_facts
from .scoring import (
    BURNOUT_CRITICAL_THRESHOLD,
    FINANCE_LOW_THRESHOLD,
    DailyScore,
    DailyStats,
    compute_daily_score,
    compute_daily_stats,
)

logger = logging.getLogger(__name__)


@dataclass
class ScoreOutcome:
    score: DailyScore
    stats: DailyStats
    effects: list[Effect] = field(default_factory=list)
    effects_applied: int = 0


def threshold_effects(day: date, score: DailyScore) -> list[Effect]:
    """Signals raised by a freshly computed score."""
    effects: list[Effect] = []
    if score.burnout_index > BURNOUT_CRITICAL_THRESHOLD:
        effects.append(SystemEvent(
            event_type="burnout.critical",
            entity="scores_daily",
            entity_id=day.isoformat(),
            payload={"date": day.isoformat(), "burnout_index": score.burnout_index},
        ))
    if score.finance_score < FINANCE_LOW_THRESHOLD:
        effects.append(SystemEvent(
            event_type="budget.threshold_reached",
            entity="scores_daily",
            entity_id=day.isoformat(),
            payload={"date": day.isoformat(), "finance_score": score.finance_score},
        ))
    return effects


async def upsert_daily_score(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, score: DailyScore
) -> None:
    await conn.execute(
        """
        INSERT INTO scores_daily (
            user_id, workspace_id, date,
            global_score, habits_score, tasks_score, finance_score, health_score,
            momentum_index, burnout_index, consistency_factor, computed_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NOW())
        ON CONFLICT (user_id, date) DO UPDATE SET
            workspace_id = EXCLUDED.workspace_id,
            global_score = EXCLUDED.global_score,
            habits_score = EXCLUDED.habits_score,
            tasks_score = EXCLUDED.tasks_score,
            finance_score = EXCLUDED.finance_score,
            health_score = EXCLUDED.health_score,
            momentum_index = EXCLUDED.momentum_index,
            burnout_index = EXCLUDED.burnout_index,
            consistency_factor = EXCLUDED.consistency_factor,
            computed_at = NOW()
        """,
        (
            ctx.user_id,
            ctx.workspace_id,
            ctx.date,
            score.global_score,
            score.habits_score,
            score.tasks_score,
            score.finance_score,
            score.health_score,
            score.momentum_index,
            score.burnout_index,
            score.consistency_factor,
        ),
    )


async def upsert_daily_stats(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, stats: DailyStats
) -> None:
    await conn.execute(
        """
        INSERT INTO daily_stats (
            user_id, workspace_id, date,
            tasks_planned, tasks_completed, habits_completed, habits_total,
            focus_minutes, overload_index, clarity_score, global_score, updated_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NOW())
        ON CONFLICT (user_id, date) DO UPDATE SET
            workspace_id = EXCLUDED.workspace_id,
            tasks_planned = EXCLUDED.tasks_planned,
            tasks_completed = EXCLUDED.tasks_completed,
            habits_completed = EXCLUDED.habits_completed,
            habits_total = EXCLUDED.habits_total,
            focus_minutes = EXCLUDED.focus_minutes,
            overload_index = EXCLUDED.overload_index,
            clarity_score = EXCLUDED.clarity_score,
            global_score = EXCLUDED.global_score,
            updated_at = NOW()
        """,
        (
            ctx.user_id,
            ctx.workspace_id,
            ctx.date,
            stats.tasks_planned,
            stats.tasks_completed,
            stats.habits_completed,
            stats.habits_total,
            stats.focus_minutes,
            stats.overload_index,
            stats.clarity_score,
            stats.global_score,
        ),
    )


async def compute_and_store_score(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext
) -> ScoreOutcome:
    """Load facts, compute, upsert score + stats, then fire threshold signals.

    The upserts share one transaction; threshold signals are best-effort and
    never fail the computation.
    """
    facts = await load_score_facts(conn, ctx)
    score = compute_daily_score(facts)
    stats = compute_daily_stats(facts, score)

    async with conn.transaction():
        await upsert_daily_score(conn, ctx, score)
        await upsert_daily_stats(conn, ctx, stats)

    effects = threshold_effects(ctx.date, score)
    applied = await apply_effects(conn, ctx, effects, best_effort=True) if effects else 0

    logger.info(
        "Daily score computed (global=%.2f, burnout=%.2f, signals=%d)",
        score.global_score,
        score.burnout_index,
        applied,
        extra=ctx.log_extra,
    )
    return ScoreOutcome(score=score, stats=stats, effects=effects, effects_applied=applied)
