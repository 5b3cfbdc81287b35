"""Load the raw aggregates a daily score is computed from."""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo

import psycopg
from psycopg.rows import dict_row

from .context import RequestContext
from .scoring import DEFAULT_DAILY_CAPACITY_MIN, ScoreFacts, TaskFact
from .utils import month_start

logger = logging.getLogger(__name__)

HABIT_WINDOW_DAYS = 7
RECENT_SCORE_WINDOW_DAYS = 7


def local_day_bounds(ctx: RequestContext) -> tuple[datetime, datetime]:
    """UTC-comparable [start, end) bounds of ctx.date in the user's timezone."""
    tz = ZoneInfo(ctx.timezone)
    start = datetime.combine(ctx.date, time.min, tzinfo=tz)
    return start, start + timedelta(days=1)


async def _load_habit_facts(
    cur: psycopg.AsyncCursor[Any], ctx: RequestContext
) -> tuple[int, int, int]:
    await cur.execute(
        """
        SELECT
            COUNT(*) AS active_habits,
            COUNT(*) FILTER (
                WHERE EXISTS (
                    SELECT 1 FROM habit_logs l
                    WHERE l.habit_id = h.id AND l.date = %(day)s AND l.completed
                )
            ) AS completed_today
        FROM habits h
        WHERE h.user_id = %(user_id)s
          AND h.is_active
          AND h.deleted_at IS NULL
        """,
        {"user_id": ctx.user_id, "day": ctx.date},
    )
    row = await cur.fetchone() or {}
    active = int(row.get("active_habits") or 0)
    completed_today = int(row.get("completed_today") or 0)

    await cur.execute(
        """
        SELECT COUNT(*) AS completed
        FROM habit_logs
        WHERE user_id = %s
          AND completed
          AND date > %s
          AND date <= %s
        """,
        (ctx.user_id, ctx.date - timedelta(days=HABIT_WINDOW_DAYS), ctx.date),
    )
    week = await cur.fetchone() or {}
    return active, completed_today, int(week.get("completed") or 0)


async def _load_tasks(cur: psycopg.AsyncCursor[Any], ctx: RequestContext) -> tuple[TaskFact, ...]:
    await cur.execute(
        """
        SELECT status, priority, estimate_min, due_date
        FROM tasks
        WHERE user_id = %(user_id)s
          AND (due_date = %(day)s OR start_date = %(day)s)
          AND status <> 'cancelled'
          AND deleted_at IS NULL
        ORDER BY id
        """,
        {"user_id": ctx.user_id, "day": ctx.date},
    )
    rows = await cur.fetchall()
    return tuple(
        TaskFact(
            status=row["status"],
            priority=row["priority"],
            estimate_min=row["estimate_min"],
            has_due_date=row["due_date"] is not None,
        )
        for row in rows
    )


async def _load_finance(cur: psycopg.AsyncCursor[Any], ctx: RequestContext) -> tuple[float, float]:
    # Category budgets add up to the monthly total; the global row (no category)
    # is only the fallback when no category budgets exist.
    await cur.execute(
        """
        SELECT COALESCE(
            SUM(monthly_limit) FILTER (WHERE category_id IS NOT NULL),
            SUM(monthly_limit) FILTER (WHERE category_id IS NULL),
            0
        ) AS total
        FROM budgets
        WHERE user_id = %s
        """,
        (ctx.user_id,),
    )
    budget = await cur.fetchone() or {}
    await cur.execute(
        """
        SELECT COALESCE(SUM(amount), 0) AS spent
        FROM finance_transactions
        WHERE user_id = %s
          AND type = 'expense'
          AND date >= %s
          AND date <= %s
        """,
        (ctx.user_id, month_start(ctx.date), ctx.date),
    )
    spend = await cur.fetchone() or {}
    return float(budget.get("total") or 0), float(spend.get("spent") or 0)


async def _load_focus_minutes(cur: psycopg.AsyncCursor[Any], ctx: RequestContext) -> int:
    start, end = local_day_bounds(ctx)
    await cur.execute(
        """
        SELECT COALESCE(SUM(duration_min), 0) AS minutes
        FROM focus_sessions
        WHERE user_id = %s
          AND start_time >= %s
          AND start_time < %s
        """,
        (ctx.user_id, start, end),
    )
    row = await cur.fetchone() or {}
    return int(row.get("minutes") or 0)


async def load_recent_global_scores(
    cur: psycopg.AsyncCursor[Any], ctx: RequestContext
) -> tuple[float, ...]:
    """Stored global scores of the trailing week, oldest first, excluding ctx.date."""
    await cur.execute(
        """
        SELECT global_score
        FROM scores_daily
        WHERE user_id = %s
          AND date >= %s
          AND date < %s
        ORDER BY date ASC
        """,
        (ctx.user_id, ctx.date - timedelta(days=RECENT_SCORE_WINDOW_DAYS), ctx.date),
    )
    rows = await cur.fetchall()
    return tuple(float(row["global_score"]) for row in rows if row["global_score"] is not None)


async def _load_daily_capacity(cur: psycopg.AsyncCursor[Any], ctx: RequestContext) -> int:
    await cur.execute(
        "SELECT daily_capacity_min FROM user_preferences WHERE user_id = %s",
        (ctx.user_id,),
    )
    row = await cur.fetchone()
    if row is None or not row["daily_capacity_min"]:
        return DEFAULT_DAILY_CAPACITY_MIN
    return int(row["daily_capacity_min"])


async def load_score_facts(conn: psycopg.AsyncConnection[Any], ctx: RequestContext) -> ScoreFacts:
    async with conn.cursor(row_factory=dict_row) as cur:
        active, completed_today, week_completed = await _load_habit_facts(cur, ctx)
        tasks = await _load_tasks(cur, ctx)
        budget_total, month_spend = await _load_finance(cur, ctx)
        focus_minutes = await _load_focus_minutes(cur, ctx)
        recent = await load_recent_global_scores(cur, ctx)
        capacity = await _load_daily_capacity(cur, ctx)

    return ScoreFacts(
        active_habits=active,
        habits_completed_today=completed_today,
        week_logs_completed=week_completed,
        tasks=tasks,
        budget_total=budget_total,
        month_spend=month_spend,
        focus_minutes=focus_minutes,
        recent_global_scores=recent,
        daily_capacity_min=capacity,
    )


async def load_user_timezone(conn: psycopg.AsyncConnection[Any], user_id: str) -> str | None:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            "SELECT timezone FROM user_preferences WHERE user_id = %s",
            (user_id,),
        )
        row = await cur.fetchone()
    return row["timezone"] if row else None
