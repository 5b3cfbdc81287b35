"""Automatic intervention engine.

Rules run in a fixed order (overload, burnout, streak risk, financial stress).
Each rule loads its own state right before it is evaluated, so later rules see
earlier mutations, and each rule runs inside its own savepoint: a failing rule
leaves no intervention, undo entry, notification or audit row behind, and the
remaining rules still run.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .context import RequestContext
from .intervention_models import (
    CreateReminderTask,
    InterventionDecision,
    PauseHabits,
    RescheduleTasks,
    urgency_for,
)
from .intervention_rules import (
    BURNOUT_THRESHOLD,
    OVERLOAD_CANDIDATE_LIMIT,
    OVERLOAD_THRESHOLD,
    PAUSE_HABIT_LIMIT,
    CandidateTask,
    HabitRef,
    StreakHabit,
    evaluate_burnout,
    evaluate_financial_stress,
    evaluate_overload,
    evaluate_streak_risk,
)
from .ledger import as_json, insert_audit, insert_change_event, insert_undo_entry
from .metrics import record_intervention
from .outbox import Notification, apply_effects
from .utils import local_date_for_timezone, local_datetime, month_start

logger = logging.getLogger(__name__)

NOTIFICATION_TITLE = "Automatic AI intervention"

_STATS_COLUMNS = (
    "tasks_planned",
    "tasks_completed",
    "habits_completed",
    "habits_total",
    "focus_minutes",
    "overload_index",
    "clarity_score",
)


@dataclass(frozen=True)
class AppliedIntervention:
    id: str
    intervention_type: str
    severity: str
    reason: str
    undo_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.intervention_type,
            "severity": self.severity,
            "reason": self.reason,
            "undo_id": self.undo_id,
        }


@dataclass(frozen=True)
class RuleFailure:
    rule: str
    error: str


@dataclass
class EngineReport:
    applied: list[AppliedIntervention] = field(default_factory=list)
    failures: list[RuleFailure] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "interventions_count": len(self.applied),
            "interventions": [i.to_dict() for i in self.applied],
            "failures": [{"rule": f.rule, "error": f.error} for f in self.failures],
            "skipped": list(self.skipped),
        }
        if self.message:
            data["message"] = self.message
        return data


# --- State loading ---


async def load_today_stats(conn: psycopg.AsyncConnection[Any], ctx: RequestContext) -> dict[str, Any] | None:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            f"""
            SELECT {", ".join(_STATS_COLUMNS)}
            FROM daily_stats
            WHERE user_id = %s AND date = %s
            """,
            (ctx.user_id, ctx.date),
        )
        row = await cur.fetchone()
    if row is None:
        return None
    return {key: float(row[key]) if row[key] is not None else None for key in _STATS_COLUMNS}


async def applied_types_for_day(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext
) -> set[str]:
    """Intervention types already auto-applied for this user and date, reverted ones included."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT DISTINCT intervention_type
            FROM ai_interventions
            WHERE user_id = %s
              AND workspace_id = %s
              AND intervention_date = %s
              AND auto_applied
            """,
            (ctx.user_id, ctx.workspace_id, ctx.date),
        )
        rows = await cur.fetchall()
    return {row["intervention_type"] for row in rows}


async def _overload_state(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext
) -> list[CandidateTask]:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT id, title, due_date
            FROM tasks
            WHERE user_id = %s
              AND workspace_id = %s
              AND due_date = %s
              AND status = 'todo'
              AND COALESCE(priority, '') NOT IN ('urgent', 'high')
              AND deleted_at IS NULL
            ORDER BY id
            LIMIT %s
            """,
            (ctx.user_id, ctx.workspace_id, ctx.date, OVERLOAD_CANDIDATE_LIMIT),
        )
        rows = await cur.fetchall()
    return [CandidateTask(id=str(r["id"]), title=r["title"], due_date=r["due_date"]) for r in rows]


async def _burnout_state(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext
) -> tuple[float, list[HabitRef]]:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            "SELECT burnout_index FROM scores_daily WHERE user_id = %s AND date = %s",
            (ctx.user_id, ctx.date),
        )
        score = await cur.fetchone()
        burnout = float(score["burnout_index"] or 0) if score else 0.0
        if burnout <= BURNOUT_THRESHOLD:
            return burnout, []
        await cur.execute(
            """
            SELECT id, name
            FROM habits
            WHERE user_id = %s
              AND workspace_id = %s
              AND is_active
              AND deleted_at IS NULL
              AND name NOT ILIKE '%%critical%%'
            ORDER BY id
            LIMIT %s
            """,
            (ctx.user_id, ctx.workspace_id, PAUSE_HABIT_LIMIT),
        )
        rows = await cur.fetchall()
    return burnout, [HabitRef(id=str(r["id"]), name=r["name"]) for r in rows]


async def _streak_state(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, local_day: date
) -> list[StreakHabit]:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT
                h.id,
                h.name,
                COALESCE(s.current_streak, 0) AS current_streak,
                EXISTS (
                    SELECT 1 FROM habit_logs l
                    WHERE l.habit_id = h.id
                      AND l.user_id = h.user_id
                      AND l.date = %s
                      AND l.completed
                ) AS completed_today
            FROM habits h
            LEFT JOIN streaks s ON s.habit_id = h.id
            WHERE h.user_id = %s
              AND h.workspace_id = %s
              AND h.is_active
              AND h.deleted_at IS NULL
            ORDER BY h.id
            """,
            (local_day, ctx.user_id, ctx.workspace_id),
        )
        rows = await cur.fetchall()
    return [
        StreakHabit(
            id=str(r["id"]),
            name=r["name"],
            current_streak=int(r["current_streak"] or 0),
            completed_today=bool(r["completed_today"]),
        )
        for r in rows
    ]


async def _finance_state(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext
) -> tuple[float, float | None]:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT monthly_limit
            FROM budgets
            WHERE user_id = %s AND category_id IS NULL
            ORDER BY id
            LIMIT 1
            """,
            (ctx.user_id,),
        )
        budget = await cur.fetchone()
        if budget is None or not budget["monthly_limit"]:
            return 0.0, None
        await cur.execute(
            """
            SELECT COALESCE(SUM(ABS(amount)), 0) AS spent
            FROM finance_transactions
            WHERE user_id = %s
              AND type = 'expense'
              AND date >= %s
              AND date <= %s
            """,
            (ctx.user_id, month_start(ctx.date), ctx.date),
        )
        spend = await cur.fetchone()
    return float(spend["spent"] if spend else 0), float(budget["monthly_limit"])


# --- Rule runners: load state, then decide ---

RuleFn = Callable[
    [psycopg.AsyncConnection[Any], RequestContext, dict[str, Any], datetime],
    Awaitable[InterventionDecision | None],
]


async def _run_overload(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, stats: dict[str, Any], now: datetime
) -> InterventionDecision | None:
    overload = stats.get("overload_index") or 0.0
    candidates = await _overload_state(conn, ctx) if overload > OVERLOAD_THRESHOLD else []
    return evaluate_overload(overload, candidates, ctx.date)


async def _run_burnout(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, stats: dict[str, Any], now: datetime
) -> InterventionDecision | None:
    burnout, habits = await _burnout_state(conn, ctx)
    return evaluate_burnout(burnout, habits, now)


async def _run_streak(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, stats: dict[str, Any], now: datetime
) -> InterventionDecision | None:
    # Hour, habit logs and reminder due date all use the user's local day.
    local_now = local_datetime(now, ctx.timezone)
    local_day = local_date_for_timezone(now, ctx.timezone)
    habits = await _streak_state(conn, ctx, local_day)
    return evaluate_streak_risk(local_now, habits, local_day)


async def _run_finance(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, stats: dict[str, Any], now: datetime
) -> InterventionDecision | None:
    spent, limit = await _finance_state(conn, ctx)
    return evaluate_financial_stress(spent, limit)


RULES: tuple[tuple[str, RuleFn], ...] = (
    ("reduce_load", _run_overload),
    ("force_break", _run_burnout),
    ("streak_protection", _run_streak),
    ("financial_alert", _run_finance),
)


# --- Application ---


async def _apply_mutation(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, decision: InterventionDecision
) -> InterventionDecision:
    """Perform the decision's mutation and its change events; returns the decision with a filled impact."""
    mutation = decision.mutation
    if mutation is None:
        return decision

    if isinstance(mutation, RescheduleTasks):
        await conn.execute(
            """
            UPDATE tasks
            SET due_date = %s, updated_at = NOW()
            WHERE id = ANY(%s) AND user_id = %s AND workspace_id = %s
            """,
            (mutation.to_date, mutation.task_ids, ctx.user_id, ctx.workspace_id),
        )
        for task_id in mutation.task_ids:
            await insert_change_event(conn, ctx, "task_events", task_id, "rescheduled", {
                "old_date": mutation.from_date,
                "new_date": mutation.to_date,
                "reason": "ai_intervention_overload",
            })
        return decision

    if isinstance(mutation, PauseHabits):
        await conn.execute(
            """
            UPDATE habits
            SET is_active = false, paused_until = %s, updated_at = NOW()
            WHERE id = ANY(%s) AND user_id = %s AND workspace_id = %s
            """,
            (mutation.pause_until, mutation.habit_ids, ctx.user_id, ctx.workspace_id),
        )
        for habit_id in mutation.habit_ids:
            await insert_change_event(conn, ctx, "habit_events", habit_id, "paused", {
                "is_active": {"before": True, "after": False},
                "pause_until": mutation.pause_until,
                "reason": "ai_intervention_burnout",
            })
        return decision

    if isinstance(mutation, CreateReminderTask):
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                INSERT INTO tasks (
                    user_id, workspace_id, title, description, priority,
                    due_date, status, kanban_status, source
                )
                VALUES (%s, %s, %s, %s, %s, %s, 'todo', 'todo', 'ai')
                RETURNING id
                """,
                (
                    ctx.user_id,
                    ctx.workspace_id,
                    mutation.title,
                    mutation.description,
                    mutation.priority,
                    mutation.due_date,
                ),
            )
            row = await cur.fetchone()
        task_id = str(row["id"])
        await insert_change_event(conn, ctx, "task_events", task_id, "created", {
            "title": mutation.title,
            "reason": "ai_intervention_streak",
        })
        impact = decision.impact.model_copy(update={"reminder_task_id": task_id})
        return decision.model_copy(update={"impact": impact})

    raise TypeError(f"Unsupported mutation {mutation!r}")


async def resume_expired_pauses(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, now: datetime
) -> list[str]:
    """Reactivate habits whose burnout pause has ended; returns their ids."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            WITH due AS (
                SELECT id, paused_until
                FROM habits
                WHERE user_id = %s
                  AND workspace_id = %s
                  AND NOT is_active
                  AND paused_until IS NOT NULL
                  AND paused_until <= %s
                FOR UPDATE
            )
            UPDATE habits h
            SET is_active = true, paused_until = NULL, updated_at = NOW()
            FROM due
            WHERE h.id = due.id
            RETURNING h.id, due.paused_until
            """,
            (ctx.user_id, ctx.workspace_id, now),
        )
        rows = await cur.fetchall()

    for row in rows:
        await insert_change_event(conn, ctx, "habit_events", str(row["id"]), "resumed", {
            "is_active": {"before": False, "after": True},
            "paused_until": row["paused_until"],
            "reason": "pause_expired",
        })
    if rows:
        logger.info("Resumed %d paused habit(s)", len(rows), extra=ctx.log_extra)
    return [str(row["id"]) for row in rows]


async def apply_decision(
    conn: psycopg.AsyncConnection[Any],
    ctx: RequestContext,
    decision: InterventionDecision,
    stats: dict[str, Any],
    now: datetime,
) -> AppliedIntervention:
    """Mutation, change events, intervention row, undo entry, notification, audit row.

    Callers run this inside a transaction so the steps land together or not at all.
    """
    decision = await _apply_mutation(conn, ctx, decision)
    impact = decision.impact.model_dump(mode="json")

    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            INSERT INTO ai_interventions (
                user_id, workspace_id, intervention_type, intervention_date, reason,
                severity, auto_applied, applied_at, state, impact_before, context
            )
            VALUES (%s, %s, %s, %s, %s, %s, true, %s, 'applied', %s, %s)
            RETURNING id
            """,
            (
                ctx.user_id,
                ctx.workspace_id,
                decision.intervention_type,
                ctx.date,
                decision.reason,
                decision.severity,
                now,
                as_json(stats),
                as_json({"impact": impact}),
            ),
        )
        row = await cur.fetchone()
    intervention_id = str(row["id"])

    undo_id = None
    if decision.undo is not None:
        undo_id = await insert_undo_entry(
            conn,
            ctx,
            "ai_interventions",
            intervention_id,
            "ai_intervention",
            decision.undo.model_dump(mode="json"),
            now,
        )

    await apply_effects(conn, ctx, [Notification(
        title=NOTIFICATION_TITLE,
        message=decision.reason,
        urgency=urgency_for(decision.severity),
    )])
    await insert_audit(
        conn,
        ctx,
        "AI_INTERVENTION_APPLIED",
        "ai_interventions",
        intervention_id,
        {"type": decision.intervention_type, "severity": decision.severity, "impact": impact},
    )
    return AppliedIntervention(
        id=intervention_id,
        intervention_type=decision.intervention_type,
        severity=decision.severity,
        reason=decision.reason,
        undo_id=undo_id,
    )


async def evaluate_and_apply(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, now: datetime
) -> EngineReport:
    """Evaluate every rule against today's state and apply the ones that fire."""
    stats = await load_today_stats(conn, ctx)
    if stats is None:
        return EngineReport(message="No stats available")

    report = EngineReport()
    already_applied = await applied_types_for_day(conn, ctx)
    for rule_name, run_rule in RULES:
        # At most one automatic intervention per type and day; an undone one stays undone.
        if rule_name in already_applied:
            report.skipped.append(rule_name)
            continue
        try:
            async with conn.transaction():
                decision = await run_rule(conn, ctx, stats, now)
                if decision is None:
                    continue
                applied = await apply_decision(conn, ctx, decision, stats, now)
        except Exception as exc:
            record_intervention(rule_name, applied=False)
            logger.exception(
                "Intervention rule %s failed",
                rule_name,
                extra={**ctx.log_extra, "pulse_rule": rule_name},
            )
            report.failures.append(RuleFailure(rule=rule_name, error=str(exc) or type(exc).__name__))
            continue

        record_intervention(applied.intervention_type, applied=True)
        report.applied.append(applied)
        logger.info(
            "Intervention %s applied (severity=%s)",
            applied.intervention_type,
            applied.severity,
            extra={**ctx.log_extra, "pulse_rule": rule_name, "pulse_intervention_id": applied.id},
        )
    return report
