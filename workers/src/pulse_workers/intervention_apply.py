"""Manual application of a stored intervention by its owner.

The concrete action is re-derived from the intervention type through a small
action table. A row already accepted is returned as-is, so replays never
duplicate reschedules or created tasks.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .context import RequestContext
from .errors import InterventionNotFound
from .ledger import as_json, insert_audit, insert_change_event
from .outbox import BehaviorSignal, apply_effects
from .product_events import track_product_event
from .utils import next_day

logger = logging.getLogger(__name__)

ACTION_TASK_LIMIT = 3

ActionFn = Callable[
    [psycopg.AsyncConnection[Any], RequestContext, str, str],
    Awaitable[list[dict[str, Any]]],
]


@dataclass
class ApplyOutcome:
    intervention_id: str
    actions: list[dict[str, Any]] = field(default_factory=list)
    already_applied: bool = False


async def _restructure(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, intervention_id: str, intervention_type: str
) -> list[dict[str, Any]]:
    """Move low/medium work-in-progress back to todo."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT id, title
            FROM tasks
            WHERE user_id = %s
              AND workspace_id = %s
              AND kanban_status = 'doing'
              AND priority IN ('low', 'medium')
              AND deleted_at IS NULL
            ORDER BY id
            LIMIT %s
            """,
            (ctx.user_id, ctx.workspace_id, ACTION_TASK_LIMIT),
        )
        tasks = await cur.fetchall()
    if not tasks:
        return []

    task_ids = [str(t["id"]) for t in tasks]
    await conn.execute(
        "UPDATE tasks SET kanban_status = 'todo', updated_at = NOW() WHERE id = ANY(%s) AND user_id = %s",
        (task_ids, ctx.user_id),
    )
    for task_id in task_ids:
        await insert_change_event(conn, ctx, "task_events", task_id, "status_changed", {
            "old_status": "doing",
            "new_status": "todo",
            "reason": "ai_intervention",
            "intervention_id": intervention_id,
        })
    return [{"action": "tasks_moved_to_todo", "count": len(tasks), "tasks": [t["title"] for t in tasks]}]


async def _motivation(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, intervention_id: str, intervention_type: str
) -> list[dict[str, Any]]:
    """Postpone a few non-urgent tasks due today."""
    tomorrow = next_day(ctx.date)
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT id, title
            FROM tasks
            WHERE user_id = %s
              AND workspace_id = %s
              AND due_date = %s
              AND COALESCE(priority, '') NOT IN ('urgent', 'high')
              AND status <> 'done'
              AND deleted_at IS NULL
            ORDER BY id
            LIMIT %s
            """,
            (ctx.user_id, ctx.workspace_id, ctx.date, ACTION_TASK_LIMIT),
        )
        tasks = await cur.fetchall()
    if not tasks:
        return []

    task_ids = [str(t["id"]) for t in tasks]
    await conn.execute(
        "UPDATE tasks SET due_date = %s, updated_at = NOW() WHERE id = ANY(%s) AND user_id = %s",
        (tomorrow, task_ids, ctx.user_id),
    )
    for task_id in task_ids:
        await insert_change_event(conn, ctx, "task_events", task_id, "rescheduled", {
            "old_date": ctx.date,
            "new_date": tomorrow,
            "reason": "ai_intervention",
            "intervention_id": intervention_id,
        })
    return [{"action": "tasks_postponed", "count": len(tasks), "tasks": [t["title"] for t in tasks]}]


async def _challenge(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, intervention_id: str, intervention_type: str
) -> list[dict[str, Any]]:
    title = "Micro-challenge of the day"
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            INSERT INTO tasks (
                user_id, workspace_id, title, description, priority,
                due_date, status, kanban_status, source
            )
            VALUES (%s, %s, %s, %s, 'high', %s, 'todo', 'todo', 'ai')
            RETURNING id
            """,
            (
                ctx.user_id,
                ctx.workspace_id,
                title,
                "Complete one concrete action to get your momentum back.",
                ctx.date,
            ),
        )
        row = await cur.fetchone()
    task_id = str(row["id"])
    await insert_change_event(conn, ctx, "task_events", task_id, "created", {
        "title": title,
        "reason": "ai_intervention",
        "intervention_id": intervention_id,
    })
    return [{"action": "micro_challenge_created", "task": title, "task_id": task_id}]


async def _praise(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, intervention_id: str, intervention_type: str
) -> list[dict[str, Any]]:
    await apply_effects(conn, ctx, [BehaviorSignal(
        signal_type="momentum",
        score=0.8,
        source="ai_praise",
        metadata={"intervention_id": intervention_id},
    )])
    return [{"action": "momentum_signal_recorded", "type": "positive"}]


async def _acknowledge(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, intervention_id: str, intervention_type: str
) -> list[dict[str, Any]]:
    await apply_effects(conn, ctx, [BehaviorSignal(
        signal_type="acknowledgment",
        score=0.5,
        source="ai_intervention",
        metadata={"intervention_id": intervention_id, "type": intervention_type},
    )])
    return [{"action": "intervention_acknowledged", "type": intervention_type}]


ACTION_TABLE: dict[str, ActionFn] = {
    "warning": _restructure,
    "restructure": _restructure,
    "motivation": _motivation,
    "challenge": _challenge,
    "praise": _praise,
}


def action_for(intervention_type: str) -> ActionFn:
    return ACTION_TABLE.get(intervention_type, _acknowledge)


async def apply_intervention(
    conn: psycopg.AsyncConnection[Any],
    ctx: RequestContext,
    intervention_id: str,
    now: datetime,
) -> ApplyOutcome:
    async with conn.transaction():
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT id, intervention_type, user_action, context
                FROM ai_interventions
                WHERE id = %s AND user_id = %s
                FOR UPDATE
                """,
                (intervention_id, ctx.user_id),
            )
            intervention = await cur.fetchone()
        if intervention is None:
            raise InterventionNotFound(f"intervention {intervention_id} not found")

        context = dict(intervention["context"] or {})
        if intervention["user_action"] == "accepted":
            logger.info(
                "Intervention %s already accepted, skipping",
                intervention_id,
                extra=ctx.log_extra,
            )
            return ApplyOutcome(
                intervention_id=intervention_id,
                actions=list(context.get("applied_actions") or []),
                already_applied=True,
            )

        intervention_type = str(intervention["intervention_type"])
        actions = await action_for(intervention_type)(conn, ctx, intervention_id, intervention_type)

        await conn.execute(
            """
            UPDATE ai_interventions
            SET user_action = 'accepted',
                responded_at = %s,
                state = 'applied',
                context = %s
            WHERE id = %s
            """,
            (now, as_json({**context, "applied_actions": actions}), intervention_id),
        )
        await insert_audit(
            conn,
            ctx,
            "AI_INTERVENTION_APPLIED",
            "ai_interventions",
            intervention_id,
            {"results": actions},
        )
        await track_product_event(
            conn,
            ctx,
            "ai_intervention_accepted",
            "ai_interventions",
            intervention_id,
            {"intervention_type": intervention_type, "actions_count": len(actions)},
        )

    logger.info(
        "Intervention %s applied manually (%d action(s))",
        intervention_id,
        len(actions),
        extra=ctx.log_extra,
    )
    return ApplyOutcome(intervention_id=intervention_id, actions=actions)
