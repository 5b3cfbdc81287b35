"""Undo/audit ledger.

The audit log is append-only and idempotent on ``event_id``. Undo entries hold
the minimal payload needed to restore prior state, expire after a fixed window
and are consumed at most once.
"""

from __future__ import annotations

import functools
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .context import RequestContext
from .errors import NothingToRevert, NotRevertible
from .idempotency import idempotency_key
from .intervention_models import ReactivateHabits, RestoreTaskDates, parse_undo_payload
from .outbox import SystemEvent, apply_effects
from .product_events import track_product_event
from .utils import as_utc

logger = logging.getLogger(__name__)

UNDO_WINDOW = timedelta(hours=24)
UNDO_RETENTION_DAYS = 7

_dumps = functools.partial(json.dumps, default=str)


def as_json(value: Any) -> Json:
    return Json(value, dumps=_dumps)


@dataclass(frozen=True)
class RevertOutcome:
    undo_id: str
    entity: str
    entity_id: str
    action: str
    restored: int


async def insert_audit(
    conn: psycopg.AsyncConnection[Any],
    ctx: RequestContext,
    action: str,
    entity: str,
    entity_id: str,
    new_value: Any,
    *,
    old_value: Any = None,
    actor_id: str | None = None,
) -> str:
    """Append an audit row; replaying the same row is a no-op. Returns its event_id."""
    actor = actor_id or ctx.user_id
    event_id = idempotency_key(
        entity,
        entity_id,
        action,
        actor,
        ctx.workspace_id,
        json.loads(_dumps({"old": old_value, "new": new_value})),
    )
    await conn.execute(
        """
        INSERT INTO audit_log (
            user_id, workspace_id, action, entity, entity_id, old_value, new_value, event_id
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (event_id) DO NOTHING
        """,
        (
            actor,
            ctx.workspace_id,
            action,
            entity,
            entity_id,
            as_json(old_value),
            as_json(new_value),
            event_id,
        ),
    )
    return event_id


async def insert_change_event(
    conn: psycopg.AsyncConnection[Any],
    ctx: RequestContext,
    table: str,
    entity_id: str,
    event_type: str,
    payload: dict[str, Any],
) -> None:
    """Record a before/after change on a task or habit."""
    if table == "task_events":
        entity, column = "tasks", "task_id"
    elif table == "habit_events":
        entity, column = "habits", "habit_id"
    else:
        raise ValueError(f"Unknown change event table {table!r}")

    event_id = idempotency_key(entity, entity_id, event_type, ctx.user_id, ctx.workspace_id, payload)
    await conn.execute(
        f"""
        INSERT INTO {table} ({column}, user_id, workspace_id, event_type, payload, event_id)
        VALUES (%s, %s, %s, %s, %s, %s)
        ON CONFLICT (event_id) DO NOTHING
        """,
        (entity_id, ctx.user_id, ctx.workspace_id, event_type, as_json(payload), event_id),
    )


async def insert_undo_entry(
    conn: psycopg.AsyncConnection[Any],
    ctx: RequestContext,
    entity: str,
    entity_id: str,
    action: str,
    old_value: dict[str, Any],
    now: datetime,
    window: timedelta = UNDO_WINDOW,
) -> str:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            INSERT INTO undo_stack (
                user_id, workspace_id, entity, entity_id, action, old_value, expires_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                ctx.user_id,
                ctx.workspace_id,
                entity,
                entity_id,
                action,
                as_json(old_value),
                as_utc(now) + window,
            ),
        )
        row = await cur.fetchone()
    if row is None:
        raise RuntimeError("undo_stack insert returned no id")
    return str(row["id"])


async def _restore_task_dates(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, payload: RestoreTaskDates, undo_id: str
) -> int:
    restored = 0
    async with conn.cursor() as cur:
        for task in payload.original:
            await cur.execute(
                """
                UPDATE tasks
                SET due_date = %s, updated_at = NOW()
                WHERE id = %s AND user_id = %s AND workspace_id = %s
                """,
                (task.due_date, task.id, ctx.user_id, ctx.workspace_id),
            )
            restored += cur.rowcount
    for task in payload.original:
        await insert_change_event(
            conn,
            ctx,
            "task_events",
            task.id,
            "rescheduled",
            {"new_date": task.due_date, "reason": "undo", "undo_id": undo_id},
        )
    return restored


async def _reactivate_habits(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, payload: ReactivateHabits, undo_id: str
) -> int:
    async with conn.cursor() as cur:
        await cur.execute(
            """
            UPDATE habits
            SET is_active = true, paused_until = NULL, updated_at = NOW()
            WHERE id = ANY(%s) AND user_id = %s AND workspace_id = %s
            """,
            (payload.habit_ids, ctx.user_id, ctx.workspace_id),
        )
        restored = cur.rowcount
    for habit_id in payload.habit_ids:
        await insert_change_event(
            conn,
            ctx,
            "habit_events",
            habit_id,
            "reactivated",
            {"reason": "undo", "undo_id": undo_id},
        )
    return restored


async def revert(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, undo_id: str, now: datetime
) -> RevertOutcome:
    """Apply an undo entry's old_value and consume it.

    Raises ``NothingToRevert`` when the caller owns no such entry and
    ``NotRevertible`` when it is already consumed, expired or unreadable.
    """
    async with conn.transaction():
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT id, entity, entity_id, action, old_value, expires_at, is_undone
                FROM undo_stack
                WHERE id = %s AND user_id = %s
                FOR UPDATE
                """,
                (undo_id, ctx.user_id),
            )
            entry = await cur.fetchone()

        if entry is None:
            raise NothingToRevert(f"no undo entry {undo_id}")
        if entry["is_undone"]:
            raise NotRevertible("already_reverted", undo_id)
        if as_utc(now) >= as_utc(entry["expires_at"]):
            raise NotRevertible("expired", undo_id)
        try:
            payload = parse_undo_payload(entry["old_value"])
        except ValueError as exc:
            raise NotRevertible("unsupported_payload", undo_id) from exc

        if isinstance(payload, RestoreTaskDates):
            restored = await _restore_task_dates(conn, ctx, payload, undo_id)
        else:
            restored = await _reactivate_habits(conn, ctx, payload, undo_id)

        await conn.execute(
            "UPDATE undo_stack SET is_undone = true, undone_at = %s WHERE id = %s",
            (now, undo_id),
        )
        entity = str(entry["entity"])
        entity_id = str(entry["entity_id"])
        if entity == "ai_interventions":
            await conn.execute(
                """
                UPDATE ai_interventions
                SET state = 'reverted', reverted_at = %s
                WHERE id = %s AND user_id = %s
                """,
                (now, entity_id, ctx.user_id),
            )
        await insert_audit(
            conn,
            ctx,
            "undo",
            entity,
            entity_id,
            {"undo_id": undo_id, "restored": restored},
            old_value=entry["old_value"],
        )

    await apply_effects(
        conn,
        ctx,
        [SystemEvent(
            event_type="action.undone",
            entity=entity,
            entity_id=entity_id,
            payload={"undo_id": undo_id, "action": payload.action},
            source="api",
        )],
        best_effort=True,
    )
    if entity == "ai_interventions":
        try:
            async with conn.transaction():
                await track_product_event(
                    conn, ctx, "ai_intervention_reverted", "ai_interventions", entity_id,
                    {"undo_id": undo_id},
                )
        except psycopg.Error as exc:
            logger.warning("Revert product event dropped: %s", exc, extra=ctx.log_extra)

    logger.info(
        "Undo entry %s reverted (%s, restored=%d)",
        undo_id,
        payload.action,
        restored,
        extra=ctx.log_extra,
    )
    return RevertOutcome(
        undo_id=undo_id,
        entity=entity,
        entity_id=entity_id,
        action=payload.action,
        restored=restored,
    )


async def purge_expired_undo_entries(
    conn: psycopg.AsyncConnection[Any], retention_days: int = UNDO_RETENTION_DAYS
) -> int:
    """Delete undo entries that expired more than ``retention_days`` ago."""
    async with conn.cursor() as cur:
        await cur.execute(
            """
            DELETE FROM undo_stack
            WHERE expires_at < NOW() - make_interval(days => %s)
            """,
            (retention_days,),
        )
        return cur.rowcount
