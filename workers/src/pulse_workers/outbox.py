"""Outbox of side effects produced by pure decision steps, applied by ``apply_effects``."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Union

import psycopg
from psycopg.types.json import Json

from .context import RequestContext
from .idempotency import idempotency_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SystemEvent:
    event_type: str
    entity: str
    entity_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    source: str = "pulse"


@dataclass(frozen=True)
class Notification:
    title: str
    message: str
    urgency: str
    notification_type: str = "intervention"
    action_url: str | None = "/observability"


@dataclass(frozen=True)
class BehaviorSignal:
    signal_type: str
    score: float
    source: str
    metadata: dict[str, Any] = field(default_factory=dict)


Effect = Union[SystemEvent, Notification, BehaviorSignal]


async def _emit_system_event(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, effect: SystemEvent
) -> None:
    event_id = idempotency_key(
        effect.entity,
        effect.entity_id,
        effect.event_type,
        ctx.user_id,
        ctx.workspace_id,
        effect.payload,
    )
    await conn.execute(
        """
        INSERT INTO system_events (
            user_id, workspace_id, event_type, entity, entity_id, payload, source, event_id
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (event_id) DO NOTHING
        """,
        (
            ctx.user_id,
            ctx.workspace_id,
            effect.event_type,
            effect.entity,
            effect.entity_id,
            Json(effect.payload),
            effect.source,
            event_id,
        ),
    )


async def _insert_notification(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, effect: Notification
) -> None:
    await conn.execute(
        """
        INSERT INTO ai_notifications (
            user_id, workspace_id, title, message, notification_type, urgency, action_url
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        """,
        (
            ctx.user_id,
            ctx.workspace_id,
            effect.title,
            effect.message,
            effect.notification_type,
            effect.urgency,
            effect.action_url,
        ),
    )


async def _insert_behavior_signal(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, effect: BehaviorSignal
) -> None:
    await conn.execute(
        """
        INSERT INTO behavior_signals (user_id, workspace_id, signal_type, score, source, metadata)
        VALUES (%s, %s, %s, %s, %s, %s)
        """,
        (
            ctx.user_id,
            ctx.workspace_id,
            effect.signal_type,
            effect.score,
            effect.source,
            Json(effect.metadata),
        ),
    )


async def apply_effect(conn: psycopg.AsyncConnection[Any], ctx: RequestContext, effect: Effect) -> None:
    if isinstance(effect, SystemEvent):
        await _emit_system_event(conn, ctx, effect)
    elif isinstance(effect, Notification):
        await _insert_notification(conn, ctx, effect)
    elif isinstance(effect, BehaviorSignal):
        await _insert_behavior_signal(conn, ctx, effect)
    else:
        raise TypeError(f"Unsupported effect {effect!r}")


async def apply_effects(
    conn: psycopg.AsyncConnection[Any],
    ctx: RequestContext,
    effects: list[Effect],
    *,
    best_effort: bool = False,
) -> int:
    """Apply effects in order and return how many were written.

    With ``best_effort`` every effect runs in its own savepoint and a failure is
    logged and skipped (fire-and-forget, never retried). Otherwise the first
    failure propagates to the caller's transaction.
    """
    applied = 0
    for effect in effects:
        if not best_effort:
            await apply_effect(conn, ctx, effect)
            applied += 1
            continue
        try:
            async with conn.transaction():
                await apply_effect(conn, ctx, effect)
            applied += 1
        except Exception as exc:
            logger.warning(
                "Dropped %s effect: %s",
                type(effect).__name__,
                exc,
                extra=ctx.log_extra,
            )
    return applied
