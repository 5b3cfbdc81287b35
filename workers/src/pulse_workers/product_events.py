"""Idempotent product-journey event tracking."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .context import RequestContext
from .idempotency import idempotency_key, is_event_processed

logger = logging.getLogger(__name__)

VALID_EVENT_TYPES = frozenset({
    "signup",
    "activation",
    "login",
    "habit_created",
    "habit_completed",
    "habit_streak_locked",
    "task_created",
    "task_completed",
    "finance_imported",
    "finance_transaction_added",
    "ai_action_proposed",
    "ai_action_accepted",
    "ai_action_rejected",
    "ai_intervention_accepted",
    "ai_intervention_rejected",
    "ai_intervention_reverted",
    "goal_created",
    "goal_completed",
    "focus_session_completed",
    "journal_entry_created",
    "feature_used",
    "page_view",
    "churn_risk_detected",
    "retention_signal",
})


class InvalidEventType(ValueError):
    pass


@dataclass(frozen=True)
class TrackResult:
    event_id: str
    duplicate: bool


async def track_product_event(
    conn: psycopg.AsyncConnection[Any],
    ctx: RequestContext,
    event_type: str,
    entity: str | None = None,
    entity_id: str | None = None,
    payload: dict[str, Any] | None = None,
) -> TrackResult:
    if event_type not in VALID_EVENT_TYPES:
        raise InvalidEventType(f"Invalid event_type {event_type!r}")

    payload = payload or {}
    event_id = idempotency_key(
        "user_journey",
        entity_id or ctx.user_id,
        event_type,
        ctx.user_id,
        ctx.workspace_id,
        payload,
    )
    if await is_event_processed(conn, "user_journey_events", event_id):
        return TrackResult(event_id=event_id, duplicate=True)

    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            INSERT INTO user_journey_events (
                user_id, workspace_id, event_type, entity, entity_id, payload, event_id
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (event_id) DO NOTHING
            RETURNING id
            """,
            (
                ctx.user_id,
                ctx.workspace_id,
                event_type,
                entity,
                entity_id,
                Json(payload),
                event_id,
            ),
        )
        row = await cur.fetchone()

    duplicate = row is None
    logger.info(
        "Product event %s tracked (duplicate=%s)",
        event_type,
        duplicate,
        extra={**ctx.log_extra, "pulse_event_id": event_id},
    )
    return TrackResult(event_id=event_id, duplicate=duplicate)
