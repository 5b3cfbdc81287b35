"""Deterministic idempotency keys for event-sourced writes.

A key is ``{entity}_{operation}_{hash32}`` where ``hash32`` is the first 32 hex
characters of SHA-256 over the canonical JSON of the event identity. Identical
logical events always produce the same key, so a UNIQUE ``event_id`` column
turns replays into no-ops.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
from datetime import date, datetime
from typing import Any
from uuid import UUID

import psycopg
from psycopg import sql

logger = logging.getLogger(__name__)

# Tables carrying a UNIQUE event_id column.
EVENT_TABLES = frozenset({
    "user_journey_events",
    "audit_log",
    "task_events",
    "habit_events",
    "system_events",
})


def _canonical_scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if not math.isfinite(value):
            return "null"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (datetime, date)):
        return json.dumps(value.isoformat())
    if isinstance(value, UUID):
        return json.dumps(str(value))
    return json.dumps(value, ensure_ascii=False)


def canonical_json(value: Any) -> str:
    """Serialize with sorted object keys, arrays kept in order, None as null."""
    if value is None:
        return "null"
    if isinstance(value, dict):
        pairs = [
            json.dumps(str(key), ensure_ascii=False) + ":" + canonical_json(value[key])
            for key in sorted(value, key=str)
        ]
        return "{" + ",".join(pairs) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(canonical_json(item) for item in value) + "]"
    return _canonical_scalar(value)


def idempotency_key(
    entity: str,
    entity_id: str,
    operation: str,
    user_id: str,
    workspace_id: str,
    payload: dict[str, Any] | None = None,
) -> str:
    identity = {
        "entity": entity,
        "entityId": entity_id,
        "operation": operation,
        "userId": user_id,
        "workspaceId": workspace_id,
    }
    missing = [name for name, value in identity.items() if not value]
    if missing:
        raise ValueError(f"idempotency key requires {', '.join(missing)}")

    canonical = canonical_json({
        **{name: str(value) for name, value in identity.items()},
        "payload": payload if payload is not None else {},
    })
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{entity}_{operation}_{digest[:32]}"


async def is_event_processed(
    conn: psycopg.AsyncConnection[Any], table: str, event_id: str
) -> bool:
    """Point lookup on ``table.event_id``.

    Fails open: a lookup error is logged and reported as "not processed" so a
    transient read failure never blocks legitimate processing. The UNIQUE
    constraint on ``event_id`` still rejects a real duplicate at insert time.
    """
    if table not in EVENT_TABLES:
        raise ValueError(f"Unknown event table {table!r}")

    query = sql.SQL("SELECT 1 FROM {} WHERE event_id = %s LIMIT 1").format(
        sql.Identifier(table)
    )
    try:
        async with conn.transaction():
            async with conn.cursor() as cur:
                await cur.execute(query, (event_id,))
                row = await cur.fetchone()
    except psycopg.Error as exc:
        logger.warning(
            "Idempotency lookup failed on %s, treating as unprocessed: %s",
            table,
            exc,
            extra={"pulse_event_id": event_id},
        )
        return False
    return row is not None
