"""Scheduled cleanup of long-expired undo entries."""

from __future__ import annotations

import logging
from typing import Any

import psycopg

from ..ledger import UNDO_RETENTION_DAYS, purge_expired_undo_entries
from ..registry import register

logger = logging.getLogger(__name__)


@register("maintenance.undo_retention")
async def handle_undo_retention(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    retention_days = int(payload.get("retention_days") or UNDO_RETENTION_DAYS)
    deleted = await purge_expired_undo_entries(conn, retention_days)
    logger.info(
        "maintenance.undo_retention completed (deleted=%d, retention_days=%d)",
        deleted,
        retention_days,
    )
