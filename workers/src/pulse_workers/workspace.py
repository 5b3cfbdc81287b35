"""Workspace resolution: every user maps to exactly one workspace id, never None.

Missing workspaces are bootstrapped lazily (workspace + owner membership +
free-tier usage limits). Concurrent bootstraps for the same user are settled
by the UNIQUE (user_id) constraint on memberships: the loser drops its orphan
workspace and returns the winner's id.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .errors import MultiTenantViolation, WorkspaceResolutionError

logger = logging.getLogger(__name__)

PERSONAL_WORKSPACE_NAME = "Mon espace personnel"

FREE_TIER_LIMITS: dict[str, int] = {
    "ai_requests_limit": 50,
    "ai_requests_used": 0,
    "automations_limit": 5,
    "automations_used": 0,
    "team_members_limit": 1,
    "team_members_used": 1,
    "storage_limit_mb": 100,
    "storage_used_mb": 0,
}

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def personal_slug(user_id: str, now_ms: int | None = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"personal-{user_id[:8]}-{_base36(now_ms)}"


async def _find_membership(conn: psycopg.AsyncConnection[Any], user_id: str) -> str | None:
    try:
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT workspace_id
                FROM memberships
                WHERE user_id = %s
                ORDER BY created_at
                LIMIT 1
                """,
                (user_id,),
            )
            row = await cur.fetchone()
    except psycopg.Error as exc:
        raise WorkspaceResolutionError(f"membership lookup failed for user {user_id}: {exc}") from exc
    if row is None or row["workspace_id"] is None:
        return None
    return str(row["workspace_id"])


async def _seed_usage_limits(conn: psycopg.AsyncConnection[Any], workspace_id: str) -> None:
    columns = ", ".join(FREE_TIER_LIMITS)
    placeholders = ", ".join(["%s"] * len(FREE_TIER_LIMITS))
    try:
        async with conn.transaction():
            await conn.execute(
                f"""
                INSERT INTO usage_limits (workspace_id, {columns})
                VALUES (%s, {placeholders})
                ON CONFLICT (workspace_id) DO NOTHING
                """,
                (workspace_id, *FREE_TIER_LIMITS.values()),
            )
    except psycopg.Error as exc:
        logger.warning("Usage limits seeding failed for workspace %s: %s", workspace_id, exc)


async def _adopt_winner(conn: psycopg.AsyncConnection[Any], user_id: str) -> str:
    existing = await _find_membership(conn, user_id)
    if existing is None:
        raise WorkspaceResolutionError(
            f"membership conflict for user {user_id} but no winning membership found"
        )
    logger.info(
        "Workspace bootstrap lost race, using existing workspace %s",
        existing,
        extra={"pulse_user_id": user_id},
    )
    return existing


async def _bootstrap(conn: psycopg.AsyncConnection[Any], user_id: str) -> str:
    logger.info("Bootstrapping workspace", extra={"pulse_user_id": user_id})
    try:
        async with conn.transaction():
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    INSERT INTO workspaces (name, slug, plan, owner_id)
                    VALUES (%s, %s, 'free', %s)
                    ON CONFLICT (slug) DO NOTHING
                    RETURNING id
                    """,
                    (PERSONAL_WORKSPACE_NAME, personal_slug(user_id), user_id),
                )
                workspace = await cur.fetchone()
                # A concurrent bootstrap in the same millisecond took the slug.
                if workspace is None:
                    return await _adopt_winner(conn, user_id)
                workspace_id = str(workspace["id"])

                await cur.execute(
                    """
                    INSERT INTO memberships (user_id, workspace_id, role)
                    VALUES (%s, %s, 'owner')
                    ON CONFLICT (user_id) DO NOTHING
                    RETURNING workspace_id
                    """,
                    (user_id, workspace_id),
                )
                membership = await cur.fetchone()

                if membership is None:
                    # Lost the race: a concurrent bootstrap committed first.
                    await cur.execute("DELETE FROM workspaces WHERE id = %s", (workspace_id,))
                    winner = None
                else:
                    winner = workspace_id
    except psycopg.Error as exc:
        raise WorkspaceResolutionError(f"workspace bootstrap failed for user {user_id}: {exc}") from exc

    if winner is None:
        return await _adopt_winner(conn, user_id)

    await _seed_usage_limits(conn, winner)
    logger.info(
        "Bootstrapped workspace %s",
        winner,
        extra={"pulse_user_id": user_id, "pulse_workspace_id": winner},
    )
    return winner


async def resolve_workspace(conn: psycopg.AsyncConnection[Any], user_id: str) -> str:
    """Return the user's workspace id, creating one if needed. Never returns None."""
    if not user_id:
        raise MultiTenantViolation("user_id is required to resolve a workspace")

    existing = await _find_membership(conn, user_id)
    if existing is not None:
        return existing
    return await _bootstrap(conn, user_id)
