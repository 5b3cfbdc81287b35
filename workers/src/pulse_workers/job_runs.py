"""Job-run records and per-service health rows for batch observability."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

logger = logging.getLogger(__name__)


@dataclass
class JobRun:
    job_name: str
    run_id: int | None = None
    started: float = field(default_factory=time.monotonic)

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


def run_status(failed: int, cancelled: int = 0) -> str:
    if cancelled:
        return "cancelled"
    return "completed" if failed == 0 else "partial"


def health_status(failed: int) -> str:
    return "healthy" if failed == 0 else "degraded"


async def _upsert_system_health(
    conn: psycopg.AsyncConnection[Any], service: str, status: str, message: str
) -> None:
    await conn.execute(
        """
        INSERT INTO system_health (service, status, message, last_check)
        VALUES (%s, %s, %s, NOW())
        ON CONFLICT (service) DO UPDATE SET
            status = EXCLUDED.status,
            message = EXCLUDED.message,
            last_check = EXCLUDED.last_check
        """,
        (service, status, message[:255]),
    )


async def start_job_run(
    conn: psycopg.AsyncConnection[Any], job_name: str, metadata: dict[str, Any] | None = None
) -> JobRun:
    run = JobRun(job_name=job_name)
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            INSERT INTO job_runs (job_name, status, started_at, metadata)
            VALUES (%s, 'running', NOW(), %s)
            RETURNING id
            """,
            (job_name, Json(metadata or {})),
        )
        row = await cur.fetchone()
    await conn.commit()
    run.run_id = int(row["id"]) if row is not None else None
    return run


async def complete_job_run(
    conn: psycopg.AsyncConnection[Any],
    run: JobRun,
    processed: int,
    failed: int,
    cancelled: int = 0,
    metadata: dict[str, Any] | None = None,
) -> None:
    duration_ms = run.duration_ms
    status = run_status(failed, cancelled)
    if run.run_id is not None:
        await conn.execute(
            """
            UPDATE job_runs
            SET status = %s,
                completed_at = NOW(),
                duration_ms = %s,
                records_processed = %s,
                records_failed = %s,
                metadata = %s
            WHERE id = %s
            """,
            (status, duration_ms, processed, failed, Json(metadata or {}), run.run_id),
        )
    await _upsert_system_health(
        conn,
        run.job_name,
        health_status(failed),
        f"Processed {processed}, failed {failed}, cancelled {cancelled} ({duration_ms}ms)",
    )
    await conn.commit()


async def fail_job_run(conn: psycopg.AsyncConnection[Any], run: JobRun, error: BaseException | str) -> None:
    message = str(error) or type(error).__name__
    if run.run_id is not None:
        await conn.execute(
            """
            UPDATE job_runs
            SET status = 'failed',
                completed_at = NOW(),
                duration_ms = %s,
                error_message = %s
            WHERE id = %s
            """,
            (run.duration_ms, message, run.run_id),
        )
    await _upsert_system_health(conn, run.job_name, "error", message)
    await conn.commit()
