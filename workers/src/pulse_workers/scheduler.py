"""Durable recurring schedules backed by the ``scheduler_state`` table.

Every schedule owns one row keyed by ``scheduler_key``. A tick locks that
row, folds the outcome of the previously enqueued job back into it, and
enqueues a new job once ``next_run_at`` has passed. At most one job per
schedule is ever in flight; missed slots are reported to the job as
``missed_runs`` instead of being enqueued one by one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import os
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .utils import as_utc

logger = logging.getLogger(__name__)

NIGHTLY_SCORING_KEY = "nightly_scoring"
NIGHTLY_SCORING_JOB_TYPE = "scoring.nightly"
UNDO_RETENTION_KEY = "undo_retention"
UNDO_RETENTION_JOB_TYPE = "maintenance.undo_retention"


def _env_hours(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        return max(1, int(raw))
    except ValueError:
        return default


def nightly_interval_hours() -> int:
    return _env_hours("PULSE_NIGHTLY_SCORING_HOURS", 24)


def undo_retention_interval_hours() -> int:
    return _env_hours("PULSE_UNDO_RETENTION_INTERVAL_HOURS", 24)


def due_run_count(now: datetime, next_run_at: datetime, interval_hours: int) -> int:
    """Return how many runs are due, including missed catch-up slots."""
    if interval_hours <= 0:
        raise ValueError("interval_hours must be positive")

    overdue = as_utc(now) - as_utc(next_run_at)
    if overdue.total_seconds() < 0:
        return 0
    return int(overdue.total_seconds() // (interval_hours * 3600)) + 1


@dataclass(frozen=True)
class Schedule:
    key: str
    job_type: str
    interval_hours: int
    # First run fires immediately instead of one interval after seeding.
    run_on_seed: bool = False
    priority: int = 0
    max_retries: int = 3
    extra_payload: tuple[tuple[str, Any], ...] = ()

    def payload(self, due_runs: int) -> dict[str, Any]:
        body = {
            "scheduler_key": self.key,
            "interval_hours": self.interval_hours,
            "due_runs": due_runs,
            "missed_runs": max(0, due_runs - 1),
        }
        body.update(dict(self.extra_payload))
        return body


def nightly_scoring_schedule() -> Schedule:
    return Schedule(
        key=NIGHTLY_SCORING_KEY,
        job_type=NIGHTLY_SCORING_JOB_TYPE,
        interval_hours=nightly_interval_hours(),
        extra_payload=(("evaluate_interventions", True),),
    )


def undo_retention_schedule() -> Schedule:
    return Schedule(
        key=UNDO_RETENTION_KEY,
        job_type=UNDO_RETENTION_JOB_TYPE,
        interval_hours=undo_retention_interval_hours(),
        run_on_seed=True,
        priority=50,
        max_retries=5,
    )


# Maps the in-flight job's status onto the schedule row in one statement.
# Pending and processing jobs leave the row holding the job id.
_SETTLE_SQL = """
    UPDATE scheduler_state s
    SET in_flight_job_id = CASE
            WHEN j.status IN ('pending', 'processing') THEN s.in_flight_job_id
            ELSE NULL
        END,
        in_flight_started_at = CASE
            WHEN j.status IN ('pending', 'processing') THEN s.in_flight_started_at
            ELSE NULL
        END,
        last_run_status = CASE
            WHEN j.status IN ('pending', 'processing') THEN 'running'
            WHEN j.status = 'completed' THEN 'completed'
            ELSE 'failed'
        END,
        last_run_completed_at = CASE
            WHEN j.status = 'completed' THEN COALESCE(j.completed_at, NOW())
            ELSE s.last_run_completed_at
        END,
        last_error = CASE
            WHEN j.status = 'completed' THEN NULL
            WHEN j.status IN ('dead', 'failed') THEN COALESCE(j.error_message, 'scheduled job failed')
            ELSE s.last_error
        END,
        total_runs = s.total_runs + CASE WHEN j.status = 'completed' THEN 1 ELSE 0 END,
        next_run_at = CASE
            WHEN j.status IN ('dead', 'failed') THEN LEAST(s.next_run_at, NOW())
            ELSE s.next_run_at
        END,
        updated_at = NOW()
    FROM background_jobs j
    WHERE s.scheduler_key = %s AND j.id = s.in_flight_job_id
    RETURNING j.status
"""

_ORPHANED_SQL = """
    UPDATE scheduler_state
    SET in_flight_job_id = NULL,
        in_flight_started_at = NULL,
        last_run_status = 'failed',
        last_error = 'in-flight job missing',
        next_run_at = LEAST(next_run_at, NOW()),
        updated_at = NOW()
    WHERE scheduler_key = %s
"""


async def _seed(cur: psycopg.AsyncCursor[Any], schedule: Schedule) -> None:
    first_run_hours = 0 if schedule.run_on_seed else schedule.interval_hours
    await cur.execute(
        """
        INSERT INTO scheduler_state (scheduler_key, interval_hours, next_run_at)
        VALUES (%s, %s, NOW() + make_interval(hours => %s))
        ON CONFLICT (scheduler_key) DO UPDATE
        SET interval_hours = EXCLUDED.interval_hours,
            updated_at = NOW()
        WHERE scheduler_state.interval_hours <> EXCLUDED.interval_hours
        """,
        (schedule.key, schedule.interval_hours, first_run_hours),
    )


async def _in_flight_still_running(
    cur: psycopg.AsyncCursor[Any], schedule: Schedule
) -> bool:
    await cur.execute(_SETTLE_SQL, (schedule.key,))
    settled = await cur.fetchone()
    if settled is None:
        await cur.execute(_ORPHANED_SQL, (schedule.key,))
        logger.warning("Schedule %s lost its in-flight job", schedule.key)
        return False
    return settled["status"] in ("pending", "processing")


async def tick_schedule(
    conn: psycopg.AsyncConnection[Any], schedule: Schedule
) -> int | None:
    """Advance one schedule. Returns the enqueued job id, if any."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await _seed(cur, schedule)

        await cur.execute(
            """
            SELECT next_run_at, in_flight_job_id
            FROM scheduler_state
            WHERE scheduler_key = %s
            FOR UPDATE
            """,
            (schedule.key,),
        )
        state = await cur.fetchone()
        if state is None:
            return None

        if state["in_flight_job_id"] is not None:
            if await _in_flight_still_running(cur, schedule):
                return None
            await cur.execute(
                "SELECT next_run_at FROM scheduler_state WHERE scheduler_key = %s",
                (schedule.key,),
            )
            state = await cur.fetchone()

        due = due_run_count(
            datetime.now(timezone.utc), state["next_run_at"], schedule.interval_hours
        )
        if due == 0:
            return None

        await cur.execute(
            """
            INSERT INTO background_jobs (job_type, payload, scheduled_for, priority, max_retries)
            VALUES (%s, %s, NOW(), %s, %s)
            RETURNING id
            """,
            (
                schedule.job_type,
                Json(schedule.payload(due)),
                schedule.priority,
                schedule.max_retries,
            ),
        )
        job_id = int((await cur.fetchone())["id"])

        missed = due - 1
        await cur.execute(
            """
            UPDATE scheduler_state
            SET in_flight_job_id = %s,
                in_flight_started_at = NOW(),
                last_run_started_at = NOW(),
                last_run_status = 'running',
                next_run_at = next_run_at + make_interval(hours => %s),
                last_missed_runs = %s,
                total_catch_up_runs = total_catch_up_runs + %s,
                updated_at = NOW()
            WHERE scheduler_key = %s
            """,
            (job_id, schedule.interval_hours * due, missed, missed, schedule.key),
        )

    logger.info(
        "Enqueued %s job %d (due=%d, missed=%d)",
        schedule.job_type,
        job_id,
        due,
        missed,
    )
    return job_id


async def ensure_nightly_scoring_scheduler(conn: psycopg.AsyncConnection[Any]) -> None:
    await tick_schedule(conn, nightly_scoring_schedule())


async def ensure_undo_retention_job(conn: psycopg.AsyncConnection[Any]) -> None:
    await tick_schedule(conn, undo_retention_schedule())
