"""Background job runner for the ``background_jobs`` queue.

A single drain loop claims due jobs and executes them one at a time. It is
woken either by a NOTIFY on the ``pulse_jobs`` channel or by the poll
interval elapsing, so a burst of notifications never starts overlapping
batches. Each wake-up also ticks the recurring schedulers before claiming.
"""

import asyncio
import logging
import signal
import time
from dataclasses import dataclass
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .config import Config
from .metrics import (
    record_handler_invocation,
    record_job_completed,
    record_job_dead,
    record_job_failed,
)
from .registry import get_handler
from .scheduler import ensure_nightly_scoring_scheduler, ensure_undo_retention_job

logger = logging.getLogger(__name__)

LISTEN_CHANNEL = "pulse_jobs"
RECONNECT_DELAY_SECONDS = 5.0

_CLAIM_SQL = """
    UPDATE background_jobs
    SET status = 'processing', started_at = NOW(), attempt = attempt + 1
    WHERE id IN (
        SELECT id FROM background_jobs
        WHERE status = 'pending' AND scheduled_for <= NOW()
        ORDER BY scheduled_for, priority DESC, id
        LIMIT %s
        FOR UPDATE SKIP LOCKED
    )
    RETURNING id, user_id, job_type, payload, attempt, max_retries
"""

_MARK_COMPLETED_SQL = """
    UPDATE background_jobs
    SET status = 'completed', completed_at = NOW()
    WHERE id = %s
"""

_MARK_DEAD_SQL = """
    UPDATE background_jobs
    SET status = 'dead', error_message = %s, completed_at = NOW()
    WHERE id = %s
"""

_RELEASE_SQL = """
    UPDATE background_jobs
    SET status = 'pending', attempt = attempt - 1, started_at = NULL
    WHERE id = %s
"""

_RESCHEDULE_SQL = """
    UPDATE background_jobs
    SET status = 'pending',
        error_message = %s,
        scheduled_for = NOW() + make_interval(secs => %s)
    WHERE id = %s
"""


@dataclass(frozen=True)
class ClaimedJob:
    id: int
    job_type: str
    attempt: int
    max_retries: int
    payload: dict[str, Any]
    user_id: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ClaimedJob":
        return cls(
            id=row["id"],
            job_type=row["job_type"],
            attempt=row["attempt"],
            max_retries=row["max_retries"],
            payload=dict(row.get("payload") or {}),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
        )

    def handler_payload(self) -> dict[str, Any]:
        """Payload handed to the handler; the row's user_id fills a missing key."""
        payload = dict(self.payload)
        if self.user_id and "user_id" not in payload:
            payload["user_id"] = self.user_id
        return payload

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_retries


def retry_backoff_seconds(attempt: int) -> int:
    return 2**attempt


class Worker:
    def __init__(self, config: Config) -> None:
        self.config = config
        self._shutdown = asyncio.Event()
        self._wake = asyncio.Event()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._request_shutdown)

        logger.info(
            "Worker starting (poll_interval=%.1fs, batch_size=%d, channel=%s)",
            self.config.poll_interval_seconds,
            self.config.batch_size,
            LISTEN_CHANNEL,
        )

        async with asyncio.TaskGroup() as tg:
            tg.create_task(self._notify_listener())
            tg.create_task(self._drain_loop())

    def _request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown.set()
        self._wake.set()

    async def _notify_listener(self) -> None:
        """Turn NOTIFY messages into wake-ups for the drain loop."""
        while not self._shutdown.is_set():
            try:
                async with await psycopg.AsyncConnection.connect(
                    self.config.listen_database_url, autocommit=True
                ) as conn:
                    await conn.execute(f"LISTEN {LISTEN_CHANNEL}")
                    logger.info("Listening on %s", LISTEN_CHANNEL)
                    while not self._shutdown.is_set():
                        async for notify in conn.notifies(
                            timeout=self.config.poll_interval_seconds
                        ):
                            logger.debug("Wake-up from NOTIFY (%s)", notify.payload)
                            self._wake.set()
            except psycopg.OperationalError as exc:
                if self._shutdown.is_set():
                    break
                logger.warning(
                    "LISTEN connection dropped (%s); retrying in %.0fs",
                    exc,
                    RECONNECT_DELAY_SECONDS,
                )
                await asyncio.sleep(RECONNECT_DELAY_SECONDS)

    async def _drain_loop(self) -> None:
        # First pass runs immediately so schedulers are seeded on startup.
        while not self._shutdown.is_set():
            await self._drain_once()
            try:
                async with asyncio.timeout(self.config.poll_interval_seconds):
                    await self._wake.wait()
            except TimeoutError:
                pass
            self._wake.clear()
        logger.info("Worker stopped")

    async def _drain_once(self) -> None:
        try:
            async with await psycopg.AsyncConnection.connect(
                self.config.database_url
            ) as conn:
                await self._tick_schedulers(conn)
                jobs = await self._claim_jobs(conn)
                await conn.commit()
                for job in jobs:
                    if self._shutdown.is_set():
                        await self._release_job(conn, job["id"])
                        continue
                    await self._process_job(conn, job)
        except Exception:
            logger.exception("Job drain pass failed")

    async def _tick_schedulers(self, conn: psycopg.AsyncConnection[Any]) -> None:
        ticks = (
            ("nightly scoring", ensure_nightly_scoring_scheduler),
            ("undo retention", ensure_undo_retention_job),
        )
        for name, tick in ticks:
            try:
                await tick(conn)
                await conn.commit()
            except Exception as exc:
                await conn.rollback()
                logger.warning("Scheduler tick '%s' skipped: %s", name, exc)

    async def _claim_jobs(
        self, conn: psycopg.AsyncConnection[Any]
    ) -> list[dict[str, Any]]:
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(_CLAIM_SQL, (self.config.batch_size,))
            return await cur.fetchall()

    async def _process_job(
        self, conn: psycopg.AsyncConnection[Any], row: dict[str, Any]
    ) -> None:
        """Run one claimed job; the handler and its completion mark share a transaction."""
        job = ClaimedJob.from_row(row)
        handler = get_handler(job.job_type)
        if handler is None:
            logger.warning("Job %d has unknown type %s", job.id, job.job_type)
            await self._fail_job(conn, job.id, f"No handler for job_type={job.job_type}")
            return

        started = time.monotonic()
        try:
            async with conn.transaction():
                await handler(conn, job.handler_payload())
                await conn.execute(_MARK_COMPLETED_SQL, (job.id,))
        except Exception as exc:
            elapsed_ms = (time.monotonic() - started) * 1000
            record_handler_invocation(job.job_type, elapsed_ms, False)
            logger.exception(
                "Job %d (%s) failed on attempt %d/%d",
                job.id,
                job.job_type,
                job.attempt,
                job.max_retries,
            )
            await self._settle_failure(conn, job, str(exc))
            return

        record_handler_invocation(job.job_type, (time.monotonic() - started) * 1000, True)
        record_job_completed()
        logger.info("Job %d (%s) completed", job.id, job.job_type)

    async def _settle_failure(
        self, conn: psycopg.AsyncConnection[Any], job: ClaimedJob, error: str
    ) -> None:
        if job.exhausted:
            record_job_dead()
            logger.error("Job %d dead-lettered: %s", job.id, error)
            await self._fail_job(conn, job.id, error)
        else:
            record_job_failed()
            await self._retry_job(conn, job.id, job.attempt, error)

    async def _fail_job(
        self, conn: psycopg.AsyncConnection[Any], job_id: int, error: str
    ) -> None:
        async with conn.cursor() as cur:
            await cur.execute(_MARK_DEAD_SQL, (error, job_id))
        await conn.commit()

    async def _release_job(
        self, conn: psycopg.AsyncConnection[Any], job_id: int
    ) -> None:
        """Hand a claimed job back untouched when shutdown interrupts the batch."""
        await conn.execute(_RELEASE_SQL, (job_id,))
        await conn.commit()

    async def _retry_job(
        self,
        conn: psycopg.AsyncConnection[Any],
        job_id: int,
        attempt: int,
        error: str,
    ) -> None:
        delay = retry_backoff_seconds(attempt)
        logger.info("Job %d rescheduled in %ds", job_id, delay)
        async with conn.cursor() as cur:
            await cur.execute(_RESCHEDULE_SQL, (error, float(delay), job_id))
        await conn.commit()
