"""Batch driver: score (and optionally intervene for) many users for one date.

Each user is an independent unit with its own connection, bounded by a
semaphore and a per-unit timeout. A failed or timed-out unit is recorded and
the batch continues; re-running a date recomputes and overwrites.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .context import RequestContext
from .intervention_engine import EngineReport, evaluate_and_apply, resume_expired_pauses
from .job_runs import complete_job_run, fail_job_run, start_job_run
from .logging import log_context
from .metrics import record_score_unit
from .score_engine import compute_and_store_score
from .score_facts import load_user_timezone
from .utils import resolve_timezone
from .workspace import resolve_workspace

logger = logging.getLogger(__name__)

SCORING_JOB_NAME = "nightly_scoring"
USER_PAGE_SIZE = 1000

ConnectFn = Callable[[], Awaitable[psycopg.AsyncConnection[Any]]]


def connector(database_url: str) -> ConnectFn:
    return functools.partial(psycopg.AsyncConnection.connect, database_url)


@dataclass
class UserScoreResult:
    user_id: str
    success: bool
    score: dict[str, float] | None = None
    interventions: list[str] = field(default_factory=list)
    intervention_failures: list[str] = field(default_factory=list)
    error: str | None = None
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"user_id": self.user_id, "success": self.success}
        if self.score is not None:
            data["score"] = self.score
        if self.interventions or self.intervention_failures:
            data["interventions"] = self.interventions
            data["intervention_failures"] = self.intervention_failures
        if self.error is not None:
            data["error"] = self.error
        if self.cancelled:
            data["cancelled"] = True
        return data


@dataclass
class BatchResult:
    date: date
    results: list[UserScoreResult] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return sum(1 for r in self.results if not r.cancelled)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success and not r.cancelled)

    @property
    def cancelled(self) -> int:
        return sum(1 for r in self.results if r.cancelled)

    def to_dict(self, include_results: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "date": self.date.isoformat(),
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
        }
        if self.cancelled:
            data["cancelled"] = self.cancelled
        if include_results:
            data["results"] = [r.to_dict() for r in self.results]
        return data


async def list_known_users(
    conn: psycopg.AsyncConnection[Any], page_size: int = USER_PAGE_SIZE
) -> list[str]:
    """Every user with a profile, read in keyset pages ordered by user_id."""
    users: list[str] = []
    after: str | None = None
    async with conn.cursor(row_factory=dict_row) as cur:
        while True:
            if after is None:
                await cur.execute(
                    "SELECT user_id FROM profiles ORDER BY user_id LIMIT %s",
                    (page_size,),
                )
            else:
                await cur.execute(
                    "SELECT user_id FROM profiles WHERE user_id > %s ORDER BY user_id LIMIT %s",
                    (after, page_size),
                )
            page = [str(row["user_id"]) for row in await cur.fetchall()]
            users.extend(page)
            if len(page) < page_size:
                return users
            after = page[-1]


async def lock_user(conn: psycopg.AsyncConnection[Any], user_id: str) -> None:
    """Serialize pipeline work per user until the current transaction ends."""
    await conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (user_id,))


async def evaluate_for_user(
    conn: psycopg.AsyncConnection[Any], ctx: RequestContext, now: datetime
) -> EngineReport:
    """Run the intervention engine for one user under the per-user lock."""
    await lock_user(conn, ctx.user_id)
    await resume_expired_pauses(conn, ctx, now)
    return await evaluate_and_apply(conn, ctx, now)


async def build_context(
    conn: psycopg.AsyncConnection[Any], user_id: str, day: date
) -> RequestContext:
    workspace_id = await resolve_workspace(conn, user_id)
    tz = resolve_timezone(await load_user_timezone(conn, user_id))
    return RequestContext(user_id=user_id, workspace_id=workspace_id, date=day, timezone=tz)


async def process_user(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    day: date,
    *,
    evaluate_interventions: bool = False,
    now: datetime | None = None,
) -> UserScoreResult:
    """Score one user and commit, then optionally evaluate interventions on the committed score."""
    ctx = await build_context(conn, user_id, day)
    await conn.commit()

    now = now or datetime.now(timezone.utc)
    await lock_user(conn, user_id)
    await resume_expired_pauses(conn, ctx, now)
    outcome = await compute_and_store_score(conn, ctx)
    await conn.commit()

    result = UserScoreResult(user_id=user_id, success=True, score=outcome.score.as_dict())
    if evaluate_interventions:
        report = await evaluate_for_user(conn, ctx, now)
        await conn.commit()
        result.interventions = [i.intervention_type for i in report.applied]
        result.intervention_failures = [f.rule for f in report.failures]
    return result


async def run_scoring_batch(
    connect: ConnectFn,
    day: date,
    user_ids: list[str] | None = None,
    *,
    concurrency: int = 4,
    unit_timeout_seconds: float = 30.0,
    cancel_event: asyncio.Event | None = None,
    evaluate_interventions: bool = False,
    now: datetime | None = None,
) -> BatchResult:
    """Fan out per-user units and record a job run for the whole batch."""
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def unit(user_id: str) -> UserScoreResult:
        with log_context(pulse_user_id=user_id, pulse_date=day.isoformat()):
            return await guarded_unit(user_id)

    async def guarded_unit(user_id: str) -> UserScoreResult:
        async with semaphore:
            # Cancellation checkpoint: units not yet started are skipped.
            if cancel_event is not None and cancel_event.is_set():
                record_score_unit("cancelled")
                return UserScoreResult(user_id=user_id, success=False, cancelled=True, error="cancelled")
            try:
                async with asyncio.timeout(unit_timeout_seconds):
                    async with await connect() as unit_conn:
                        result = await process_user(
                            unit_conn,
                            user_id,
                            day,
                            evaluate_interventions=evaluate_interventions,
                            now=now,
                        )
            except TimeoutError:
                record_score_unit("timed_out")
                logger.warning("Scoring timed out after %.1fs", unit_timeout_seconds)
                return UserScoreResult(
                    user_id=user_id,
                    success=False,
                    error=f"timed out after {unit_timeout_seconds}s",
                )
            except Exception as exc:
                record_score_unit("failed")
                logger.exception("Scoring failed")
                return UserScoreResult(user_id=user_id, success=False, error=str(exc) or type(exc).__name__)
            record_score_unit("succeeded")
            return result

    async with await connect() as conn:
        run = await start_job_run(
            conn,
            SCORING_JOB_NAME,
            {"date": day.isoformat(), "requested_users": len(user_ids) if user_ids else None},
        )
        try:
            if user_ids is None:
                user_ids = await list_known_users(conn)
                await conn.commit()
            logger.info("Processing %d users for %s", len(user_ids), day.isoformat())

            tasks: list[asyncio.Task[UserScoreResult]] = []
            async with asyncio.TaskGroup() as tg:
                for user_id in user_ids:
                    tasks.append(tg.create_task(unit(user_id)))
            batch = BatchResult(date=day, results=[t.result() for t in tasks])
        except Exception as exc:
            logger.exception("Scoring batch failed for %s", day.isoformat())
            await conn.rollback()
            await fail_job_run(conn, run, exc)
            raise

        await complete_job_run(
            conn,
            run,
            processed=batch.processed,
            failed=batch.failed,
            cancelled=batch.cancelled,
            metadata={"date": day.isoformat(), "successful": batch.successful},
        )

    logger.info(
        "Scoring batch finished (date=%s, processed=%d, successful=%d, failed=%d, cancelled=%d)",
        day.isoformat(),
        batch.processed,
        batch.successful,
        batch.failed,
        batch.cancelled,
    )
    return batch
