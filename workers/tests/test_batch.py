"""Tests for the scoring batch driver: isolation, timeouts and cancellation."""

import asyncio
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from pulse_workers.batch import (
    BatchResult,
    UserScoreResult,
    evaluate_for_user,
    list_known_users,
    process_user,
    run_scoring_batch,
)
from pulse_workers.context import RequestContext
from pulse_workers.intervention_engine import EngineReport
from pulse_workers.job_runs import JobRun
from pulse_workers.scoring import DailyScore, DailyStats

DAY = date(2026, 3, 10)


def _connect(fake_conn):
    conns = []

    async def connect():
        conn = fake_conn()
        conn.__aenter__.return_value = conn
        conns.append(conn)
        return conn

    connect.conns = conns
    return connect


@pytest.fixture
def job_runs():
    run = JobRun(job_name="nightly_scoring", run_id=1, started=0.0)
    with patch("pulse_workers.batch.start_job_run", new_callable=AsyncMock, return_value=run) as start, \
         patch("pulse_workers.batch.complete_job_run", new_callable=AsyncMock) as complete, \
         patch("pulse_workers.batch.fail_job_run", new_callable=AsyncMock) as fail:
        yield start, complete, fail


def _ok(user_id):
    return UserScoreResult(user_id=user_id, success=True, score={"global_score": 50.0})


@pytest.mark.asyncio
async def test_one_failing_user_does_not_stop_the_batch(job_runs, fake_conn):
    _, complete, _ = job_runs

    async def fake_process(conn, user_id, day, **kwargs):
        if user_id == "u-2":
            raise RuntimeError("facts unreadable")
        return _ok(user_id)

    with patch("pulse_workers.batch.process_user", side_effect=fake_process):
        result = await run_scoring_batch(_connect(fake_conn), DAY, ["u-1", "u-2", "u-3"])

    assert (result.processed, result.successful, result.failed) == (3, 2, 1)
    failed = next(r for r in result.results if not r.success)
    assert failed.error == "facts unreadable"
    assert complete.await_args.kwargs["failed"] == 1


@pytest.mark.asyncio
async def test_slow_user_times_out_as_failure(job_runs, fake_conn):
    async def fake_process(conn, user_id, day, **kwargs):
        if user_id == "slow":
            await asyncio.sleep(5)
        return _ok(user_id)

    with patch("pulse_workers.batch.process_user", side_effect=fake_process):
        result = await run_scoring_batch(_connect(fake_conn), DAY, ["slow", "fast"], unit_timeout_seconds=0.05)

    by_user = {r.user_id: r for r in result.results}
    assert by_user["fast"].success
    assert not by_user["slow"].success
    assert "timed out" in by_user["slow"].error


@pytest.mark.asyncio
async def test_cancellation_skips_units_not_yet_started(job_runs, fake_conn):
    cancel = asyncio.Event()

    async def fake_process(conn, user_id, day, **kwargs):
        cancel.set()
        return _ok(user_id)

    with patch("pulse_workers.batch.process_user", side_effect=fake_process):
        result = await run_scoring_batch(
            _connect(fake_conn), DAY, ["u-1", "u-2", "u-3"], concurrency=1, cancel_event=cancel
        )

    assert result.successful == 1
    assert result.cancelled == 2
    assert result.failed == 0
    assert result.to_dict()["cancelled"] == 2


@pytest.mark.asyncio
async def test_all_users_listed_when_none_given(job_runs, fake_conn):
    async def fake_process(conn, user_id, day, **kwargs):
        return _ok(user_id)

    with patch("pulse_workers.batch.list_known_users", new_callable=AsyncMock, return_value=["a", "b"]), \
         patch("pulse_workers.batch.process_user", side_effect=fake_process):
        result = await run_scoring_batch(_connect(fake_conn), DAY)
    assert sorted(r.user_id for r in result.results) == ["a", "b"]


@pytest.mark.asyncio
async def test_batch_crash_marks_job_failed(job_runs, fake_conn):
    _, complete, fail = job_runs
    with patch("pulse_workers.batch.list_known_users", new_callable=AsyncMock, side_effect=RuntimeError("db gone")):
        with pytest.raises(RuntimeError):
            await run_scoring_batch(_connect(fake_conn), DAY)
    fail.assert_awaited_once()
    complete.assert_not_awaited()


@pytest.mark.asyncio
async def test_process_user_commits_score_before_interventions(fake_conn):
    conn = fake_conn()
    ctx = RequestContext(user_id="u-1", workspace_id="ws-1", date=DAY)
    score = DailyScore(80.0, 80.0, 80.0, 80.0, 80.0, 50.0, 20.0, 1.0)
    stats = DailyStats(1, 1, 1, 1, 60, 0.1, 1.0, 80.0)
    outcome = AsyncMock()
    outcome.score = score
    outcome.stats = stats
    report = AsyncMock()
    report.applied = []
    report.failures = []

    with patch("pulse_workers.batch.build_context", new_callable=AsyncMock, return_value=ctx), \
         patch("pulse_workers.batch.compute_and_store_score", new_callable=AsyncMock, return_value=outcome), \
         patch("pulse_workers.batch.resume_expired_pauses", new_callable=AsyncMock, return_value=[]) as resume, \
         patch("pulse_workers.batch.evaluate_and_apply", new_callable=AsyncMock, return_value=report) as evaluate:
        result = await process_user(conn, "u-1", DAY, evaluate_interventions=True)

    assert result.success
    assert result.score["global_score"] == 80.0
    evaluate.assert_awaited_once()
    assert resume.await_count == 2
    assert conn.commit.await_count == 3


def test_batch_result_counts():
    result = BatchResult(date=DAY, results=[
        UserScoreResult(user_id="a", success=True),
        UserScoreResult(user_id="b", success=False, error="x"),
        UserScoreResult(user_id="c", success=False, cancelled=True),
    ])
    assert result.to_dict() == {"date": "2026-03-10", "processed": 2, "successful": 1, "failed": 1, "cancelled": 1}


@pytest.mark.asyncio
async def test_evaluate_for_user_takes_lock_and_resumes_pauses_first(fake_conn):
    conn = fake_conn()
    ctx = RequestContext(user_id="u-1", workspace_id="ws-1", date=DAY)
    now = datetime(2026, 3, 10, 21, 0, tzinfo=timezone.utc)
    order = []
    conn.execute.side_effect = lambda *a, **kw: order.append("lock")

    async def resume(*args):
        order.append("resume")
        return []

    async def evaluate(*args):
        order.append("evaluate")
        return EngineReport()

    with patch("pulse_workers.batch.resume_expired_pauses", side_effect=resume), \
         patch("pulse_workers.batch.evaluate_and_apply", side_effect=evaluate):
        report = await evaluate_for_user(conn, ctx, now)

    assert order == ["lock", "resume", "evaluate"]
    assert "pg_advisory_xact_lock" in conn.execute.call_args.args[0]
    assert conn.execute.call_args.args[1] == ("u-1",)
    assert report.applied == []


@pytest.mark.asyncio
async def test_known_users_are_read_past_the_first_page(fake_conn):
    conn = fake_conn(fetchall=[
        [{"user_id": "a"}, {"user_id": "b"}],
        [{"user_id": "c"}, {"user_id": "d"}],
        [{"user_id": "e"}],
    ])

    users = await list_known_users(conn, page_size=2)

    assert users == ["a", "b", "c", "d", "e"]
    params = [c.args[1] for c in conn._fake_cursor.execute.call_args_list]
    assert params == [(2,), ("b", 2), ("d", 2)]


@pytest.mark.asyncio
async def test_known_users_stop_on_exactly_full_last_page(fake_conn):
    conn = fake_conn(fetchall=[[{"user_id": "a"}, {"user_id": "b"}], []])
    assert await list_known_users(conn, page_size=2) == ["a", "b"]
