"""Process-local counters surfaced on the health endpoint.

Everything runs on one event loop, so the counters are updated without locks.
"""

from collections import Counter, defaultdict
from dataclasses import dataclass
import time

SCORE_UNIT_OUTCOMES = ("succeeded", "failed", "timed_out", "cancelled")


@dataclass
class HandlerStats:
    invocations: int = 0
    successes: int = 0
    failures: int = 0
    total_duration_ms: float = 0.0


_started = time.monotonic()
_jobs: Counter[str] = Counter()
_score_units: Counter[str] = Counter(dict.fromkeys(SCORE_UNIT_OUTCOMES, 0))
_interventions: defaultdict[str, Counter[str]] = defaultdict(Counter)
_handlers: defaultdict[str, HandlerStats] = defaultdict(HandlerStats)


def record_handler_invocation(job_type: str, duration_ms: float, success: bool) -> None:
    stats = _handlers[job_type]
    stats.invocations += 1
    stats.total_duration_ms += duration_ms
    if success:
        stats.successes += 1
    else:
        stats.failures += 1


def record_job_completed() -> None:
    _jobs["processed"] += 1


def record_job_failed() -> None:
    _jobs["failed"] += 1


def record_job_dead() -> None:
    _jobs["dead"] += 1


def record_score_unit(outcome: str) -> None:
    """Count one per-user scoring unit by how it ended (see SCORE_UNIT_OUTCOMES)."""
    _score_units[outcome] += 1


def record_intervention(intervention_type: str, applied: bool) -> None:
    _interventions[intervention_type]["applied" if applied else "failed"] += 1


def get_metrics() -> dict:
    """Snapshot safe to serialize and mutate."""
    return {
        "uptime_seconds": round(time.monotonic() - _started, 1),
        "jobs_processed": _jobs["processed"],
        "jobs_failed": _jobs["failed"],
        "jobs_dead": _jobs["dead"],
        "score_units": dict(_score_units),
        "interventions": {
            name: {"applied": counts["applied"], "failed": counts["failed"]}
            for name, counts in _interventions.items()
        },
        "handlers": {
            name: {
                "invocations": stats.invocations,
                "successes": stats.successes,
                "failures": stats.failures,
                "total_duration_ms": round(stats.total_duration_ms, 3),
            }
            for name, stats in _handlers.items()
        },
    }
