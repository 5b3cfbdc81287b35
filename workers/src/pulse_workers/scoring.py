"""Pure daily score math.

Every function here is deterministic over its inputs; database reads live in
``score_facts`` and persistence in ``score_engine``.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal

PRIORITY_WEIGHTS: dict[str, float] = {
    "urgent": 1.5,
    "high": 1.25,
    "medium": 1.0,
    "low": 0.75,
}
DEFAULT_PRIORITY_WEIGHT = 1.0

GLOBAL_WEIGHTS: dict[str, float] = {
    "habits": 0.35,
    "tasks": 0.25,
    "finance": 0.20,
    "health": 0.20,
}

FOCUS_TARGET_MINUTES = 120
MOMENTUM_WINDOW = 7
NEUTRAL_SCORE = 50.0

DEFAULT_TASK_ESTIMATE_MIN = 30
DEFAULT_DAILY_CAPACITY_MIN = 480
MAX_OVERLOAD_INDEX = 2.0

BURNOUT_CRITICAL_THRESHOLD = 70.0
FINANCE_LOW_THRESHOLD = 30.0


@dataclass(frozen=True)
class TaskFact:
    status: str
    priority: str | None = None
    estimate_min: int | None = None
    has_due_date: bool = True


@dataclass(frozen=True)
class ScoreFacts:
    """Raw aggregates for one user on one date."""

    active_habits: int = 0
    habits_completed_today: int = 0
    week_logs_completed: int = 0
    tasks: tuple[TaskFact, ...] = ()
    budget_total: float = 0.0
    month_spend: float = 0.0
    focus_minutes: int = 0
    recent_global_scores: tuple[float, ...] = ()
    daily_capacity_min: int = DEFAULT_DAILY_CAPACITY_MIN


@dataclass(frozen=True)
class DailyScore:
    global_score: float
    habits_score: float
    tasks_score: float
    finance_score: float
    health_score: float
    momentum_index: float
    burnout_index: float
    consistency_factor: float

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class DailyStats:
    tasks_planned: int
    tasks_completed: int
    habits_completed: int
    habits_total: int
    focus_minutes: int
    overload_index: float
    clarity_score: float
    global_score: float = 0.0


def round2(value: float) -> float:
    """Round half away from zero to two decimals."""
    return float(Decimal(repr(float(value))).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    if math.isnan(value):
        return low
    return min(high, max(low, value))


def habit_consistency(active_habits: int, week_logs_completed: int) -> float:
    """Completed logs over the trailing 7 days divided by active * 7."""
    expected = active_habits * 7
    if expected <= 0:
        return 1.0
    return week_logs_completed / expected


def habits_score(active_habits: int, completed_today: int, consistency: float) -> float:
    if active_habits <= 0:
        return 100.0
    return clamp(completed_today / active_habits * consistency * 100)


def tasks_score(tasks: tuple[TaskFact, ...] | list[TaskFact]) -> float:
    total = 0.0
    done = 0.0
    for task in tasks:
        weight = PRIORITY_WEIGHTS.get(task.priority or "", DEFAULT_PRIORITY_WEIGHT)
        total += weight
        if task.status == "done":
            done += weight
    if total <= 0:
        return 100.0
    return clamp(done / total * 100)


def finance_score(budget_total: float, month_spend: float) -> float:
    if budget_total <= 0:
        return 100.0
    return clamp((1 - month_spend / budget_total) * 100)


def health_score(focus_minutes: float) -> float:
    return clamp(focus_minutes / FOCUS_TARGET_MINUTES * 100)


def global_score(habits: float, tasks: float, finance: float, health: float) -> float:
    return (
        habits * GLOBAL_WEIGHTS["habits"]
        + tasks * GLOBAL_WEIGHTS["tasks"]
        + finance * GLOBAL_WEIGHTS["finance"]
        + health * GLOBAL_WEIGHTS["health"]
    )


def momentum_index(series: list[float]) -> float:
    """Trend of the global score: 50 is flat, above 50 improving.

    ``series`` is chronological and includes the current day as its last point.
    """
    if len(series) < 2:
        return NEUTRAL_SCORE
    window = series[-MOMENTUM_WINDOW:]
    split = len(window) // 2
    first, second = window[:split], window[split:]
    first_avg = sum(first) / len(first)
    second_avg = sum(second) / len(second)
    return clamp(NEUTRAL_SCORE + (second_avg - first_avg))


def burnout_index(tasks: float, habits: float, recent_scores: list[float]) -> float:
    avg_recent = sum(recent_scores) / len(recent_scores) if recent_scores else NEUTRAL_SCORE
    return clamp(
        0.4 * (100 - tasks)
        + 0.3 * (100 - habits)
        + 0.3 * (100 - avg_recent)
    )


def compute_daily_score(facts: ScoreFacts) -> DailyScore:
    """Derive all sub-scores and indices from one day's facts, rounded to 2dp."""
    consistency = habit_consistency(facts.active_habits, facts.week_logs_completed)
    habits = habits_score(facts.active_habits, facts.habits_completed_today, consistency)
    tasks = tasks_score(facts.tasks)
    finance = finance_score(facts.budget_total, facts.month_spend)
    health = health_score(facts.focus_minutes)
    overall = global_score(habits, tasks, finance, health)

    recent = list(facts.recent_global_scores)
    # Fewer than two stored days means no trend yet.
    momentum = momentum_index([*recent, overall]) if len(recent) >= 2 else NEUTRAL_SCORE
    burnout = burnout_index(tasks, habits, recent)

    return DailyScore(
        global_score=round2(overall),
        habits_score=round2(habits),
        tasks_score=round2(tasks),
        finance_score=round2(finance),
        health_score=round2(health),
        momentum_index=round2(momentum),
        burnout_index=round2(burnout),
        consistency_factor=round2(clamp(consistency, 0.0, 1.0)),
    )


def overload_index(tasks: tuple[TaskFact, ...] | list[TaskFact], daily_capacity_min: int) -> float:
    capacity = daily_capacity_min if daily_capacity_min > 0 else DEFAULT_DAILY_CAPACITY_MIN
    workload = sum(
        task.estimate_min if task.estimate_min else DEFAULT_TASK_ESTIMATE_MIN
        for task in tasks
    )
    return round2(min(MAX_OVERLOAD_INDEX, workload / capacity))


def clarity_score(tasks: tuple[TaskFact, ...] | list[TaskFact]) -> float:
    if not tasks:
        return 0.0
    clear = sum(1 for task in tasks if task.estimate_min and task.has_due_date)
    return round2(clear / len(tasks))


def compute_daily_stats(facts: ScoreFacts, score: DailyScore) -> DailyStats:
    return DailyStats(
        tasks_planned=len(facts.tasks),
        tasks_completed=sum(1 for task in facts.tasks if task.status == "done"),
        habits_completed=facts.habits_completed_today,
        habits_total=facts.active_habits,
        focus_minutes=facts.focus_minutes,
        overload_index=overload_index(facts.tasks, facts.daily_capacity_min),
        clarity_score=clarity_score(facts.tasks),
        global_score=score.global_score,
    )
