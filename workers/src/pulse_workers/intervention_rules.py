"""Pure intervention rules.

Each rule takes already-loaded state and returns an ``InterventionDecision``
or None. Nothing here touches the database.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from .intervention_models import (
    CreateReminderTask,
    FinancialAlertImpact,
    ForceBreakImpact,
    InterventionDecision,
    PauseHabits,
    ReactivateHabits,
    ReduceLoadImpact,
    RescheduleTasks,
    RestoreTaskDates,
    StreakProtectionImpact,
    TaskDate,
)
from .utils import next_day

OVERLOAD_THRESHOLD = 1.5
OVERLOAD_CANDIDATE_LIMIT = 10

BURNOUT_THRESHOLD = 70.0
PAUSE_HABIT_LIMIT = 5
PAUSE_DURATION = timedelta(hours=48)
PROTECTED_HABIT_MARKER = "critical"

STREAK_RISK_HOUR = 20
STREAK_MIN_LENGTH = 3
STREAK_NAME_LIMIT = 3

BUDGET_WARNING_RATIO = 0.9
BUDGET_CRITICAL_RATIO = 1.0

RULE_ORDER = ("reduce_load", "force_break", "streak_protection", "financial_alert")


@dataclass(frozen=True)
class CandidateTask:
    id: str
    title: str
    due_date: date | None


@dataclass(frozen=True)
class HabitRef:
    id: str
    name: str


@dataclass(frozen=True)
class StreakHabit:
    id: str
    name: str
    current_streak: int
    completed_today: bool


def evaluate_overload(
    overload_index: float, candidates: list[CandidateTask], day: date
) -> InterventionDecision | None:
    """Move half (rounded up) of today's movable tasks to tomorrow."""
    if overload_index <= OVERLOAD_THRESHOLD:
        return None
    eligible = candidates[:OVERLOAD_CANDIDATE_LIMIT]
    if not eligible:
        return None

    to_move = eligible[: math.ceil(len(eligible) / 2)]
    task_ids = [t.id for t in to_move]
    return InterventionDecision(
        intervention_type="reduce_load",
        severity="warning",
        reason=(
            f"Overload detected ({overload_index * 100:.0f}% of capacity). "
            f"{len(to_move)} task(s) moved to tomorrow."
        ),
        impact=ReduceLoadImpact(
            overload_index=overload_index,
            tasks_moved=len(to_move),
            task_ids=task_ids,
        ),
        mutation=RescheduleTasks(task_ids=task_ids, from_date=day, to_date=next_day(day)),
        undo=RestoreTaskDates(original=[TaskDate(id=t.id, due_date=t.due_date) for t in to_move]),
    )


def is_protected_habit(name: str) -> bool:
    return PROTECTED_HABIT_MARKER in name.lower()


def evaluate_burnout(
    burnout_index: float, active_habits: list[HabitRef], now: datetime
) -> InterventionDecision | None:
    """Pause up to five non-critical habits for 48 hours."""
    if burnout_index <= BURNOUT_THRESHOLD:
        return None
    pausable = [h for h in active_habits if not is_protected_habit(h.name)][:PAUSE_HABIT_LIMIT]
    if not pausable:
        return None

    habit_ids = [h.id for h in pausable]
    pause_until = now + PAUSE_DURATION
    return InterventionDecision(
        intervention_type="force_break",
        severity="critical",
        reason=(
            f"Imminent burnout detected ({burnout_index:.0f}%). "
            f"{len(pausable)} habit(s) paused for 48h."
        ),
        impact=ForceBreakImpact(
            burnout_index=burnout_index,
            habits_paused=len(pausable),
            habit_ids=habit_ids,
            pause_until=pause_until,
        ),
        mutation=PauseHabits(habit_ids=habit_ids, pause_until=pause_until),
        undo=ReactivateHabits(habit_ids=habit_ids),
    )


def evaluate_streak_risk(
    local_now: datetime, habits: list[StreakHabit], day: date
) -> InterventionDecision | None:
    """After 20:00 local time, remind about incomplete habits carrying a streak."""
    if local_now.hour < STREAK_RISK_HOUR:
        return None
    at_risk = [
        h for h in habits
        if h.current_streak >= STREAK_MIN_LENGTH and not h.completed_today
    ]
    if not at_risk:
        return None

    names = [h.name for h in at_risk[:STREAK_NAME_LIMIT]]
    return InterventionDecision(
        intervention_type="streak_protection",
        severity="advisory",
        reason=f"{len(at_risk)} habit streak(s) at risk. Reminder created.",
        impact=StreakProtectionImpact(habits_at_risk=len(at_risk), habit_names=names),
        mutation=CreateReminderTask(
            title="Protect your streaks!",
            description=f"At-risk habits: {', '.join(names)}. Complete them before midnight.",
            priority="high",
            due_date=day,
        ),
    )


def evaluate_financial_stress(
    month_spend: float, budget_limit: float | None
) -> InterventionDecision | None:
    """Alert-only rule on month-to-date spend against the global budget."""
    if not budget_limit or budget_limit <= 0:
        return None
    usage = month_spend / budget_limit
    if usage <= BUDGET_WARNING_RATIO:
        return None
    return InterventionDecision(
        intervention_type="financial_alert",
        severity="critical" if usage > BUDGET_CRITICAL_RATIO else "warning",
        reason=f"Monthly budget at {usage * 100:.0f}%. Watch your spending.",
        impact=FinancialAlertImpact(
            budget_used=month_spend,
            budget_limit=budget_limit,
            usage_percent=usage * 100,
        ),
    )
