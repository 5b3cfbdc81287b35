"""Tests for the pure intervention rules and their payload schemas."""

import math
from datetime import date, datetime, timezone

import pytest

from pulse_workers.intervention_models import (
    FinancialAlertImpact,
    GenericImpact,
    ReactivateHabits,
    ReduceLoadImpact,
    RestoreTaskDates,
    parse_impact,
    parse_undo_payload,
    urgency_for,
)
from pulse_workers.intervention_rules import (
    CandidateTask,
    HabitRef,
    StreakHabit,
    evaluate_burnout,
    evaluate_financial_stress,
    evaluate_overload,
    evaluate_streak_risk,
    is_protected_habit,
)

DAY = date(2026, 3, 10)
NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


def _tasks(n):
    return [CandidateTask(id=f"t{i}", title=f"Task {i}", due_date=DAY) for i in range(n)]


class TestOverload:
    def test_just_below_threshold_does_not_fire(self):
        assert evaluate_overload(1.49, _tasks(4), DAY) is None

    def test_threshold_itself_does_not_fire(self):
        assert evaluate_overload(1.5, _tasks(4), DAY) is None

    @pytest.mark.parametrize("n", [1, 2, 3, 5, 10])
    def test_moves_half_rounded_up(self, n):
        decision = evaluate_overload(1.51, _tasks(n), DAY)
        assert decision is not None
        assert decision.mutation.task_ids == [f"t{i}" for i in range(math.ceil(n / 2))]
        assert decision.mutation.to_date == date(2026, 3, 11)
        assert decision.severity == "warning"

    def test_month_end_moves_to_the_first(self):
        end = date(2026, 3, 31)
        tasks = [CandidateTask(id="t0", title="Task 0", due_date=end)]
        assert evaluate_overload(1.6, tasks, end).mutation.to_date == date(2026, 4, 1)

    def test_considers_at_most_ten_candidates(self):
        decision = evaluate_overload(1.8, _tasks(14), DAY)
        assert decision.impact.tasks_moved == 5

    def test_no_candidates_means_no_intervention(self):
        assert evaluate_overload(2.0, [], DAY) is None

    def test_undo_restores_original_dates(self):
        decision = evaluate_overload(1.6, _tasks(2), DAY)
        assert decision.reversible
        assert isinstance(decision.undo, RestoreTaskDates)
        assert [t.due_date for t in decision.undo.original] == [DAY]


class TestBurnout:
    def test_below_threshold(self):
        assert evaluate_burnout(70, [HabitRef(id="h1", name="Run")], NOW) is None

    def test_pauses_unprotected_habits_for_48h(self):
        habits = [
            HabitRef(id="h1", name="Run"),
            HabitRef(id="h2", name="Meds (CRITICAL)"),
            HabitRef(id="h3", name="Read"),
        ]
        decision = evaluate_burnout(82.5, habits, NOW)
        assert decision.severity == "critical"
        assert decision.mutation.habit_ids == ["h1", "h3"]
        assert decision.mutation.pause_until == datetime(2026, 3, 12, 9, 0, tzinfo=timezone.utc)
        assert isinstance(decision.undo, ReactivateHabits)

    def test_pauses_at_most_five(self):
        habits = [HabitRef(id=f"h{i}", name=f"Habit {i}") for i in range(8)]
        decision = evaluate_burnout(90, habits, NOW)
        assert len(decision.mutation.habit_ids) == 5

    def test_only_protected_habits(self):
        assert evaluate_burnout(90, [HabitRef(id="h1", name="critical meds")], NOW) is None

    def test_protected_marker_is_case_insensitive(self):
        assert is_protected_habit("Critical sleep")
        assert not is_protected_habit("Sleep")


class TestStreakRisk:
    habits = [
        StreakHabit(id="h1", name="Run", current_streak=5, completed_today=False),
        StreakHabit(id="h2", name="Read", current_streak=2, completed_today=False),
        StreakHabit(id="h3", name="Write", current_streak=9, completed_today=True),
    ]

    def test_before_evening_does_not_fire(self):
        local_now = datetime(2026, 3, 10, 19, 59)
        assert evaluate_streak_risk(local_now, self.habits, DAY) is None

    def test_evening_creates_reminder(self):
        local_now = datetime(2026, 3, 10, 20, 0)
        decision = evaluate_streak_risk(local_now, self.habits, DAY)
        assert decision.intervention_type == "streak_protection"
        assert decision.impact.habit_names == ["Run"]
        assert decision.mutation.due_date == DAY
        assert not decision.reversible


class TestFinancialStress:
    def test_no_budget(self):
        assert evaluate_financial_stress(500, None) is None

    def test_under_ninety_percent(self):
        assert evaluate_financial_stress(90, 100) is None

    def test_warning_band(self):
        decision = evaluate_financial_stress(95, 100)
        assert decision.severity == "warning"
        assert decision.mutation is None

    def test_over_budget_is_critical(self):
        decision = evaluate_financial_stress(120, 100)
        assert decision.severity == "critical"
        assert decision.impact.usage_percent == pytest.approx(120.0)


class TestPayloads:
    def test_known_impact_round_trips_by_kind(self):
        impact = parse_impact({"kind": "financial_alert", "budget_used": 1, "budget_limit": 2, "usage_percent": 50})
        assert isinstance(impact, FinancialAlertImpact)

    def test_unknown_impact_falls_back_to_generic(self):
        impact = parse_impact({"kind": "mystery", "foo": "bar"})
        assert isinstance(impact, GenericImpact)
        assert impact.data["foo"] == "bar"

    def test_malformed_known_impact_falls_back_to_generic(self):
        assert isinstance(parse_impact({"kind": "reduce_load"}), GenericImpact)
        assert not isinstance(parse_impact({"kind": "reduce_load"}), ReduceLoadImpact)

    def test_unsupported_undo_payload(self):
        with pytest.raises(ValueError, match="unsupported undo payload"):
            parse_undo_payload({"action": "delete_everything"})

    def test_undo_payload_parses(self):
        payload = parse_undo_payload({"action": "reactivate_habits", "habit_ids": ["h1"]})
        assert payload.habit_ids == ["h1"]

    def test_urgency_mapping(self):
        assert urgency_for("critical") == "high"
        assert urgency_for("warning") == "medium"
        assert urgency_for("unknown") == "low"
