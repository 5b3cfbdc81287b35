"""Intervention payload schemas.

Impact and undo payloads are tagged unions: ``kind`` discriminates impacts,
``action`` discriminates undo instructions. Stored impacts of unknown kind
parse into ``GenericImpact`` so older rows stay readable.
"""

from datetime import date, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

Severity = Literal["advisory", "warning", "critical"]

URGENCY_BY_SEVERITY: dict[str, str] = {
    "critical": "high",
    "warning": "medium",
    "advisory": "low",
}


def urgency_for(severity: str) -> str:
    return URGENCY_BY_SEVERITY.get(severity, "low")


# --- Impacts ---


class ReduceLoadImpact(BaseModel):
    kind: Literal["reduce_load"] = "reduce_load"
    overload_index: float
    tasks_moved: int
    task_ids: list[str]


class ForceBreakImpact(BaseModel):
    kind: Literal["force_break"] = "force_break"
    burnout_index: float
    habits_paused: int
    habit_ids: list[str]
    pause_until: datetime


class StreakProtectionImpact(BaseModel):
    kind: Literal["streak_protection"] = "streak_protection"
    habits_at_risk: int
    habit_names: list[str]
    reminder_task_id: str | None = None


class FinancialAlertImpact(BaseModel):
    kind: Literal["financial_alert"] = "financial_alert"
    budget_used: float
    budget_limit: float
    usage_percent: float


class GenericImpact(BaseModel):
    kind: Literal["generic"] = "generic"
    data: dict[str, Any] = Field(default_factory=dict)


Impact = Annotated[
    Union[ReduceLoadImpact, ForceBreakImpact, StreakProtectionImpact, FinancialAlertImpact, GenericImpact],
    Field(discriminator="kind"),
]

_impact_adapter: TypeAdapter[Any] = TypeAdapter(Impact)


def parse_impact(data: Any) -> BaseModel:
    if not isinstance(data, dict):
        return GenericImpact(data={"value": data})
    try:
        return _impact_adapter.validate_python(data)
    except ValidationError:
        return GenericImpact(data=dict(data))


# --- Undo payloads ---


class TaskDate(BaseModel):
    id: str
    due_date: date | None


class RestoreTaskDates(BaseModel):
    action: Literal["restore_task_dates"] = "restore_task_dates"
    original: list[TaskDate]


class ReactivateHabits(BaseModel):
    action: Literal["reactivate_habits"] = "reactivate_habits"
    habit_ids: list[str]


UndoPayload = Annotated[
    Union[RestoreTaskDates, ReactivateHabits],
    Field(discriminator="action"),
]

_undo_adapter: TypeAdapter[Any] = TypeAdapter(UndoPayload)


def parse_undo_payload(data: Any) -> RestoreTaskDates | ReactivateHabits:
    """Raises ValueError for payloads no revert handler understands."""
    try:
        return _undo_adapter.validate_python(data)
    except ValidationError as exc:
        raise ValueError(f"unsupported undo payload: {exc.error_count()} validation error(s)") from exc


# --- Mutation plans ---


class RescheduleTasks(BaseModel):
    op: Literal["reschedule_tasks"] = "reschedule_tasks"
    task_ids: list[str]
    from_date: date
    to_date: date


class PauseHabits(BaseModel):
    op: Literal["pause_habits"] = "pause_habits"
    habit_ids: list[str]
    pause_until: datetime


class CreateReminderTask(BaseModel):
    op: Literal["create_task"] = "create_task"
    title: str
    description: str
    priority: str = "high"
    due_date: date


Mutation = Annotated[
    Union[RescheduleTasks, PauseHabits, CreateReminderTask],
    Field(discriminator="op"),
]


class InterventionDecision(BaseModel):
    """Output of a pure rule: what to do, why, and how to undo it."""

    intervention_type: str
    severity: Severity
    reason: str
    impact: Impact
    mutation: Mutation | None = None
    undo: UndoPayload | None = None

    @property
    def reversible(self) -> bool:
        return self.undo is not None
