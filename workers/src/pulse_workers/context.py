"""Explicit per-request tenant context threaded through every pipeline call."""

from dataclasses import dataclass
from datetime import date

from .errors import MultiTenantViolation
from .utils import DEFAULT_TIMEZONE


@dataclass(frozen=True)
class RequestContext:
    user_id: str
    workspace_id: str
    date: date
    timezone: str = DEFAULT_TIMEZONE

    def __post_init__(self) -> None:
        if not self.user_id:
            raise MultiTenantViolation("user_id is required")
        if not self.workspace_id:
            raise MultiTenantViolation(f"workspace_id is required (user_id={self.user_id})")

    @property
    def log_extra(self) -> dict[str, str]:
        return {
            "pulse_user_id": self.user_id,
            "pulse_workspace_id": self.workspace_id,
            "pulse_date": self.date.isoformat(),
        }
