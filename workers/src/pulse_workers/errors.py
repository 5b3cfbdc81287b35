"""Error taxonomy for the scoring and intervention pipeline."""


class PulseError(Exception):
    """Base class for all pipeline errors."""


class MultiTenantViolation(PulseError):
    """A tenant key (user or workspace id) is missing where one is required."""


class WorkspaceResolutionError(PulseError):
    """The user's workspace could neither be found nor created."""


class InterventionNotFound(PulseError):
    pass


class NothingToRevert(PulseError):
    """No undo entry exists for the caller under the given id."""


class NotRevertible(PulseError):
    """The undo entry exists but may no longer be applied."""

    def __init__(self, reason: str, undo_id: str | None = None) -> None:
        self.reason = reason
        self.undo_id = undo_id
        super().__init__(f"undo entry {undo_id} is not revertible: {reason}")
