# Import all handlers so they register themselves.
from . import scoring  # noqa: F401
from . import interventions  # noqa: F401
from . import undo_retention  # noqa: F401
