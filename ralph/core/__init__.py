"""Core executor: models, errors and the components composed by the engine."""

from ralph.core.errors import ErrorKind, RalphError
from ralph.core.models import Gate, GateStatus, ItemStatus, Verifier, WorkItem

__all__ = [
    "ErrorKind",
    "Gate",
    "GateStatus",
    "ItemStatus",
    "RalphError",
    "Verifier",
    "WorkItem",
]
