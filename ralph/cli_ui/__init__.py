"""Rich terminal rendering for ralph status output."""

from ralph.cli_ui.status import StatusRenderer

__all__ = ["StatusRenderer"]
