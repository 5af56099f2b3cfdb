"""Terminal rendering of flow run results."""

from piflow.cli_ui.result_renderer import ResultTableRenderer, summarize_outcome

__all__ = [
    "ResultTableRenderer",
    "summarize_outcome",
]
