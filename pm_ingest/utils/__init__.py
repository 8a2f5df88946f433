"""
Utilities package for the ingest function.

Exports shared helpers for logging, stage timing and deadlines.
Keep this package lightweight and free of domain-specific logic.
"""

from pm_ingest.utils.deadline import Deadline, invocation_budget_ms, run_within
from pm_ingest.utils.logging import configure_logging, get_logger
from pm_ingest.utils.tracing import StageSpan, StageTrace, trace_stage

__all__ = [
    "Deadline",
    "invocation_budget_ms",
    "run_within",
    "configure_logging",
    "get_logger",
    "StageSpan",
    "StageTrace",
    "trace_stage",
]
