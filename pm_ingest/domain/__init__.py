"""
Domain package for the ingest function.

Exports the data definitions shared by the stages and the orchestrator.
Keep this package free of I/O.
"""

from pm_ingest.domain.models import (
    ExternalRecord,
    InvocationEvent,
    InvocationResult,
    PersistedRow,
    WriteResult,
)

__all__ = [
    "ExternalRecord",
    "InvocationEvent",
    "InvocationResult",
    "PersistedRow",
    "WriteResult",
]
