"""
pm-ingest - scheduled ingest of third-party measurements into PostgreSQL.

An EventBridge schedule invokes the Lambda handler on a fixed cadence. Each
invocation:

- fetches one record from the external API (bounded timeout, bounded retries),
- validates and maps it onto the persistence schema,
- upserts it keyed on a stable id, so at-least-once delivery stays idempotent,

all under one wall-clock deadline, reusing a connection pool that survives
between warm invocations.
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from pm_ingest.config import Settings, get_settings, load_settings
from pm_ingest.domain.models import InvocationEvent, InvocationResult, PersistedRow
from pm_ingest.handler import ProcessRuntime, lambda_handler
from pm_ingest.orchestrator import InvocationOrchestrator, Stage
from pm_ingest.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "Settings",
    "get_settings",
    "load_settings",
    # Domain
    "InvocationEvent",
    "InvocationResult",
    "PersistedRow",
    # Entry points
    "InvocationOrchestrator",
    "ProcessRuntime",
    "Stage",
    "lambda_handler",
    # Logging
    "configure_logging",
    "get_logger",
]
