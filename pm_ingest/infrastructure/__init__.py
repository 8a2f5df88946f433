"""
Infrastructure package for the ingest function.

Centralizes I/O and resource management: the database pool, the outbound HTTP
client and its retry policy. Keep this layer decoupled from the orchestrator's
stage logic.
"""

from pm_ingest.infrastructure.http_client import FetchClient, parse_response
from pm_ingest.infrastructure.pool import PoolManager
from pm_ingest.infrastructure.retry import RetryPolicy

__all__ = [
    "FetchClient",
    "PoolManager",
    "RetryPolicy",
    "parse_response",
]
