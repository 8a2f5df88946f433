"""
AWS Lambda entry point.

Invoked by an EventBridge schedule rule. The first invocation in a fresh process
(cold start) loads settings, configures logging and builds a ``ProcessRuntime``:
a dedicated event loop plus the pool manager, fetch client and writer wired into
an orchestrator. Warm invocations reuse all of it. The loop outlives each
invocation because the async pool's connections are bound to it.

A ConfigError raised during cold start propagates and fails the init; every
other failure is turned into ``{"status": "error", ...}`` by the orchestrator.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import requests
from psycopg_pool import AsyncConnectionPool

from pm_ingest.config import Settings, get_settings
from pm_ingest.domain.models import InvocationResult
from pm_ingest.infrastructure.http_client import FetchClient
from pm_ingest.infrastructure.pool import PoolFactory, PoolManager
from pm_ingest.orchestrator import InvocationOrchestrator
from pm_ingest.stages.persist import PersistenceWriter
from pm_ingest.utils.logging import configure_logging, get_logger

log = get_logger(__name__)


class ProcessRuntime:
    """
    Everything that lives as long as the process does.

    Building a second runtime is equivalent to a cold start: it gets its own
    loop and its own pool.
    """

    def __init__(
        self,
        settings: Settings,
        pool_factory: Optional[PoolFactory] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.settings = settings
        self.loop = asyncio.new_event_loop()
        self.pool_manager = PoolManager(settings, pool_factory=pool_factory or AsyncConnectionPool)
        self.fetch_client = FetchClient(settings, session=session)
        self.writer = PersistenceWriter(self.pool_manager, settings.table_parts)
        self.orchestrator = InvocationOrchestrator(
            settings, self.pool_manager, self.fetch_client, self.writer
        )

    def invoke(
        self,
        event: Any,
        remaining_ms: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> InvocationResult:
        return self.loop.run_until_complete(
            self.orchestrator.invoke(event, remaining_ms=remaining_ms, request_id=request_id)
        )

    def close(self) -> None:
        if self.loop.is_closed():
            return
        try:
            self.loop.run_until_complete(self.pool_manager.close())
        finally:
            self.fetch_client.close()
            self.loop.close()


_runtime: Optional[ProcessRuntime] = None


def get_runtime(**overrides: Any) -> ProcessRuntime:
    """
    Return the process runtime, building it on cold start.

    ``overrides`` (``pool_factory``, ``session``) only apply when the runtime
    is built.

    Raises
    ------
    ConfigError
        Required configuration is missing or invalid.
    """
    global _runtime
    if _runtime is None:
        settings = get_settings()
        configure_logging(level=settings.log_level, json_logs=settings.log_json)
        _runtime = ProcessRuntime(settings, **overrides)
        log.info(
            "Cold start: runtime initialized",
            extra={"endpoint": settings.endpoint, "table": settings.target_table},
        )
    return _runtime


def reset_runtime() -> None:
    """Drop the process runtime so the next call performs a cold start."""
    global _runtime
    runtime, _runtime = _runtime, None
    if runtime is not None:
        runtime.close()
    get_settings.cache_clear()


def lambda_handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    """Lambda handler: run one ingest invocation."""
    runtime = get_runtime()

    remaining_ms: Optional[int] = None
    request_id: Optional[str] = None
    if context is not None:
        get_remaining = getattr(context, "get_remaining_time_in_millis", None)
        if callable(get_remaining):
            remaining_ms = get_remaining()
        request_id = getattr(context, "aws_request_id", None)

    result = runtime.invoke(event, remaining_ms=remaining_ms, request_id=request_id)
    return result.to_response()


__all__ = ["ProcessRuntime", "get_runtime", "lambda_handler", "reset_runtime"]
