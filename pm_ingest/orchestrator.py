"""
Invocation orchestrator: one event in, one structured result out.

Drives a strictly sequential state machine under a single deadline:

    START -> CONFIG_READY -> POOL_ACQUIRED -> FETCHED -> TRANSFORMED -> PERSISTED -> DONE
      \\__________________________ FAILED(kind) __________________________/

Before each stage the deadline is checked; an expired deadline fails the
invocation with kind ``timeout`` without starting the stage. Suspend-capable
stages are raced against the deadline. Every error is caught here, logged once
with the failing stage and its kind, and returned as a failure result: nothing
unwinds into the runtime, because a crashed process loses its warm pool.

Usage (from the Lambda handler):
    result = await orchestrator.invoke(event, remaining_ms=context.get_remaining_time_in_millis())
    return result.to_response()
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import ValidationError

from pm_ingest.config import Settings
from pm_ingest.domain.models import InvocationEvent, InvocationResult
from pm_ingest.errors import IngestError, InvalidEvent
from pm_ingest.infrastructure.pool import PoolManager
from pm_ingest.stages.abstract import RecordFetcher, RowWriter
from pm_ingest.stages.transform import TransformOptions, transform
from pm_ingest.utils.deadline import Clock, Deadline, invocation_budget_ms, run_within
from pm_ingest.utils.logging import get_logger
from pm_ingest.utils.tracing import StageTrace, trace_stage

log = get_logger(__name__)


class Stage(str, Enum):
    START = "start"
    CONFIG_READY = "config_ready"
    POOL_ACQUIRED = "pool_acquired"
    FETCHED = "fetched"
    TRANSFORMED = "transformed"
    PERSISTED = "persisted"
    DONE = "done"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_event(event: Any) -> InvocationEvent:
    """Validate the raw trigger payload."""
    if not isinstance(event, Mapping):
        raise InvalidEvent(f"event must be a JSON object, got {type(event).__name__}")
    try:
        return InvocationEvent.model_validate(dict(event))
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "event"
        raise InvalidEvent(f"{field}: {first.get('msg', 'invalid')}") from exc


class InvocationOrchestrator:
    """
    Coordinates fetch, transform and persist for one event at a time.

    Parameters
    ----------
    settings : Settings
        Process-wide configuration loaded at cold start.
    pool_manager : PoolManager
        The process-wide pool owner; shared by every invocation.
    fetcher : RecordFetcher
        Upstream client.
    writer : RowWriter
        Persistence stage.
    clock : callable
        Monotonic clock for the deadline; tests inject a fake one.
    wall_clock : callable
        Fallback fire time when the event carries none.
    """

    def __init__(
        self,
        settings: Settings,
        pool_manager: PoolManager,
        fetcher: RecordFetcher,
        writer: RowWriter,
        clock: Clock = time.monotonic,
        wall_clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._pool_manager = pool_manager
        self._fetcher = fetcher
        self._writer = writer
        self._clock = clock
        self._wall_clock = wall_clock
        self._transform_options = TransformOptions.from_settings(settings)
        self.transitions: List[Stage] = []

    def _advance(self, stage: Stage) -> Stage:
        self.transitions.append(stage)
        return stage

    def _params_for(self, event: InvocationEvent) -> Dict[str, Any]:
        params = event.detail.get("params")
        return dict(params) if isinstance(params, Mapping) else {}

    def new_deadline(self, remaining_ms: Optional[int]) -> Deadline:
        budget = invocation_budget_ms(
            self._settings.invocation_timeout_ms,
            self._settings.deadline_safety_margin_ms,
            remaining_ms,
        )
        return Deadline.after_ms(budget, clock=self._clock)

    async def invoke(
        self,
        event: Any,
        remaining_ms: Optional[int] = None,
        request_id: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> InvocationResult:
        """
        Run one invocation to completion or failure. Never raises IngestError.

        Parameters
        ----------
        event : Any
            Raw trigger payload.
        remaining_ms : int | None
            The runtime's remaining execution time, when it reports one.
        request_id : str | None
            Runtime request id used to correlate log lines.
        deadline : Deadline | None
            Explicit deadline overriding the computed budget (tests).
        """
        deadline = deadline or self.new_deadline(remaining_ms)
        invocation_id = request_id or uuid.uuid4().hex
        trace = StageTrace()
        self.transitions = [Stage.START]
        reached = Stage.START
        step = "event"
        ctx: Dict[str, Any] = {"invocation_id": invocation_id}

        log.info(
            "Invocation started",
            extra={**ctx, "budget_ms": round(deadline.remaining_ms(), 1)},
        )
        try:
            with trace_stage(trace, step):
                parsed = parse_event(event)
            ctx["trigger_source"] = parsed.source
            fire_time = parsed.time or self._wall_clock()
            reached = self._advance(Stage.CONFIG_READY)

            step = "pool"
            deadline.check(step)
            with trace_stage(trace, step):
                await run_within(deadline, step, self._pool_manager.get_pool())
            reached = self._advance(Stage.POOL_ACQUIRED)

            step = "fetch"
            deadline.check(step)
            with trace_stage(trace, step):
                payload = await run_within(
                    deadline, step, self._fetcher.fetch(self._params_for(parsed), deadline)
                )
            reached = self._advance(Stage.FETCHED)

            step = "transform"
            deadline.check(step)
            with trace_stage(trace, step):
                row = transform(payload, ingested_at=fire_time, options=self._transform_options)
            reached = self._advance(Stage.TRANSFORMED)

            step = "persist"
            deadline.check(step)
            with trace_stage(trace, step):
                written = await run_within(deadline, step, self._writer.write(row, deadline))
            reached = self._advance(Stage.PERSISTED)
        except IngestError as exc:
            return self._fail(step, reached, exc.kind, str(exc), trace, ctx)
        except Exception as exc:  # noqa: BLE001 - nothing may escape into the runtime
            log.exception(
                "Unexpected error during invocation",
                extra={**ctx, "stage": step, "last_state": reached.value},
            )
            return self._fail(step, reached, "internal", f"{type(exc).__name__}: {exc}", trace, ctx)

        self._advance(Stage.DONE)
        log.info(
            "Invocation succeeded",
            extra={
                **ctx,
                "stage": Stage.DONE.value,
                "row_id": str(written.row_id),
                "outcome": written.outcome,
                "fetch_attempts": getattr(self._fetcher, "attempts", None),
                "durations_ms": trace.as_dict(),
            },
        )
        return InvocationResult(
            status="ok",
            stage=Stage.DONE.value,
            row_id=written.row_id,
            outcome=written.outcome,
            durations_ms=trace.as_dict(),
        )

    def _fail(
        self,
        step: str,
        reached: Stage,
        kind: str,
        detail: str,
        trace: StageTrace,
        ctx: Dict[str, Any],
    ) -> InvocationResult:
        self._advance(Stage.FAILED)
        log.error(
            f"Invocation failed at {step}: {kind}",
            extra={
                **ctx,
                "stage": step,
                "last_state": reached.value,
                "kind": kind,
                "detail": detail,
                "durations_ms": trace.as_dict(),
            },
        )
        return InvocationResult(
            status="error",
            stage=step,
            kind=kind,
            detail=detail,
            durations_ms=trace.as_dict(),
        )


__all__ = ["InvocationOrchestrator", "Stage", "parse_event"]
