"""
Stage timing for invocation traces.

Each orchestrator stage runs inside ``trace_stage`` so the completion log line
can report where the wall-clock budget went.

Usage example:
    from pm_ingest.utils.tracing import StageTrace, trace_stage

    trace = StageTrace()
    with trace_stage(trace, "fetch") as span:
        payload = await client.fetch(params, deadline)

    print(span.duration_ms, trace.as_dict())
"""

from __future__ import annotations

import contextlib
import time
from dataclasses import dataclass, field
from typing import Dict, Generator, List, Optional


@dataclass
class StageSpan:
    """
    Container for one timed stage.
    """

    label: str
    start_ts: float = field(default=0.0)
    end_ts: float = field(default=0.0)
    duration_ms: float = field(default=0.0)
    error: Optional[str] = field(default=None)


@dataclass
class StageTrace:
    spans: List[StageSpan] = field(default_factory=list)

    def as_dict(self) -> Dict[str, float]:
        return {span.label: round(span.duration_ms, 3) for span in self.spans}

    @property
    def total_ms(self) -> float:
        return sum(span.duration_ms for span in self.spans)


@contextlib.contextmanager
def trace_stage(trace: StageTrace, label: str) -> Generator[StageSpan, None, None]:
    """
    Time a block and append the span to ``trace``.

    The span is recorded on every exit path; the exception kind is kept on the
    span when the block raises.
    """
    span = StageSpan(label=label)
    span.start_ts = time.perf_counter()
    try:
        yield span
    except BaseException as exc:
        span.error = getattr(exc, "kind", type(exc).__name__)
        raise
    finally:
        span.end_ts = time.perf_counter()
        span.duration_ms = (span.end_ts - span.start_ts) * 1000.0
        trace.spans.append(span)


__all__ = ["StageSpan", "StageTrace", "trace_stage"]
