"""
Domain models for the ingest function.

Defines the invocation input, the upstream record, the row written to Postgres,
and the result handed back to the invoking runtime. All models are frozen: a
value is created once per invocation and never mutated in place.
"""
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class InvocationEvent(BaseModel):
    """
    Event delivered by the trigger bus.

    Field names follow the EventBridge scheduled-event envelope; anything else in
    the payload is ignored.
    """

    id: Optional[str] = Field(None, description="Trigger-assigned event id.")
    source: str = Field("unknown", description="Trigger source identifier.")
    time: Optional[datetime] = Field(None, description="Nominal fire time.")
    detail: Dict[str, Any] = Field(default_factory=dict, description="Free-form metadata.")

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("time")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator("detail", mode="before")
    @classmethod
    def _none_detail(cls, value: Any) -> Any:
        return {} if value is None else value


class ExternalRecord(BaseModel):
    """
    A single record as returned by the third-party API, after validation.
    """

    id: str = Field(..., min_length=1, description="Upstream identifier.")
    value: Optional[float] = Field(..., description="Measured value; None when not reported.")
    ts: datetime = Field(..., description="Observation timestamp, timezone-aware.")

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("value")
    @classmethod
    def _finite(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and not math.isfinite(value):
            raise ValueError("value must be finite")
        return value


class PersistedRow(BaseModel):
    """
    Representation of a single row in the target table.

    ``row_id`` is derived from the upstream identifier only, so re-delivery of
    the same logical event upserts the same row.
    """

    row_id: UUID = Field(..., description="Stable primary key.")
    source_id: str = Field(..., description="Upstream identifier the key derives from.")
    value: Optional[float] = Field(None, description="Value column.")
    observed_at: datetime = Field(..., description="Observation time, UTC.")
    ingested_at: datetime = Field(..., description="Nominal fire time of the ingesting event, UTC.")

    model_config = ConfigDict(frozen=True)


class WriteResult(BaseModel):
    row_id: UUID
    outcome: Literal["inserted", "updated", "unchanged"]

    model_config = ConfigDict(frozen=True)


class InvocationResult(BaseModel):
    """
    Outcome of one invocation.

    Only ``to_response()`` is handed to the invoking runtime; the remaining
    fields feed logs and tests.
    """

    status: Literal["ok", "error"]
    stage: str
    kind: Optional[str] = None
    detail: Optional[str] = None
    row_id: Optional[UUID] = None
    outcome: Optional[str] = None
    durations_ms: Dict[str, float] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_response(self) -> Dict[str, Any]:
        if self.ok:
            return {"status": "ok"}
        return {"status": "error", "detail": f"{self.kind}: {self.detail}"}


__all__ = [
    "InvocationEvent",
    "ExternalRecord",
    "PersistedRow",
    "WriteResult",
    "InvocationResult",
]
