"""
Payload transformer: raw upstream JSON -> ExternalRecord -> PersistedRow.

Pure functions only. The same payload and ingestion time always produce the
same row, including the primary key, which is a UUIDv5 of the upstream id. A
re-delivered event therefore upserts the row it wrote the first time.

Validation is strict. Values that do not fit the schema raise SchemaViolation
naming the offending field; nothing is coerced silently. The one tolerated
irregularity is the "no measurement" marker some public APIs send instead of a
number (``"-"`` by default), which becomes ``None``.
"""

from __future__ import annotations

import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from pm_ingest.config import Settings
from pm_ingest.domain.models import ExternalRecord, PersistedRow
from pm_ingest.errors import SchemaViolation

# Fixed namespace for row ids. Changing it re-keys every stored row.
ROW_NAMESPACE = uuid.UUID("5b0c7f0e-2f4d-5a43-9c55-3d1f0b6a7e21")

_NAIVE_FORMATS = ("%Y-%m-%d %H:%M", "%Y-%m-%d %H:%M:%S", "%Y%m%d%H%M")
_END_OF_DAY = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2}[ T]|\d{8})24(?P<sep>:?)00"
    r"(?P<rest>(?::00(?:\.0+)?)?(?:Z|[+-]\d{2}:?\d{2})?)$"
)


@dataclass(frozen=True)
class TransformOptions:
    """
    Normalization knobs, all sourced from settings in production.
    """

    source_timezone: str = "UTC"
    truncate_to_hour: bool = False
    missing_markers: Tuple[str, ...] = ("-",)
    field_map: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TransformOptions":
        return cls(
            source_timezone=settings.source_timezone,
            truncate_to_hour=settings.truncate_ts_to_hour,
            missing_markers=tuple(settings.missing_value_markers),
            field_map=dict(settings.external_field_map),
        )


def derive_row_id(source_id: str) -> uuid.UUID:
    """Stable primary key for an upstream identifier."""
    return uuid.uuid5(ROW_NAMESPACE, source_id)


def _pick(payload: Mapping[str, Any], name: str, options: TransformOptions) -> Any:
    key = options.field_map.get(name, name)
    if key not in payload:
        raise SchemaViolation(name, f"required field {key!r} is missing")
    return payload[key]


def _parse_id(raw: Any) -> str:
    if isinstance(raw, bool):
        raise SchemaViolation("id", "expected a string, got bool")
    if isinstance(raw, int):
        return str(raw)
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    raise SchemaViolation("id", f"expected a non-empty string, got {raw!r}")


def _parse_value(raw: Any, missing_markers: Tuple[str, ...]) -> Optional[float]:
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise SchemaViolation("value", "expected a number, got bool")
    if isinstance(raw, (int, float)):
        try:
            value = float(raw)
        except OverflowError as exc:
            raise SchemaViolation("value", "number out of range") from exc
    elif isinstance(raw, str):
        text = raw.strip()
        if text in missing_markers:
            return None
        try:
            value = float(text)
        except ValueError as exc:
            raise SchemaViolation("value", f"not a number: {raw!r}") from exc
    else:
        raise SchemaViolation("value", f"expected a number, got {type(raw).__name__}")
    if not math.isfinite(value):
        raise SchemaViolation("value", f"not a finite number: {raw!r}")
    return value


def _parse_ts(raw: Any, source_timezone: str) -> datetime:
    if not isinstance(raw, str) or not raw.strip():
        raise SchemaViolation("ts", f"expected a timestamp string, got {raw!r}")
    text = raw.strip()

    # Hourly feeds label midnight as 24:00 of the previous day.
    rollover = timedelta(0)
    end_of_day = _END_OF_DAY.match(text)
    if end_of_day:
        text = end_of_day.expand(r"\g<date>00\g<sep>00\g<rest>")
        rollover = timedelta(days=1)

    parsed: Optional[datetime] = None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        for fmt in _NAIVE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        raise SchemaViolation("ts", f"unrecognized timestamp {raw!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=ZoneInfo(source_timezone))
    return parsed + rollover


def parse_record(payload: Any, options: TransformOptions = TransformOptions()) -> ExternalRecord:
    """
    Validate a raw payload into an ExternalRecord.

    Raises
    ------
    SchemaViolation
        A required field is missing, mistyped or out of range.
    """
    if not isinstance(payload, Mapping):
        raise SchemaViolation("payload", f"expected a JSON object, got {type(payload).__name__}")

    source_id = _parse_id(_pick(payload, "id", options))
    value = _parse_value(_pick(payload, "value", options), options.missing_markers)
    ts = _parse_ts(_pick(payload, "ts", options), options.source_timezone)
    try:
        return ExternalRecord(id=source_id, value=value, ts=ts)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = first.get("loc") or ("payload",)
        raise SchemaViolation(str(loc[0]), first.get("msg", "invalid")) from exc


def to_row(
    record: ExternalRecord,
    ingested_at: datetime,
    options: TransformOptions = TransformOptions(),
) -> PersistedRow:
    """
    Map a validated record onto the persistence schema, normalized to UTC.
    """
    observed_at = record.ts.astimezone(timezone.utc)
    if options.truncate_to_hour:
        observed_at = observed_at.replace(minute=0, second=0, microsecond=0)
    if ingested_at.tzinfo is None:
        ingested_at = ingested_at.replace(tzinfo=timezone.utc)
    return PersistedRow(
        row_id=derive_row_id(record.id),
        source_id=record.id,
        value=record.value,
        observed_at=observed_at,
        ingested_at=ingested_at.astimezone(timezone.utc),
    )


def transform(
    payload: Any,
    *,
    ingested_at: datetime,
    options: TransformOptions = TransformOptions(),
) -> PersistedRow:
    """
    Validate ``payload`` and build the row to persist.

    Parameters
    ----------
    payload : Any
        Raw JSON object returned by the fetch client.
    ingested_at : datetime
        Nominal fire time of the triggering event. Passed in rather than read
        from the clock so the result depends on the inputs only.
    options : TransformOptions
        Timezone, truncation, missing-value markers and field names.
    """
    return to_row(parse_record(payload, options), ingested_at, options)


__all__ = [
    "ROW_NAMESPACE",
    "TransformOptions",
    "derive_row_id",
    "parse_record",
    "to_row",
    "transform",
]
