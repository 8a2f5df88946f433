"""
Stages package for the ingest function.

Re-exports the stage interfaces and the concrete transform/persist stages so
downstream code can import from ``pm_ingest.stages`` directly.
"""

from pm_ingest.stages.abstract import RecordFetcher, RowWriter
from pm_ingest.stages.persist import PersistenceWriter, ensure_schema, upsert_row
from pm_ingest.stages.transform import TransformOptions, derive_row_id, parse_record, transform

__all__ = [
    # Interfaces
    "RecordFetcher",
    "RowWriter",
    # Concrete stages
    "PersistenceWriter",
    "TransformOptions",
    "derive_row_id",
    "ensure_schema",
    "parse_record",
    "transform",
    "upsert_row",
]
