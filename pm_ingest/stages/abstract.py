"""
Stage interfaces for the invocation pipeline.

The orchestrator only depends on these protocols, so tests can drive it with
in-memory fetchers and writers while production wires in ``FetchClient`` and
``PersistenceWriter``.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Protocol, runtime_checkable

from pm_ingest.domain.models import PersistedRow, WriteResult
from pm_ingest.utils.deadline import Deadline


@runtime_checkable
class RecordFetcher(Protocol):
    """
    Source of one raw record payload per invocation.

    Attributes
    ----------
    attempts : int
        Underlying attempts made by the most recent ``fetch`` call.
    """

    attempts: int

    async def fetch(self, params: Mapping[str, Any], deadline: Deadline) -> Dict[str, Any]:
        """
        Fetch the upstream payload.

        Parameters
        ----------
        params : Mapping
            Per-invocation query parameters, merged over the static ones.
        deadline : Deadline
            Invocation deadline; implementations must not outlive it.

        Returns
        -------
        dict
            The raw JSON object, not yet validated.
        """
        ...


@runtime_checkable
class RowWriter(Protocol):
    """
    Sink that persists one row idempotently.
    """

    async def write(self, row: PersistedRow, deadline: Deadline) -> WriteResult:
        """Upsert ``row`` and report what happened to the stored copy."""
        ...


__all__ = [
    "RecordFetcher",
    "RowWriter",
]
