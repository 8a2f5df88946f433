"""
Persistence writer: idempotent upsert of one row into Postgres.

The statement is keyed on the stable ``row_id``. A conflicting row is updated
only when its content actually differs, so writing the same row twice leaves
the table exactly as one write did (``outcome == "unchanged"`` the second time).

Schema
------
    <TARGET_TABLE>
    ──────────────────────────────
    row_id       UUID PK     (uuid5 of the upstream id)
    source_id    TEXT
    value        DOUBLE PRECISION NULL
    observed_at  TIMESTAMPTZ
    ingested_at  TIMESTAMPTZ
    created_at   TIMESTAMPTZ DEFAULT now()
    updated_at   TIMESTAMPTZ DEFAULT now()
"""

from __future__ import annotations

from typing import Sequence, Tuple

import psycopg
from psycopg import AsyncConnection, sql

from pm_ingest.domain.models import PersistedRow, WriteResult
from pm_ingest.errors import WriteConstraint, WriteError, WriteTransient
from pm_ingest.infrastructure.pool import PoolManager
from pm_ingest.utils.deadline import Deadline
from pm_ingest.utils.logging import get_logger

log = get_logger(__name__)

# One extra attempt through a fresh checkout after a dropped connection.
TRANSIENT_WRITE_RETRIES = 1

UPSERT_SQL = sql.SQL(
    """
    INSERT INTO {table} AS t (row_id, source_id, value, observed_at, ingested_at)
    VALUES (%s, %s, %s, %s, %s)
    ON CONFLICT (row_id) DO UPDATE SET
        source_id   = EXCLUDED.source_id,
        value       = EXCLUDED.value,
        observed_at = EXCLUDED.observed_at,
        ingested_at = EXCLUDED.ingested_at,
        updated_at  = now()
    WHERE (t.source_id, t.value, t.observed_at)
        IS DISTINCT FROM (EXCLUDED.source_id, EXCLUDED.value, EXCLUDED.observed_at)
    RETURNING (xmax = 0) AS inserted
    """
)

DDL_SQL = sql.SQL(
    """
    CREATE TABLE IF NOT EXISTS {table} (
        row_id      UUID PRIMARY KEY,
        source_id   TEXT NOT NULL,
        value       DOUBLE PRECISION,
        observed_at TIMESTAMPTZ NOT NULL,
        ingested_at TIMESTAMPTZ NOT NULL,
        created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """
)


def _row_params(row: PersistedRow) -> Tuple[object, ...]:
    return (row.row_id, row.source_id, row.value, row.observed_at, row.ingested_at)


async def upsert_row(conn: AsyncConnection, row: PersistedRow, table: Sequence[str]) -> WriteResult:
    """
    Upsert ``row`` on an already checked-out connection.

    Raises
    ------
    WriteConstraint
        Integrity violation other than the upsert key (FK, CHECK, NOT NULL).
    WriteTransient
        The connection dropped mid-statement.
    WriteError
        Any other database error.
    """
    query = UPSERT_SQL.format(table=sql.Identifier(*table))
    try:
        async with conn.transaction():
            cur = await conn.execute(query, _row_params(row))
            returned = await cur.fetchone()
    except psycopg.IntegrityError as exc:
        raise WriteConstraint(f"{type(exc).__name__}: {exc}") from exc
    except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
        raise WriteTransient(f"{type(exc).__name__}: {exc}") from exc
    except psycopg.Error as exc:
        raise WriteError(f"{type(exc).__name__}: {exc}") from exc

    if returned is None:
        outcome = "unchanged"
    elif returned[0]:
        outcome = "inserted"
    else:
        outcome = "updated"
    return WriteResult(row_id=row.row_id, outcome=outcome)


async def ensure_schema(conn: AsyncConnection, table: Sequence[str]) -> None:
    """Create the target table (and its schema) if absent. Safe to re-run."""
    async with conn.transaction():
        if len(table) == 2:
            await conn.execute(
                sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(sql.Identifier(table[0]))
            )
        await conn.execute(DDL_SQL.format(table=sql.Identifier(*table)))
    log.info("Target table ready", extra={"table": ".".join(table)})


class PersistenceWriter:
    """
    Row writer backed by the process-wide pool.

    Each write checks out its own connection and releases it on every exit
    path. A transient connection failure is retried once through a fresh
    checkout; constraint violations are surfaced immediately.
    """

    def __init__(self, pool_manager: PoolManager, table: Sequence[str]) -> None:
        self._pool_manager = pool_manager
        self._table = tuple(table)

    async def write(self, row: PersistedRow, deadline: Deadline) -> WriteResult:
        attempts = TRANSIENT_WRITE_RETRIES + 1
        for attempt in range(1, attempts + 1):
            try:
                async with self._pool_manager.connection(deadline) as conn:
                    result = await upsert_row(conn, row, self._table)
            except WriteTransient as exc:
                if attempt == attempts:
                    raise
                log.warning(
                    "Transient write failure, retrying on a fresh connection",
                    extra={"row_id": str(row.row_id), "attempt": attempt, "error": str(exc)},
                )
                continue
            log.info(
                "Row persisted",
                extra={"row_id": str(row.row_id), "outcome": result.outcome, "attempt": attempt},
            )
            return result
        raise AssertionError("unreachable")  # pragma: no cover


__all__ = [
    "DDL_SQL",
    "PersistenceWriter",
    "TRANSIENT_WRITE_RETRIES",
    "UPSERT_SQL",
    "ensure_schema",
    "upsert_row",
]
