"""
Error taxonomy for the ingest function.

Every failure an invocation can hit is one of the classes below. Each carries a
stable ``kind`` string which the orchestrator logs and folds into the runtime
response, so operators can alert on kinds without parsing messages.

Only ``ConfigError`` is allowed to escape the process runtime (cold start);
everything else is caught by the orchestrator and turned into a failure result.
"""

from __future__ import annotations

from typing import Optional


class IngestError(Exception):
    """Base class for all ingest failures."""

    kind: str = "internal"
    retryable: bool = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def __str__(self) -> str:
        return self.message


# Configuration


class ConfigError(IngestError):
    kind = "config"

    def __init__(self, name: str, message: str = "") -> None:
        self.name = name
        super().__init__(message or f"{self.kind}: {name}")


class MissingSetting(ConfigError):
    kind = "config_missing"

    def __init__(self, name: str) -> None:
        super().__init__(name, f"required setting {name} is not set")


class InvalidSetting(ConfigError):
    kind = "config_invalid"

    def __init__(self, name: str, reason: str = "") -> None:
        self.reason = reason
        detail = f"setting {name} is invalid"
        super().__init__(name, f"{detail}: {reason}" if reason else detail)


# Connection pool


class PoolError(IngestError):
    kind = "pool"


class PoolTimeout(PoolError):
    kind = "pool_timeout"
    retryable = True


class PoolExhausted(PoolError):
    kind = "pool_exhausted"
    retryable = True


# External fetch


class FetchError(IngestError):
    kind = "fetch"


class FetchTransient(FetchError):
    """Connection refused, request timeout or a 5xx status."""

    kind = "fetch_transient"
    retryable = True

    def __init__(self, message: str = "", status: Optional[int] = None) -> None:
        self.status = status
        super().__init__(message)


class FetchRejected(FetchError):
    """The upstream refused the request (4xx or an error result envelope)."""

    kind = "fetch_rejected"

    def __init__(self, message: str = "", status: Optional[int] = None) -> None:
        self.status = status
        super().__init__(message)


class FetchMalformed(FetchError):
    kind = "fetch_malformed"


# Transform


class TransformError(IngestError):
    kind = "transform"


class SchemaViolation(TransformError):
    """The upstream payload does not match the expected record schema."""

    kind = "schema_violation"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")


# Persistence


class WriteError(IngestError):
    kind = "write"


class WriteConstraint(WriteError):
    """Integrity violation unrelated to the upsert key (FK, CHECK, NOT NULL)."""

    kind = "write_constraint"


class WriteTransient(WriteError):
    kind = "write_transient"
    retryable = True


# Invocation level


class DeadlineExceeded(IngestError):
    kind = "timeout"

    def __init__(self, stage: str, message: str = "") -> None:
        self.stage = stage
        super().__init__(message or f"deadline exceeded during {stage}")


class InvalidEvent(IngestError):
    kind = "invalid_event"


__all__ = [
    "IngestError",
    "ConfigError",
    "MissingSetting",
    "InvalidSetting",
    "PoolError",
    "PoolTimeout",
    "PoolExhausted",
    "FetchError",
    "FetchTransient",
    "FetchRejected",
    "FetchMalformed",
    "TransformError",
    "SchemaViolation",
    "WriteError",
    "WriteConstraint",
    "WriteTransient",
    "DeadlineExceeded",
    "InvalidEvent",
]
