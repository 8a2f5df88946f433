"""
Configuration settings for the ingest function.

Uses Pydantic Settings to load the process-wide configuration (database URL, pool
bounds, external API endpoint and credential, timeout budgets) from environment
variables. Settings are read once per process: ``get_settings()`` caches the
first successful load so warm invocations never touch the environment again.

Validation failures are translated into the ``ConfigError`` family so the cold
start fails fast with the name of the offending variable.
"""
from __future__ import annotations

import re
from functools import lru_cache
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, SecretStr, ValidationError, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict, SettingsError

from pm_ingest.errors import ConfigError, InvalidSetting, MissingSetting


class Settings(BaseSettings):
    # Database
    database_url: str = Field(..., alias="DATABASE_URL")
    db_pool_min_size: int = Field(1, alias="DB_POOL_MIN_SIZE", ge=0)
    db_pool_max_size: int = Field(4, alias="DB_POOL_MAX_SIZE", ge=1)
    db_pool_max_idle_s: float = Field(300.0, alias="DB_POOL_MAX_IDLE_S", gt=0)
    db_sslmode: str = Field("require", alias="DB_SSLMODE")
    db_checkout_max_retries: int = Field(3, alias="DB_CHECKOUT_MAX_RETRIES", ge=0)
    target_table: str = Field("public.external_records", alias="TARGET_TABLE")

    # External API
    external_api_base_url: str = Field(..., alias="EXTERNAL_API_BASE_URL")
    external_api_path: str = Field("", alias="EXTERNAL_API_PATH")
    external_api_key: SecretStr = Field(..., alias="EXTERNAL_API_KEY")
    external_api_auth_header: str = Field("Authorization", alias="EXTERNAL_API_AUTH_HEADER")
    external_api_auth_scheme: str = Field("Bearer", alias="EXTERNAL_API_AUTH_SCHEME")
    # Some public data APIs want the key as a query parameter instead of a header.
    external_api_auth_param: Optional[str] = Field(None, alias="EXTERNAL_API_AUTH_PARAM")
    external_api_params: Dict[str, Any] = Field(default_factory=dict, alias="EXTERNAL_API_PARAMS")
    # Record field -> upstream key, e.g. {"id": "stationName", "value": "pm10Value", "ts": "dataTime"}.
    external_field_map: Dict[str, str] = Field(default_factory=dict, alias="EXTERNAL_FIELD_MAP")

    # Fetch retry policy
    fetch_timeout_ms: int = Field(5_000, alias="FETCH_TIMEOUT_MS", gt=0)
    fetch_connect_timeout_ms: int = Field(2_000, alias="FETCH_CONNECT_TIMEOUT_MS", gt=0)
    fetch_max_attempts: int = Field(3, alias="FETCH_MAX_ATTEMPTS", ge=1)
    fetch_backoff_base_ms: int = Field(200, alias="FETCH_BACKOFF_BASE_MS", ge=0)
    fetch_backoff_max_ms: int = Field(2_000, alias="FETCH_BACKOFF_MAX_MS", ge=0)

    # Invocation budget
    invocation_timeout_ms: int = Field(10_000, alias="INVOCATION_TIMEOUT_MS", gt=0)
    deadline_safety_margin_ms: int = Field(500, alias="DEADLINE_SAFETY_MARGIN_MS", ge=0)

    # Payload normalization
    source_timezone: str = Field("UTC", alias="SOURCE_TIMEZONE")
    truncate_ts_to_hour: bool = Field(False, alias="TRUNCATE_TS_TO_HOUR")
    missing_value_markers: List[str] = Field(default_factory=lambda: ["-"], alias="MISSING_VALUE_MARKERS")

    # Application
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(True, alias="LOG_JSON")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("db_pool_max_size")
    @classmethod
    def _max_not_below_min(cls, value: int, info: ValidationInfo) -> int:
        minimum = info.data.get("db_pool_min_size")
        if minimum is not None and value < minimum:
            raise ValueError(f"must be >= DB_POOL_MIN_SIZE ({minimum})")
        return value

    @field_validator("source_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value

    @field_validator("external_api_base_url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("must start with http:// or https://")
        return value.rstrip("/")

    @field_validator("target_table")
    @classmethod
    def _table_name(cls, value: str) -> str:
        parts = value.split(".")
        if len(parts) > 2 or not all(parts):
            raise ValueError("expected 'table' or 'schema.table'")
        return value

    @field_validator("external_field_map")
    @classmethod
    def _known_record_fields(cls, value: Dict[str, str]) -> Dict[str, str]:
        unknown = set(value) - {"id", "value", "ts"}
        if unknown:
            raise ValueError(f"unknown record fields {sorted(unknown)}")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @property
    def endpoint(self) -> str:
        path = self.external_api_path
        if path and not path.startswith("/"):
            path = "/" + path
        return f"{self.external_api_base_url}{path}"

    @property
    def table_parts(self) -> tuple[str, ...]:
        return tuple(self.target_table.split("."))


def _env_name(loc: tuple[Any, ...]) -> str:
    """Map a pydantic error location to the environment variable name."""
    if not loc:
        return "settings"
    key = str(loc[0])
    field = Settings.model_fields.get(key)
    if field is not None and field.alias:
        return field.alias
    return key.upper()


def load_settings(**overrides: Any) -> Settings:
    """
    Build Settings from the environment, raising ConfigError on failure.

    Parameters
    ----------
    **overrides
        Field values that take precedence over the environment (tests, CLI).

    Raises
    ------
    MissingSetting
        A required variable is absent.
    InvalidSetting
        A variable is present but cannot be parsed or is out of range.
    """
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        first = exc.errors()[0]
        name = _env_name(tuple(first.get("loc", ())))
        if first.get("type") == "missing":
            raise MissingSetting(name) from exc
        raise InvalidSetting(name, first.get("msg", "")) from exc
    except SettingsError as exc:
        # Raised while decoding JSON-typed variables, before validation runs.
        match = re.search(r'field "([^"]+)"', str(exc))
        name = _env_name((match.group(1),)) if match else "settings"
        raise InvalidSetting(name, "not valid JSON") from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return load_settings()


__all__ = ["Settings", "ConfigError", "get_settings", "load_settings"]
