"""
Outbound HTTP client for the third-party API.

One logical request per invocation: a GET against the configured endpoint with
the credential from settings. Each attempt runs ``requests`` in a worker thread
so the event loop stays free. Each attempt gets a (connect, read) timeout
clamped to the invocation deadline. The read timeout bounds each socket read,
not the whole body, so a server trickling bytes can keep an abandoned worker
thread alive past the deadline; such a thread keeps its own session and the
client continues on a fresh one.

Failure classes:
- connection errors, read/connect timeouts, 5xx    -> FetchTransient (retried)
- 4xx, or an error result in the response envelope -> FetchRejected
- body that is not a JSON object                   -> FetchMalformed

Public data portals commonly wrap results in an envelope:

    {"response": {"header": {"resultCode": "00", "resultMsg": "NORMAL_CODE"},
                  "body": {"items": [{...newest...}, ...]}}}

An envelope is unwrapped to its newest item; a bare JSON object is returned
as-is.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import requests

from pm_ingest.config import Settings
from pm_ingest.errors import DeadlineExceeded, FetchMalformed, FetchRejected, FetchTransient
from pm_ingest.infrastructure.retry import RetryPolicy
from pm_ingest.utils.deadline import Deadline, run_within
from pm_ingest.utils.logging import get_logger

log = get_logger(__name__)

ENVELOPE_OK_MESSAGE = "NORMAL_CODE"

_TRANSIENT_REQUEST_ERRORS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    requests.exceptions.ChunkedEncodingError,
)


def _unwrap_envelope(body: Dict[str, Any]) -> Dict[str, Any]:
    envelope = body.get("response")
    if not isinstance(envelope, dict):
        return body

    header = envelope.get("header") or {}
    message = header.get("resultMsg") if isinstance(header, dict) else None
    if message is not None and message != ENVELOPE_OK_MESSAGE:
        raise FetchRejected(f"API returned an error: {message}")

    items = (envelope.get("body") or {}).get("items")
    if isinstance(items, dict) and "item" in items:
        items = items["item"]
    if not isinstance(items, list) or not items:
        raise FetchMalformed("no data available in API response")
    latest = items[0]
    if not isinstance(latest, dict):
        raise FetchMalformed("envelope item is not a JSON object")
    return latest


def parse_response(response: requests.Response) -> Dict[str, Any]:
    """
    Classify an HTTP response and return the record payload.
    """
    status = response.status_code
    if status >= 500:
        raise FetchTransient(f"upstream returned {status}", status=status)
    if status >= 400:
        raise FetchRejected(f"upstream returned {status}: {response.text[:200]}", status=status)
    if not 200 <= status < 300:
        raise FetchRejected(f"unexpected status {status}", status=status)

    try:
        body = response.json()
    except ValueError as exc:
        raise FetchMalformed(f"response body is not JSON: {response.text[:200]!r}") from exc
    if not isinstance(body, dict):
        raise FetchMalformed(f"expected a JSON object, got {type(body).__name__}")
    return _unwrap_envelope(body)


class FetchClient:
    """
    Deadline-aware client for the external API.

    Parameters
    ----------
    settings : Settings
        Endpoint, credential and timeout configuration.
    session : requests.Session, optional
        Reused across invocations for connection keep-alive. Tests pass fakes.
    session_factory : callable, optional
        Builds the replacement session after an attempt is abandoned at the
        deadline. The abandoned worker thread keeps the old one.
    retry_policy : RetryPolicy, optional
        Defaults to the policy described by ``settings``.
    """

    def __init__(
        self,
        settings: Settings,
        session: Optional[requests.Session] = None,
        retry_policy: Optional[RetryPolicy] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._session = session if session is not None else session_factory()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.attempts = 0

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        settings = self._settings
        if settings.external_api_auth_param:
            return headers
        key = settings.external_api_key.get_secret_value()
        scheme = settings.external_api_auth_scheme
        headers[settings.external_api_auth_header] = f"{scheme} {key}" if scheme else key
        return headers

    def _query(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        settings = self._settings
        query = {**settings.external_api_params, **params}
        if settings.external_api_auth_param:
            query[settings.external_api_auth_param] = settings.external_api_key.get_secret_value()
        return query

    def _timeouts(self, deadline: Deadline) -> Tuple[float, float]:
        read = deadline.bound(self._settings.fetch_timeout_ms / 1000.0)
        connect = min(self._settings.fetch_connect_timeout_ms / 1000.0, read)
        return connect, read

    def _retire_session(self) -> None:
        # requests.Session is not thread-safe; the abandoned thread may still be using it.
        log.warning("Abandoning in-flight request at deadline; replacing HTTP session")
        self._session = self._session_factory()

    def _send(
        self, session: requests.Session, query: Dict[str, Any], timeout: Tuple[float, float]
    ) -> requests.Response:
        return session.get(
            self._settings.endpoint,
            params=query,
            headers=self._headers(),
            timeout=timeout,
        )

    async def _attempt(self, query: Dict[str, Any], deadline: Deadline) -> Dict[str, Any]:
        deadline.check("fetch")
        self.attempts += 1
        timeout = self._timeouts(deadline)
        session = self._session
        try:
            response = await run_within(
                deadline, "fetch", asyncio.to_thread(self._send, session, query, timeout)
            )
        except (DeadlineExceeded, asyncio.CancelledError):
            self._retire_session()
            raise
        except _TRANSIENT_REQUEST_ERRORS as exc:
            raise FetchTransient(f"request failed: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise FetchRejected(f"request could not be sent: {exc}") from exc
        return parse_response(response)

    async def fetch(self, params: Mapping[str, Any], deadline: Deadline) -> Dict[str, Any]:
        """
        Fetch one record payload.

        Returns the raw JSON object; validation belongs to the transformer.
        ``attempts`` holds the number of HTTP attempts made by this call.
        """
        self.attempts = 0
        query = self._query(params)
        log.info(
            "Calling external API",
            extra={
                "endpoint": self._settings.endpoint,
                "param_keys": sorted(k for k in query if k != self._settings.external_api_auth_param),
            },
        )

        async def attempt() -> Dict[str, Any]:
            return await self._attempt(query, deadline)

        payload = await self.retry_policy.run(attempt, deadline, stage="fetch")
        log.info("External API responded", extra={"attempts": self.attempts})
        return payload

    def close(self) -> None:
        self._session.close()


__all__ = ["FetchClient", "parse_response"]
