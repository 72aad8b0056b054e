"""
HTTP access to the resource API.

Wraps a shared `httpx.AsyncClient` with single-retry semantics for every
failure and normalizes error bodies into one exception type. Also tracks which
resource kinds have a refresh in flight so duplicate triggers are dropped.
"""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://resource-manager-zeta.vercel.app/api"
DEFAULT_TIMEOUT_SECONDS = 30.0
MAX_RETRIES = 1


class ApiError(RuntimeError):
    """Raised when a resource API call fails after its retry."""

    def __init__(self, code: str, message: str, status_code: int | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


def _first_text(*candidates: Any) -> str | None:
    for candidate in candidates:
        if candidate:
            return candidate if isinstance(candidate, str) else json.dumps(candidate)
    return None


def extract_error_message(response: httpx.Response) -> str:
    fallback = f"Server {response.status_code}: {response.reason_phrase}"
    try:
        body = response.json()
    except ValueError:
        return fallback
    if not isinstance(body, dict):
        return fallback

    supabase = body.get("supabase_error")
    supabase = supabase if isinstance(supabase, dict) else {}
    return (
        _first_text(
            body.get("error"),
            body.get("message"),
            supabase.get("message"),
            supabase.get("hint"),
        )
        or fallback
    )


class FetchCoordinator:
    """Single-retry HTTP caller plus the in-flight guard for refreshes."""

    def __init__(
        self,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        max_retries: int = MAX_RETRIES,
    ):
        self._base_url = (base_url or os.getenv("SCHEDIQ_API_BASE_URL", DEFAULT_API_BASE_URL)).rstrip("/")
        self._headers = headers or self._parse_headers_from_env()
        self._timeout_seconds = timeout_seconds or float(
            os.getenv("SCHEDIQ_HTTP_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS))
        )
        self._transport = transport
        self._max_retries = max_retries

        self._client: httpx.AsyncClient | None = None
        self._in_flight: set[str] = set()

        self._request_count = 0
        self._failure_count = 0
        self._last_error: str | None = None
        self._last_failure_at: float | None = None
        self._last_success_at: float | None = None

    @staticmethod
    def _parse_headers_from_env() -> dict[str, str] | None:
        raw = os.getenv("SCHEDIQ_API_HEADERS")
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return {str(k): str(v) for k, v in parsed.items()}
        except Exception:
            pass
        logger.warning("Ignoring invalid SCHEDIQ_API_HEADERS value")
        return None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def try_acquire(self, kind: str) -> bool:
        """Mark `kind` as being fetched; False if a fetch is already running."""
        if kind in self._in_flight:
            return False
        self._in_flight.add(kind)
        return True

    def release(self, kind: str) -> None:
        self._in_flight.discard(kind)

    def url_for(self, *segments: Any) -> str:
        encoded = [quote(str(segment), safe="") for segment in segments if str(segment)]
        return "/".join([self._base_url, *encoded])

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self._headers,
                timeout=self._timeout_seconds,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def _send(self, method: str, url: str, payload: Any = None) -> Any:
        headers = {"Accept": "application/json"}
        content = None
        if method.upper() != "GET":
            headers["Content-Type"] = "application/json"
            if payload is not None:
                content = json.dumps(payload)

        self._request_count += 1
        try:
            response = await self._get_client().request(method, url, headers=headers, content=content)
        except httpx.HTTPError as exc:
            raise ApiError("network_error", str(exc) or exc.__class__.__name__) from exc

        if not response.is_success:
            raise ApiError("http_error", extract_error_message(response), response.status_code)

        try:
            return response.json()
        except ValueError:
            # Some write endpoints answer with an empty body.
            return None

    def _record_failure(self, exc: ApiError) -> None:
        self._failure_count += 1
        self._last_failure_at = time.time()
        self._last_error = f"{exc.code}: {exc.message}"
        logger.warning("Resource API call failed (%s): %s", exc.code, exc.message)

    def _record_success(self) -> None:
        self._failure_count = 0
        self._last_error = None
        self._last_success_at = time.time()

    async def call(self, method: str, url: str, payload: Any = None) -> Any:
        """Perform one API call, retrying once on any failure."""
        for attempt in range(self._max_retries + 1):
            try:
                result = await self._send(method, url, payload)
                self._record_success()
                return result
            except ApiError as exc:
                self._record_failure(exc)
                if attempt == self._max_retries:
                    raise
        raise ApiError("unavailable", f"{method} {url} was not attempted")

    def get_health(self) -> dict[str, Any]:
        return {
            "baseUrl": self._base_url,
            "hasHeaders": self._headers is not None,
            "timeoutSeconds": self._timeout_seconds,
            "inFlight": sorted(self._in_flight),
            "requestCount": self._request_count,
            "failureCount": self._failure_count,
            "lastError": self._last_error,
            "lastFailureAt": self._last_failure_at,
            "lastSuccessAt": self._last_success_at,
        }

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
