"""Readwise Reader API client."""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import Callable
from urllib.parse import urlencode

import httpx

from reader_sync.providers.content_types import DecodeError, Page, parse_page

logger = logging.getLogger(__name__)

READWISE_BASE_URL = "https://readwise.io/api"
LIST_PATH = "/v3/list/"

# Seconds to wait when a 429/5xx response carries no usable Retry-After
DEFAULT_RETRY_AFTER = 60
# Seconds to wait after a connection-level failure
TRANSPORT_RETRY_DELAY = 30


class ReadwiseError(Exception):
    """Base exception for Readwise API errors."""


class ReadwiseHTTPError(ReadwiseError):
    """Non-retryable HTTP status from the API."""

    def __init__(self, status_code: int, message: str | None = None) -> None:
        super().__init__(message or f"Non-retryable HTTP error {status_code} from Readwise API")
        self.status_code = status_code


class ReadwiseAuthError(ReadwiseHTTPError):
    """Authentication failed."""


class ReadwisePageError(ReadwiseError):
    """A successful response whose body could not be decoded into a page."""

    def __init__(self, path: str, message: str, body: str) -> None:
        super().__init__(f"Failed to decode API response at '{path}': {message}")
        self.path = path
        self.body = body


def format_updated_after(ts: datetime) -> str:
    """Format a watermark the way the list API expects it."""
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_params(
    cursor: str | None = None,
    updated_after: datetime | None = None,
) -> dict[str, str]:
    """Query parameters for one list request. Both filters are independent."""
    params: dict[str, str] = {}
    if cursor:
        params["pageCursor"] = cursor
    if updated_after:
        params["updatedAfter"] = format_updated_after(updated_after)
    return params


def build_url(
    cursor: str | None = None,
    updated_after: datetime | None = None,
    base_url: str = READWISE_BASE_URL,
) -> str:
    """Full list URL, mostly useful for logging."""
    url = base_url.rstrip("/") + LIST_PATH
    params = build_params(cursor, updated_after)
    if not params:
        return url
    return f"{url}?{urlencode(params, safe=':')}"


def parse_retry_after(value: str | None) -> int | None:
    """Retry-After in whole seconds, or None if absent/unparseable."""
    if value is None:
        return None
    try:
        seconds = int(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


class ReadwiseClient:
    """Client for Readwise Reader API (v3)."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str = READWISE_BASE_URL,
        timeout: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not token:
            raise ValueError("Readwise API token is required")
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Token {token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ReadwiseClient":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _request_with_retry(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Make an HTTP request, retrying until the API answers for real.

        429 and 5xx wait for Retry-After (default 60s); transport failures
        wait 30s. There is no retry ceiling: the whole run blocks until the
        API recovers.

        Raises:
            ReadwiseAuthError: On 401/403
            ReadwiseHTTPError: On any other non-retryable status
        """
        while True:
            try:
                resp = self._client.request(method, url, params=params)
            except httpx.TransportError as e:
                logger.error(f"Network transport error: {e!r}. Retrying in {TRANSPORT_RETRY_DELAY}s.")
                self._sleep(TRANSPORT_RETRY_DELAY)
                continue

            code = resp.status_code
            if code == 429 or code >= 500:
                wait_time = parse_retry_after(resp.headers.get("Retry-After"))
                if wait_time is None:
                    logger.warning(
                        f"Missing or unparsable Retry-After header for HTTP {code}. "
                        f"Defaulting to {DEFAULT_RETRY_AFTER}s."
                    )
                    wait_time = DEFAULT_RETRY_AFTER
                logger.warning(f"Received HTTP {code}, retrying after {wait_time}s")
                self._sleep(wait_time)
                continue

            if code in (401, 403):
                raise ReadwiseAuthError(code, f"Readwise API rejected the access token (HTTP {code})")
            if not resp.is_success:
                raise ReadwiseHTTPError(code)
            return resp

    def validate_token(self) -> bool:
        """Check if the token is valid. Returns True if valid, raises ReadwiseAuthError otherwise."""
        self._request_with_retry("GET", "/v2/auth/")
        return True

    def fetch_page(
        self,
        cursor: str | None = None,
        updated_after: datetime | None = None,
    ) -> Page:
        """Fetch and decode one page of the document list.

        Args:
            cursor: Continuation cursor from the previous page
            updated_after: Only list documents updated after this instant

        Raises:
            ReadwiseHTTPError: Non-retryable HTTP status
            ReadwisePageError: Body is not valid JSON or not a valid page
        """
        logger.debug(f"GET {build_url(cursor, updated_after, str(self._client.base_url))}")
        resp = self._request_with_retry("GET", LIST_PATH, params=build_params(cursor, updated_after))
        body = resp.text

        try:
            page = parse_page(json.loads(body))
        except json.JSONDecodeError as e:
            logger.error(f"Failed to deserialize API response at '<root>': {e}. Raw body: {body}")
            raise ReadwisePageError("<root>", str(e), body) from e
        except DecodeError as e:
            logger.error(f"Failed to deserialize API response at '{e.path}': {e.message}. Raw body: {body}")
            raise ReadwisePageError(e.path, e.message, body) from e

        return page
