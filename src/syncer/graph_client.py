"""
Graph API client with transient-failure retry and cursor pagination.

Every list endpoint on the upstream API answers with the same envelope::

    {"data": [...], "paging": {"next": "<absolute url>"}, "error": {...}}

``GraphClient.get_json`` performs one logical request (retrying HTTP 5xx,
HTTP 429 and network failures with capped exponential backoff), and
``GraphClient.paginate`` follows ``paging.next`` links until the last page,
applying the retry policy to each page independently.

Non-transient failures (other 4xx, or an ``error`` envelope in an otherwise
successful response) raise ``PermanentAPIError`` immediately.  Once the
retry budget is spent the last transient error is raised unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from syncer.errors import PermanentAPIError, SyncError, TransientTransportError

logger = logging.getLogger("syncer.graph_client")

DEFAULT_BASE_URL = "https://graph.facebook.com"
DEFAULT_API_VERSION = "v19.0"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_PAGE_SIZE = 50


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry budget and backoff bounds (seconds) for a single request."""

    retries: int = 4
    min_delay: float = 0.4
    max_delay: float = 4.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        return min(self.max_delay, self.min_delay * 2 ** (attempt - 1))


def _is_transient_status(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


def _envelope_message(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if not error:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or "Meta API error")
    return str(error)


class GraphClient:
    """Async client for the Graph API.

    Args:
        base_url: API origin, without version.
        api_version: Version path segment (``v19.0``).
        timeout: Per-request timeout in seconds.
        retry: Retry policy applied to every request.
        page_size: Default ``limit`` for list endpoints.
        transport: Optional ``httpx`` transport (tests use ``MockTransport``).
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        retry: Optional[RetryPolicy] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.page_size = max(1, int(page_size))
        self._retry = retry or RetryPolicy()
        self._http = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "GraphClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.aclose()

    def url_for(self, path: str) -> str:
        """Build a versioned absolute URL for ``path`` (``/123/conversations``)."""
        return f"{self.base_url}/{self.api_version}/{path.lstrip('/')}"

    # ------------------------------------------------------------------
    # Single request with retry
    # ------------------------------------------------------------------

    async def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """GET ``url`` and return the decoded JSON object.

        Raises:
            TransientTransportError: Retry budget exhausted on 5xx/429 or
                network failures.
            PermanentAPIError: 4xx response or error envelope.
        """
        endpoint = httpx.URL(url).path
        attempts = self._retry.retries + 1
        last_error: Optional[SyncError] = None

        for attempt in range(attempts):
            if attempt > 0:
                delay = self._retry.delay_for(attempt)
                logger.warning(
                    "Graph request to %s failed (%s); retrying in %.2fs (attempt %d/%d)",
                    endpoint,
                    last_error,
                    delay,
                    attempt + 1,
                    attempts,
                )
                await asyncio.sleep(delay)

            try:
                response = await self._http.get(url, params=params)
            except httpx.TransportError as exc:
                last_error = TransientTransportError(str(exc) or type(exc).__name__)
                last_error.__cause__ = exc
                continue

            if _is_transient_status(response.status_code):
                message = _envelope_message(self._safe_json(response))
                last_error = TransientTransportError(
                    message or f"Transient error: {response.status_code}",
                    status_code=response.status_code,
                )
                continue

            return self._decode(response)

        logger.error(
            "Graph request to %s failed after %d attempts: %s",
            endpoint,
            attempts,
            last_error,
        )
        assert last_error is not None
        raise last_error

    @staticmethod
    def _safe_json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    def _decode(self, response: httpx.Response) -> Dict[str, Any]:
        payload = self._safe_json(response)
        if response.status_code >= 400:
            raise PermanentAPIError(
                _envelope_message(payload)
                or f"Graph API error: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if not isinstance(payload, dict):
            raise PermanentAPIError(
                "Graph API returned a non-object JSON body",
                status_code=response.status_code,
            )
        message = _envelope_message(payload)
        if message is not None:
            raise PermanentAPIError(message, status_code=response.status_code)
        return payload

    # ------------------------------------------------------------------
    # Pagination
    # ------------------------------------------------------------------

    async def paginate(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch a list endpoint and every following page, in page order."""
        first = await self.get_json(url, params=params)
        return await self.collect_pages(first)

    async def collect_pages(self, page: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Concatenate ``page["data"]`` with the data of every ``paging.next`` page.

        Also used for collections embedded in a node response (field
        expansion), which carry their own ``data``/``paging`` pair.
        """
        results: List[Dict[str, Any]] = []
        pages = 0
        while True:
            data = page.get("data") or []
            if not isinstance(data, list):
                raise PermanentAPIError("Graph API list response has non-list 'data'")
            results.extend(data)
            pages += 1

            next_url = (page.get("paging") or {}).get("next")
            if not next_url:
                break
            page = await self.get_json(next_url)

        logger.debug("Collected %d items across %d page(s)", len(results), pages)
        return results
