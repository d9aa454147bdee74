"""Rate-limited HTTP access to the terminology server and download endpoints.

All requests of a pipeline run go through one ``TerminologyClient`` and
therefore one ``RateLimiter``; callers that exceed the ceiling are suspended
until a slot frees up rather than failing.

Paginated member searches follow the server's ``searchAfter`` cursor
sequentially until the reported total is reached. Failures while paging are
logged and end the search early with whatever was collected.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

import httpx

from .config import (
    MAX_REQUESTS_PER_PERIOD,
    MEMBERS_PAGE_LIMIT,
    RATE_LIMIT_PERIOD_S,
    REQUEST_HEADERS,
    REQUEST_TIMEOUT_S,
    SNOWSTORM_BASE_URL,
)
from .models import MembersPage

logger = logging.getLogger(__name__)


class RateLimiter:
    """Sliding-window limiter: at most ``max_requests`` per ``period_s`` seconds."""

    def __init__(
        self,
        max_requests: int = MAX_REQUESTS_PER_PERIOD,
        period_s: float = RATE_LIMIT_PERIOD_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.period_s = period_s
        self._clock = clock
        self._timestamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is free, then claim it."""
        async with self._lock:
            while True:
                now = self._clock()
                while self._timestamps and now - self._timestamps[0] >= self.period_s:
                    self._timestamps.popleft()
                if len(self._timestamps) < self.max_requests:
                    self._timestamps.append(now)
                    return
                await asyncio.sleep(self.period_s - (now - self._timestamps[0]))


@dataclass
class MemberSearchResult:
    """Accumulated items of a paginated members search."""

    items: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0
    complete: bool = False


class TerminologyClient:
    """Async client for the terminology browser and document downloads."""

    def __init__(
        self,
        base_url: str = SNOWSTORM_BASE_URL,
        limiter: Optional[RateLimiter] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
        page_limit: int = MEMBERS_PAGE_LIMIT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.limiter = limiter or RateLimiter()
        self.headers = dict(headers or REQUEST_HEADERS)
        self.page_limit = page_limit
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=REQUEST_TIMEOUT_S, follow_redirects=True
        )

    async def __aenter__(self) -> "TerminologyClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def get(self, url: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """Issue a GET once the rate limiter grants a slot."""
        await self.limiter.acquire()
        return await self._client.get(url, params=params, headers=self.headers)

    async def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a JSON document.

        Raises:
            httpx.HTTPError: On transport errors and non-success statuses
            ValueError: If the body is not valid JSON
        """
        response = await self.get(url, params=params)
        response.raise_for_status()
        return response.json()

    async def fetch_members_page(
        self, params: Dict[str, Any], search_after: Optional[str] = None
    ) -> Optional[MembersPage]:
        """Fetch one page of ``/members``; None on any failure."""
        query = {**params, "limit": self.page_limit}
        if search_after is not None:
            query["searchAfter"] = search_after

        try:
            response = await self.get(f"{self.base_url}/members", params=query)
        except httpx.HTTPError as e:
            logger.error(f"Members request failed: {e}")
            return None

        if not response.is_success:
            logger.error(
                f"Looks like there was a problem. Status Code: {response.status_code}",
                extra={"status_code": response.status_code},
            )
            return None

        try:
            return MembersPage.model_validate(response.json())
        except ValueError as e:
            logger.error(f"Unexpected members payload: {e}")
            return None

    async def fetch_all_members(self, params: Dict[str, Any]) -> MemberSearchResult:
        """Collect every page of a members search.

        Each request carries the previous page's cursor, so pages are fetched
        strictly one after another.

        Args:
            params: Filter parameters (referenceSet, or module/lang/type ...)

        Returns:
            The accumulated items; ``complete`` is False if paging stopped early
        """
        result = MemberSearchResult()
        search_after: Optional[str] = None
        page_number = 0

        while True:
            page = await self.fetch_members_page(params, search_after)
            if page is None:
                logger.warning(
                    f"Stopped paging after {len(result.items)}/{result.total} items",
                    extra={"page": page_number, "total": result.total},
                )
                return result

            page_number += 1
            result.total = page.total
            result.items.extend(page.items)
            logger.debug(
                f"Fetched page {page_number}: {len(result.items)}/{page.total} items",
                extra={"page": page_number, "total": page.total},
            )

            if len(result.items) >= page.total:
                result.complete = True
                return result
            if not page.items or page.search_after is None:
                logger.warning(
                    f"Server returned no cursor after {len(result.items)}/{page.total} items"
                )
                return result
            search_after = page.search_after
