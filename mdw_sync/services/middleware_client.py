"""
Middleware REST client.

This service provides:
- Paginated reads of key blocks, micro blocks and transactions by height scope
- Chain tip lookup via the status endpoint
- Exponential backoff on transport errors, rate limiting and 5xx responses
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp
import structlog

from mdw_sync.core.config import settings, MDW_MAX_PAGE_LIMIT
from mdw_sync.core.exceptions import MiddlewareError


logger = structlog.get_logger(__name__)

RETRYABLE_STATUSES = {429, 500, 502, 503, 504}

# A single key block holds at most a few hundred micro blocks
MAX_MICRO_BLOCK_PAGES = 1000


@dataclass
class ClientStats:
    """Request statistics for the middleware client."""
    total_requests: int = 0
    failed_requests: int = 0
    retried_requests: int = 0
    last_request_time: Optional[datetime] = None
    last_error: Optional[str] = None


class MiddlewareClient:
    """Async client for the middleware v3 REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        page_limit: Optional[int] = None,
        timeout: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self.logger = logger.bind(service="middleware_client")
        self.base_url = (base_url or settings.middleware_url).rstrip("/")
        self.page_limit = min(page_limit or settings.mdw_page_limit, MDW_MAX_PAGE_LIMIT)
        self.timeout = timeout or settings.mdw_request_timeout
        self.max_retries = settings.mdw_max_retries if max_retries is None else max_retries
        self.retry_delay = settings.mdw_retry_delay if retry_delay is None else retry_delay
        self.stats = ClientStats()
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Accept": "application/json"},
            )
        return self._session

    async def close(self):
        """Close the underlying HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith("http://") or path_or_url.startswith("https://"):
            return path_or_url
        return f"{self.base_url}{path_or_url}"

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """
        GET a JSON document, retrying transient failures.

        Returns None on 404.

        Raises:
            MiddlewareError: When the request keeps failing after all retries
        """
        url = self._url(path)
        last_error = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                self.stats.retried_requests += 1
                await asyncio.sleep(self.retry_delay * (2 ** (attempt - 1)))

            self.stats.total_requests += 1
            self.stats.last_request_time = datetime.utcnow()
            try:
                session = await self._get_session()
                async with session.get(url, params=params) as response:
                    if response.status == 404:
                        return None
                    if response.status in RETRYABLE_STATUSES:
                        last_error = f"HTTP {response.status}"
                        self.logger.warning(
                            "Retryable middleware response",
                            url=url,
                            status=response.status,
                            attempt=attempt + 1,
                        )
                        continue
                    if response.status >= 400:
                        body = await response.text()
                        raise MiddlewareError(
                            f"Middleware request failed with HTTP {response.status}",
                            {"url": url, "status": response.status, "body": body[:500]},
                        )
                    return await response.json(content_type=None)

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = str(e) or type(e).__name__
                self.logger.warning(
                    "Middleware request error",
                    url=url,
                    error=last_error,
                    attempt=attempt + 1,
                )

        self.stats.failed_requests += 1
        self.stats.last_error = last_error
        raise MiddlewareError(
            f"Middleware request failed after {self.max_retries + 1} attempts",
            {"url": url, "error": last_error},
        )

    async def iter_pages(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        max_pages: Optional[int] = None,
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """Yield the ``data`` list of each page, following ``next`` links."""
        url: Optional[str] = path
        page_params = params
        pages = 0

        while url:
            pages += 1
            if max_pages is not None and pages > max_pages:
                self.logger.warning("Pagination stopped at page guard", path=path, max_pages=max_pages)
                break

            response = await self.get_json(url, page_params) or {}
            yield response.get("data") or []

            # next is a relative path that already carries the query string
            next_path = response.get("next")
            url = next_path if next_path else None
            page_params = None

    async def get_status(self) -> Dict[str, Any]:
        status = await self.get_json("/v3/status")
        if status is None:
            raise MiddlewareError("Middleware status unavailable")
        return status

    async def get_tip_height(self) -> int:
        """Current chain tip height as seen by the middleware."""
        status = await self.get_status()
        height = status.get("mdw_height")
        if height is None:
            height = status.get("top_block_height")
        if height is None:
            raise MiddlewareError("Middleware status has no height", {"status": status})
        return int(height)

    async def get_key_blocks(self, start_height: int, end_height: int) -> List[Dict[str, Any]]:
        """All key blocks with height in [start_height, end_height]."""
        limit = min(end_height - start_height + 1, self.page_limit)
        params = {"scope": f"gen:{start_height}-{end_height}", "limit": max(limit, 1)}
        blocks: List[Dict[str, Any]] = []
        async for page in self.iter_pages("/v3/key-blocks", params):
            blocks.extend(page)
        return blocks

    async def get_key_block(self, hash_or_height) -> Optional[Dict[str, Any]]:
        return await self.get_json(f"/v3/key-blocks/{hash_or_height}")

    async def get_micro_blocks(self, key_block_hash: str) -> List[Dict[str, Any]]:
        """All micro blocks of one key block."""
        micro_blocks: List[Dict[str, Any]] = []
        async for page in self.iter_pages(
            f"/v3/key-blocks/{key_block_hash}/micro-blocks",
            {"limit": MDW_MAX_PAGE_LIMIT},
            max_pages=MAX_MICRO_BLOCK_PAGES,
        ):
            micro_blocks.extend(page)
        return micro_blocks

    async def get_micro_block(self, micro_block_hash: str) -> Optional[Dict[str, Any]]:
        return await self.get_json(f"/v3/micro-blocks/{micro_block_hash}")

    def iter_transactions(
        self,
        start_height: int,
        end_height: int,
        backward: bool = False,
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """Pages of transactions in the generation scope."""
        params = {
            "direction": "backward" if backward else "forward",
            "limit": self.page_limit,
            "scope": f"gen:{start_height}-{end_height}",
        }
        return self.iter_pages("/v3/transactions", params)


# Global client instance
_client: Optional[MiddlewareClient] = None


def get_middleware_client() -> MiddlewareClient:
    """Get or create the global middleware client instance."""
    global _client
    if _client is None:
        _client = MiddlewareClient()
    return _client


async def close_middleware_client():
    """Close the global middleware client instance."""
    global _client
    if _client:
        await _client.close()
        _client = None
