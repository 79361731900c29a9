"""
InChurch Directory API Client

Async httpx client for the member directory used by the daily polling sync.
Retries 429s and transport errors with exponential backoff (tenacity), keeps
a token budget of requests per minute, and caches GET responses for a short
TTL.

Usage:
    async with InChurchClient(api_key="...", api_secret="...") as client:
        page = await client.get_members(page=1, limit=100)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .errors import InChurchError
from .rate_limiter import RateLimiter

logger = logging.getLogger("pastoral.common.inchurch_client")

DEFAULT_BASE_URL = "https://api.inchurch.com.br"


def _is_transient(error: BaseException) -> bool:
    """Rate limiting and network failures are worth another attempt."""
    if not isinstance(error, InChurchError):
        return False
    return error.status == 429 or error.code == "NETWORK_ERROR"


def _error_from_response(response: httpx.Response) -> InChurchError:
    message = ""
    try:
        body = response.json()
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            message = error.get("message", "")
        elif isinstance(error, str):
            message = error
    except ValueError:
        pass
    return InChurchError.from_status(response.status_code, message)


@dataclass
class MembersPage:
    """One page of directory members."""
    members: List[Dict[str, Any]]
    page: int
    limit: int
    total: int = 0
    has_more: bool = False


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


@dataclass
class _CacheEntry:
    expires_at: float
    value: Any = field(repr=False)


class InChurchClient:
    """Async client for the InChurch member directory."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        max_retries: int = 3,
        requests_per_minute: int = 200,
        cache_ttl: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """
        Args:
            api_key: Organization API key (X-API-Key)
            api_secret: Organization API secret (X-API-Secret)
            base_url: Directory API base URL
            timeout: Per-request timeout in seconds
            max_retries: Retries after the first attempt on 429 or transport errors
            requests_per_minute: Request budget enforced client-side
            cache_ttl: Seconds a GET response stays cached (0 disables caching)
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.requests_per_minute = requests_per_minute
        self.cache_ttl = cache_ttl
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._limiter = RateLimiter.per_minute(requests_per_minute, clock=self._clock, sleep=self._sleep)
        self._cache: Dict[str, _CacheEntry] = {}
        self._cache_stats = CacheStats()
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Content-Type": "application/json",
                "X-API-Key": api_key,
                "X-API-Secret": api_secret,
            },
        )

    async def __aenter__(self) -> "InChurchClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception(_is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )

    async def _send(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """One request with retries; 429s and transport errors are retried with exponential backoff."""
        return await self._retrying()(self._attempt, method, path, params)

    async def _attempt(self, method: str, path: str, params: Optional[Dict[str, Any]]) -> httpx.Response:
        await self._limiter.acquire()
        try:
            response = await self._http.request(method, path, params=params)
        except httpx.TransportError as e:
            raise InChurchError(f"InChurch request failed: {e}", code="NETWORK_ERROR") from e
        if response.status_code == 429:
            raise _error_from_response(response)
        return response

    async def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        cache_key = None
        if method == "GET" and self.cache_ttl > 0:
            cache_key = f"{path}?{sorted((params or {}).items())}"
            cached = self._cache_get(cache_key)
            if cached is not None:
                return cached

        response = await self._send(method, path, params=params)

        if response.status_code >= 400:
            raise _error_from_response(response)

        try:
            data = response.json()
        except ValueError as e:
            raise InChurchError("InChurch returned a non-JSON body", code="INVALID_RESPONSE") from e

        if cache_key is not None:
            self._cache_put(cache_key, data)
        return data

    def _cache_get(self, key: str) -> Optional[Any]:
        entry = self._cache.get(key)
        if entry is not None and entry.expires_at > self._clock():
            self._cache_stats.hits += 1
            return entry.value
        if entry is not None:
            del self._cache[key]
        self._cache_stats.misses += 1
        return None

    def _cache_put(self, key: str, value: Any) -> None:
        self._cache[key] = _CacheEntry(expires_at=self._clock() + self.cache_ttl, value=value)

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def get_members(
        self,
        page: int = 1,
        limit: int = 50,
        filters: Optional[Dict[str, Any]] = None,
    ) -> MembersPage:
        params = {"page": page, "limit": limit}
        params.update(filters or {})
        body = await self._request("GET", "/members", params=params)
        pagination = body.get("pagination") or {}
        members = body.get("data") or []
        return MembersPage(
            members=list(members),
            page=pagination.get("page", page),
            limit=pagination.get("limit", limit),
            total=pagination.get("total", len(members)),
            has_more=bool(pagination.get("hasMore", False)),
        )

    async def get_member(self, member_id: str) -> Optional[Dict[str, Any]]:
        try:
            body = await self._request("GET", f"/members/{member_id}")
        except InChurchError as e:
            if e.status == 404:
                return None
            raise
        return body.get("data")

    async def check_health(self) -> Tuple[bool, Optional[str]]:
        """Returns (healthy, error message)."""
        try:
            response = await self._send("GET", "/health")
        except InChurchError as e:
            return False, str(e)
        if response.status_code >= 400:
            return False, f"HTTP {response.status_code}"
        return True, None

    def get_rate_limit_info(self) -> Dict[str, Any]:
        return {
            "requestsRemaining": int(self._limiter.available),
            "requestsPerMinute": self.requests_per_minute,
            "secondsUntilAvailable": round(self._limiter.time_until_available(), 3),
        }

    def get_cache_stats(self) -> Dict[str, Any]:
        now = self._clock()
        live = sum(1 for e in self._cache.values() if e.expires_at > now)
        self._cache_stats.size = live
        return {
            "hits": self._cache_stats.hits,
            "misses": self._cache_stats.misses,
            "size": live,
            "hitRate": round(self._cache_stats.hit_rate, 3),
        }
