"""
Stats provider client over the cursor-pagination contract.

Every list endpoint accepts ``per_page`` (capped at 100) and an opaque
``cursor`` and responds with ``{"data": [...], "meta": {"next_cursor": ...}}``.
A missing or null ``next_cursor`` marks the end of the stream.

Transient failures (5xx, 429, timeouts, transport errors) are retried with
exponential backoff; anything else is raised immediately.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from statsync.core.exceptions import ProviderError, TransientProviderError
from statsync.core.logging import get_logger

logger = get_logger(__name__)

MAX_PER_PAGE = 100

# Logical resource name -> provider path
RESOURCES = {
    "teams": "teams",
    "players": "players",
    "games": "games",
    "stats": "stats",
    "team_stats": "team_stats",
    "team_season_stats": "team_season_stats",
    "season_stats": "season_stats",
    "advanced_rushing": "advanced_stats/rushing",
    "advanced_passing": "advanced_stats/passing",
    "advanced_receiving": "advanced_stats/receiving",
    "plays": "plays",
    "odds": "odds",
    "player_props": "odds/player_props",
    "injuries": "player_injuries",
}


@dataclass
class Page:
    """One page of provider results."""
    items: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None


class ProviderClient:
    """
    Thin, rate-respecting adapter over the provider's list endpoints.

    Usage:
        async with ProviderClient(api_key="...") as client:
            page = await client.list_games(season=2024, week=3)
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.balldontlie.io/nfl/v1",
        per_page: int = MAX_PER_PAGE,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_wait_min: float = 2.0,
        retry_wait_max: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            api_key: Provider API key, sent as the Authorization header
            base_url: Provider base URL
            per_page: Page size, clamped to 1..100
            timeout: Per-request timeout in seconds
            max_retries: Total attempts for transient failures
            retry_wait_min: Minimum backoff between attempts (seconds)
            retry_wait_max: Maximum backoff between attempts (seconds)
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.per_page = clamp_per_page(per_page)
        self.timeout = timeout
        self.max_retries = max(int(max_retries), 1)
        self._backoff = wait_exponential(multiplier=1, min=retry_wait_min, max=retry_wait_max)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.requests_made = 0

    async def __aenter__(self) -> "ProviderClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
                headers=self._get_headers(),
                transport=self._transport,
            )
        return self._client

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "X-Application": "statsync"}
        if self.api_key:
            headers["Authorization"] = self.api_key
        return headers

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _wait(self, retry_state) -> float:
        # Honour Retry-After on 429 as a floor for the exponential backoff
        delay = self._backoff(retry_state)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after:
            delay = max(delay, float(retry_after))
        return delay

    async def _get(self, path: str, params: List[Tuple[str, str]]) -> Any:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=self._wait,
            retry=retry_if_exception_type(TransientProviderError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        f"Retrying provider request {path} "
                        f"(attempt {attempt.retry_state.attempt_number}/{self.max_retries})"
                    )
                return await self._request(path, params)

    async def _request(self, path: str, params: List[Tuple[str, str]]) -> Any:
        client = await self._get_client()
        self.requests_made += 1
        try:
            response = await client.get(f"/{path}", params=params)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Timeout calling {path}: {e}", resource=path) from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"Transport error calling {path}: {e}", resource=path) from e

        if response.status_code == 429:
            raise TransientProviderError(
                f"Rate limited on {path}",
                status_code=429,
                resource=path,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if response.status_code >= 500:
            raise TransientProviderError(
                f"Provider error {response.status_code} on {path}",
                status_code=response.status_code,
                resource=path,
            )
        if response.status_code >= 400:
            raise ProviderError(
                f"Provider rejected {path}: {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
                resource=path,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"Invalid JSON from {path}", status_code=response.status_code, resource=path) from e

    async def list_page(
        self,
        resource: str,
        params: Optional[Mapping[str, Any]] = None,
        cursor: Optional[str] = None,
        per_page: Optional[int] = None,
    ) -> Page:
        """
        Fetch one page of a list resource.

        Args:
            resource: Logical resource name (see RESOURCES) or a raw path
            params: Resource filters; list values are sent as ``name[]``
            cursor: Opaque cursor from the previous page, or None to start
            per_page: Override page size for this call

        Returns:
            Page with items and the next cursor (None at end of stream)
        """
        path = RESOURCES.get(resource, resource)
        query = build_query(params, cursor, per_page or self.per_page)
        payload = await self._get(path, query)
        return parse_page(payload)

    async def list_teams(self, cursor: Optional[str] = None, **filters) -> Page:
        return await self.list_page("teams", filters, cursor)

    async def list_players(self, cursor: Optional[str] = None, **filters) -> Page:
        return await self.list_page("players", filters, cursor)

    async def list_games(self, cursor: Optional[str] = None, **filters) -> Page:
        return await self.list_page("games", filters, cursor)

    async def list_stats(self, cursor: Optional[str] = None, **filters) -> Page:
        return await self.list_page("stats", filters, cursor)

    async def list_team_stats(self, cursor: Optional[str] = None, **filters) -> Page:
        return await self.list_page("team_stats", filters, cursor)

    async def list_team_season_stats(self, cursor: Optional[str] = None, **filters) -> Page:
        return await self.list_page("team_season_stats", filters, cursor)

    async def list_season_stats(self, cursor: Optional[str] = None, **filters) -> Page:
        return await self.list_page("season_stats", filters, cursor)

    async def list_advanced(self, stat_type: str, cursor: Optional[str] = None, **filters) -> Page:
        """Advanced rushing/passing/receiving stats."""
        resource = f"advanced_{stat_type}"
        if resource not in RESOURCES:
            raise ValueError(f"Unsupported advanced stat type: {stat_type}")
        return await self.list_page(resource, filters, cursor)

    async def list_plays(self, cursor: Optional[str] = None, **filters) -> Page:
        return await self.list_page("plays", filters, cursor)

    async def list_odds(self, cursor: Optional[str] = None, **filters) -> Page:
        return await self.list_page("odds", filters, cursor)

    async def list_player_props(self, cursor: Optional[str] = None, **filters) -> Page:
        return await self.list_page("player_props", filters, cursor)

    async def list_injuries(self, cursor: Optional[str] = None, **filters) -> Page:
        return await self.list_page("injuries", filters, cursor)


def clamp_per_page(per_page: Any) -> int:
    try:
        value = int(per_page)
    except (TypeError, ValueError):
        return MAX_PER_PAGE
    return max(1, min(value, MAX_PER_PAGE))


def build_query(
    params: Optional[Mapping[str, Any]],
    cursor: Optional[str],
    per_page: int,
) -> List[Tuple[str, str]]:
    """Encode filters as query pairs; lists become repeated ``name[]``."""
    query: List[Tuple[str, str]] = [("per_page", str(clamp_per_page(per_page)))]
    for name, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set)):
            key = name if name.endswith("[]") else f"{name}[]"
            query.extend((key, _encode(v)) for v in value)
        else:
            query.append((name, _encode(value)))
    if cursor is not None and cursor != "":
        query.append(("cursor", str(cursor)))
    return query


def parse_page(payload: Any) -> Page:
    """Normalize a provider response into a Page."""
    if isinstance(payload, list):
        return Page(items=[p for p in payload if isinstance(p, dict)], next_cursor=None)
    if not isinstance(payload, dict):
        raise ProviderError(f"Unexpected provider payload type: {type(payload).__name__}")

    data = payload.get("data") or []
    if not isinstance(data, list):
        raise ProviderError("Provider payload 'data' is not a list")
    meta = payload.get("meta") or {}
    next_cursor = meta.get("next_cursor", meta.get("nextCursor"))
    return Page(
        items=[item for item in data if isinstance(item, dict)],
        next_cursor=None if next_cursor in (None, "") else str(next_cursor),
    )


def _encode(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None
