"""Tavily web search client with bounded retry."""

import logging
from dataclasses import dataclass, field

import httpx

from .config import SearchConfig
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger("lucid.search")

SEARCH_DEPTHS = ("basic", "advanced")


class SearchUnavailableError(RuntimeError):
    """Web search is not configured (no API key)."""


@dataclass
class SearchResult:
    title: str
    url: str
    content: str
    score: float = 0.0


@dataclass
class SearchResponse:
    query: str
    results: list[SearchResult] = field(default_factory=list)
    answer: str | None = None


def _parse_score(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class SearchClient:
    """Async client for the Tavily search endpoint."""

    def __init__(self, config: SearchConfig, sleep=None):
        self.config = config
        self.policy = RetryPolicy(
            max_retries=config.max_retries,
            backoff_base=config.backoff_base,
            backoff_multiplier=config.backoff_multiplier,
        )
        self._sleep = sleep
        if not config.api_key:
            logger.warning("Tavily API key not configured, web search disabled")

    @property
    def available(self) -> bool:
        return bool(self.config.api_key)

    async def _execute(
        self, query: str, max_results: int, include_answer: bool, depth: str,
    ) -> dict:
        # The overall deadline is enforced by call_with_retry; the client
        # timeout is a backstop for a stalled connection.
        async with httpx.AsyncClient(timeout=self.config.timeout_for(depth) + 5.0) as client:
            response = await client.post(
                self.config.base_url,
                headers={
                    "Authorization": f"Bearer {self.config.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "query": query,
                    "max_results": max_results,
                    "include_answer": include_answer,
                    "search_depth": depth,
                },
            )
            response.raise_for_status()
            return response.json()

    async def search(
        self,
        query: str,
        *,
        max_results: int | None = None,
        include_answer: bool = True,
        depth: str = "basic",
    ) -> SearchResponse:
        """Search the web.

        Raises:
            SearchUnavailableError: no API key configured
            RetryExhaustedError: transient failures on every attempt
            httpx.HTTPStatusError: permanent HTTP failure (e.g. 400, 401)
        """
        if not self.available:
            raise SearchUnavailableError("Web search is not enabled, set TAVILY_API_KEY")
        if depth not in SEARCH_DEPTHS:
            depth = "basic"
        max_results = max_results or self.config.max_results

        logger.info("Web search (%s): %s", depth, query)
        kwargs = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        data = await call_with_retry(
            lambda: self._execute(query, max_results, include_answer, depth),
            timeout=self.config.timeout_for(depth),
            policy=self.policy,
            name="Web search",
            **kwargs,
        )

        results = [
            SearchResult(
                title=item.get("title", ""),
                url=item.get("url", ""),
                content=item.get("content", ""),
                score=_parse_score(item.get("score")),
            )
            for item in data.get("results") or []
        ]
        logger.info(
            "Web search returned %d result(s)%s",
            len(results), " with answer" if data.get("answer") else "",
        )
        return SearchResponse(query=query, results=results, answer=data.get("answer"))
