"""Tests for the Tavily search client."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from lucid.config import SearchConfig
from lucid.retry import RetryExhaustedError
from lucid.search import SearchClient, SearchUnavailableError


def _mock_httpx_client():
    """Create a mock httpx.AsyncClient that works as an async context manager."""
    mock_client = AsyncMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


def _response(payload):
    mock_response = MagicMock()
    mock_response.json.return_value = payload
    return mock_response


@pytest.fixture
def waits():
    return []


@pytest.fixture
def client(waits):
    async def fake_sleep(delay):
        waits.append(delay)
    return SearchClient(SearchConfig(api_key="tvly-test"), sleep=fake_sleep)


class TestSearchClient:
    def test_unavailable_without_key(self):
        assert SearchClient(SearchConfig()).available is False

    @pytest.mark.asyncio
    async def test_search_without_key_raises(self):
        with pytest.raises(SearchUnavailableError):
            await SearchClient(SearchConfig()).search("anything")

    @pytest.mark.asyncio
    async def test_search_parses_results(self, client):
        mock_http = _mock_httpx_client()
        mock_http.post = AsyncMock(return_value=_response({
            "answer": "Sleep matters.",
            "results": [
                {"title": "A", "url": "https://a.example", "content": "alpha", "score": "0.9"},
                {"title": "B", "url": "https://b.example", "content": "beta", "score": None},
            ],
        }))

        with patch("lucid.search.httpx.AsyncClient", return_value=mock_http):
            response = await client.search("circadian rhythm", depth="advanced")

        call_kwargs = mock_http.post.call_args
        assert call_kwargs.args[0] == "https://api.tavily.com/search"
        assert call_kwargs.kwargs["headers"]["Authorization"] == "Bearer tvly-test"
        assert call_kwargs.kwargs["json"] == {
            "query": "circadian rhythm",
            "max_results": 5,
            "include_answer": True,
            "search_depth": "advanced",
        }
        assert response.answer == "Sleep matters."
        assert [r.title for r in response.results] == ["A", "B"]
        assert response.results[0].score == 0.9
        assert response.results[1].score == 0.0

    @pytest.mark.asyncio
    async def test_unknown_depth_falls_back_to_basic(self, client):
        mock_http = _mock_httpx_client()
        mock_http.post = AsyncMock(return_value=_response({"results": []}))

        with patch("lucid.search.httpx.AsyncClient", return_value=mock_http):
            await client.search("q", depth="deep")

        assert mock_http.post.call_args.kwargs["json"]["search_depth"] == "basic"

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, client, waits):
        mock_http = _mock_httpx_client()
        mock_http.post = AsyncMock(side_effect=[
            httpx.ConnectError("connection refused"),
            _response({"results": []}),
        ])

        with patch("lucid.search.httpx.AsyncClient", return_value=mock_http):
            response = await client.search("q")

        assert response.results == []
        assert mock_http.post.call_count == 2
        assert waits == [2.0]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, client, waits):
        mock_http = _mock_httpx_client()
        mock_http.post = AsyncMock(side_effect=httpx.ReadTimeout("timed out"))

        with patch("lucid.search.httpx.AsyncClient", return_value=mock_http):
            with pytest.raises(RetryExhaustedError):
                await client.search("q")

        assert mock_http.post.call_count == 3
        assert waits == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_bad_request_not_retried(self, client, waits):
        request = httpx.Request("POST", "https://api.tavily.com/search")
        error = httpx.HTTPStatusError(
            "bad request", request=request, response=httpx.Response(400, request=request),
        )
        mock_response = _response({})
        mock_response.raise_for_status.side_effect = error
        mock_http = _mock_httpx_client()
        mock_http.post = AsyncMock(return_value=mock_response)

        with patch("lucid.search.httpx.AsyncClient", return_value=mock_http):
            with pytest.raises(httpx.HTTPStatusError):
                await client.search("q")

        assert mock_http.post.call_count == 1
        assert waits == []
