import json

import httpx
import pytest

from Sparrow.services import web_search
from Sparrow.services.web_search import WebSearchClient, format_search_results


def test_format_numbers_results_and_appends_summary():
    payload = {
        "results": [
            {"title": "Python 3.13", "content": "Released in October."},
            "garbage",
            {"title": "Changelog"},
        ],
        "answer": "It is out.",
    }
    assert format_search_results(payload) == (
        "Result 1:\nTitle: Python 3.13\nContent: Released in October.\n\n"
        "Result 3:\nTitle: Changelog\nContent: \n\n"
        "Summary: It is out.\n"
    )
    assert format_search_results({}) == ""


def _patch_transport(monkeypatch, handler):
    real_client = httpx.AsyncClient

    def _client(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(web_search.httpx, "AsyncClient", _client)


@pytest.mark.asyncio
async def test_search_posts_query_with_answer(monkeypatch):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"results": [{"title": "T", "content": "C"}]})

    _patch_transport(monkeypatch, handler)
    result = await WebSearchClient(api_key="tv-key").search("latest python")

    assert result == "Result 1:\nTitle: T\nContent: C\n\n"
    assert seen["url"] == web_search.TAVILY_SEARCH_URL
    assert seen["body"] == {"api_key": "tv-key", "query": "latest python", "include_answer": True}


@pytest.mark.asyncio
async def test_search_failure_returns_none(monkeypatch):
    _patch_transport(monkeypatch, lambda request: httpx.Response(502, text="bad gateway"))
    assert await WebSearchClient(api_key="tv-key").search("q") is None


@pytest.mark.asyncio
async def test_search_without_key_is_skipped(monkeypatch):
    monkeypatch.delenv("TAVILY_API_KEY", raising=False)
    assert await WebSearchClient().search("q") is None
