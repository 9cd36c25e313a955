import logging
import os
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

TAVILY_SEARCH_URL = "https://api.tavily.com/search"


# Render Tavily results as the numbered plain-text block shown to the model
def format_search_results(payload: dict) -> str:
    formatted = ""
    results = payload.get("results")
    if isinstance(results, list):
        for index, result in enumerate(results):
            if not isinstance(result, dict):
                continue
            formatted += f"Result {index + 1}:\n"
            formatted += f"Title: {result.get('title', '')}\n"
            formatted += f"Content: {result.get('content', '')}\n\n"

    answer = payload.get("answer")
    if answer:
        formatted += f"Summary: {answer}\n"
    return formatted


class WebSearchClient:
    def __init__(self, api_key: Optional[str] = None, timeout: float = 20.0):
        self._api_key = api_key if api_key is not None else os.getenv("TAVILY_API_KEY")
        self._timeout = timeout

    # Returns formatted results, or None when search is unavailable. Never raises.
    async def search(self, query: str) -> Optional[str]:
        if not self._api_key:
            logger.warning("web_search.skipped: TAVILY_API_KEY not set")
            return None
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    TAVILY_SEARCH_URL,
                    json={"api_key": self._api_key, "query": query, "include_answer": True},
                )
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError):
            logger.exception("web_search.error")
            return None

        formatted = format_search_results(payload if isinstance(payload, dict) else {})
        return formatted or None
