"""
Google Custom Search JSON API client.

Produces ranked {title, snippet, link} hits that feed the search
summarization stages. It never produces a diagnosis itself.
"""
import logging
from typing import Optional

import httpx

from .errors import AdapterFailure
from .prompts import SEARCH_QUERY_TEMPLATE

logger = logging.getLogger(__name__)

SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
MAX_RESULTS = 5


def build_query(category: str, description: str) -> str:
    return SEARCH_QUERY_TEMPLATE.format(category=category, description=description.strip())


class WebSearchClient:
    def __init__(
        self,
        api_key: str,
        engine_id: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.engine_id = engine_id
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def search(self, query: str, num: int = MAX_RESULTS) -> list[dict]:
        """Return up to `num` hits; raise AdapterFailure on error or no hits."""
        try:
            response = await self.client.get(
                SEARCH_URL,
                params={
                    "key": self.api_key,
                    "cx": self.engine_id,
                    "q": query,
                    "num": min(num, MAX_RESULTS),
                },
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise AdapterFailure(f"Search API returned {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise AdapterFailure(f"Search API connection failed: {e}") from e
        except ValueError as e:
            raise AdapterFailure(f"Search API returned invalid JSON: {e}") from e

        results = [
            {
                "title": item.get("title", ""),
                "snippet": item.get("snippet", ""),
                "link": item.get("link", ""),
            }
            for item in (payload.get("items") or [])[:MAX_RESULTS]
            if item.get("snippet") or item.get("title")
        ]
        if not results:
            raise AdapterFailure("Search returned no results")

        logger.info(f"Web search returned {len(results)} results")
        return results

    async def close(self):
        await self.client.aclose()
