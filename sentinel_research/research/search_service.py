"""
Search and page retrieval backing the gateway's tooling.

- SearxngClient: queries a self-hosted SearXNG instance (JSON API)
- PageFetcher: retrieves a page and reduces it to readable text

Both are async context managers that own one httpx.AsyncClient each.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from sentinel_research.config import (
    PAGE_TEXT_CHARS, SCRAPING_TIMEOUT, SEARCH_TIMEOUT, SEARXNG_URL, USER_AGENT,
)
from sentinel_research.utils import extract_content_from_html, is_safe_url

logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    """Represents a single search result."""

    title: str
    url: str
    snippet: str
    engine: Optional[str] = None
    score: Optional[float] = None


@dataclass
class ScrapedContent:
    """Represents scraped and cleaned content from a webpage."""

    url: str
    title: str
    content: str
    word_count: int
    error: Optional[str] = None


class SearxngClient:
    """
    Client for a self-hosted SearXNG search instance.

    Attributes:
        base_url: Base URL of the SearXNG instance
        client: Async HTTP client, created on ``async with`` entry
    """

    def __init__(self, base_url: str = SEARXNG_URL, timeout: float = SEARCH_TIMEOUT):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self.client = httpx.AsyncClient(
            timeout=self.timeout,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.client:
            await self.client.aclose()

    async def search(
        self,
        query: str,
        engines: List[str] = None,
        num_results: int = 8,
        language: str = "en"
    ) -> List[SearchResult]:
        """
        Perform a search query using SearXNG.

        Args:
            query: Search query string
            engines: List of search engines to use (default: ['google', 'bing', 'brave'])
            num_results: Maximum number of results to return
            language: Search language code

        Returns:
            List of SearchResult objects

        Raises:
            httpx.HTTPError: If the request fails
        """
        if engines is None:
            engines = ['google', 'bing', 'brave']
        if not self.client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        params = {
            'q': query,
            'format': 'json',
            'language': language,
            'engines': ','.join(engines)
        }

        try:
            response = await self.client.get(f"{self.base_url}/search", params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error during search: {e.response.status_code}")
            raise
        except httpx.RequestError as e:
            logger.error(f"Request error during search: {e}")
            raise

        results = []
        for item in response.json().get('results', [])[:num_results]:
            url = item.get('url', '')
            if not url:
                continue
            results.append(SearchResult(
                title=item.get('title', '') or '',
                url=url,
                snippet=item.get('content', '') or '',
                engine=item.get('engine'),
                score=item.get('score')
            ))

        logger.info(f"Found {len(results)} results for query: {query}")
        return results


class PageFetcher:
    """Fetches a single web page and extracts its readable text."""

    def __init__(self, timeout: float = SCRAPING_TIMEOUT, max_chars: int = PAGE_TEXT_CHARS):
        self.timeout = timeout
        self.max_chars = max_chars
        self.client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self.client = httpx.AsyncClient(
            timeout=self.timeout,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.client:
            await self.client.aclose()

    async def fetch(self, url: str) -> ScrapedContent:
        """
        Fetch and extract content from a single webpage.

        Never raises for network problems; failures are reported through
        ``ScrapedContent.error``.
        """
        if not is_safe_url(url):
            return ScrapedContent(url=url, title="", content="", word_count=0,
                                  error=f"Blocked non-public URL: {url}")
        if not self.client:
            raise RuntimeError("Fetcher not initialized. Use 'async with' context manager.")

        try:
            response = await self.client.get(url)
            response.raise_for_status()
        except httpx.TimeoutException:
            error_msg = f"Timeout while fetching {url}"
            logger.warning(error_msg)
            return ScrapedContent(url=url, title="", content="", word_count=0, error=error_msg)
        except httpx.HTTPStatusError as e:
            error_msg = f"HTTP {e.response.status_code} error for {url}"
            logger.warning(error_msg)
            return ScrapedContent(url=url, title="", content="", word_count=0, error=error_msg)
        except httpx.HTTPError as e:
            error_msg = f"Error fetching {url}: {e}"
            logger.warning(error_msg)
            return ScrapedContent(url=url, title="", content="", word_count=0, error=error_msg)

        soup = BeautifulSoup(response.text, 'lxml')
        title_tag = soup.find('title')
        title = title_tag.get_text().strip() if title_tag else urlparse(url).netloc
        content = extract_content_from_html(soup, max_chars=self.max_chars)
        if not content:
            return ScrapedContent(url=url, title=title, content="", word_count=0,
                                  error=f"No readable content at {url}")

        return ScrapedContent(url=url, title=title, content=content, word_count=len(content.split()))
