import logging
from typing import Optional, Dict, Any, List

import httpx

from shelvy.cache import cache_manager
from shelvy.config import settings
from shelvy.services.http_client import get_http_client

logger = logging.getLogger(__name__)

DEFAULT_LIST_NAME = "combined-print-and-e-book-fiction"
MAX_LIST_BOOKS = 15


class NYTAPIError(Exception):
    """Raised when the NYT Books API is unconfigured or fails"""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


def format_book(book: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "key": book.get("primary_isbn13") or book.get("primary_isbn10") or book.get("title"),
        "title": book.get("title"),
        "author": book.get("author"),
        "coverUrl": book.get("book_image") or None,
        "amazonUrl": book.get("amazon_product_url"),
        "description": book.get("description"),
        "rank": book.get("rank"),
    }


def find_list(lists: List[Dict[str, Any]], list_name: str) -> Optional[Dict[str, Any]]:
    """Match a list by slug, then by name containment, then fall back to any fiction list"""
    wanted = list_name.lower()
    spaced = wanted.replace("-", " ")
    for candidate in lists:
        name = (candidate.get("list_name") or "").lower()
        if "-".join(name.split()) == wanted or spaced in name:
            return candidate
    for candidate in lists:
        if "fiction" in (candidate.get("list_name") or "").lower():
            logger.info("Using default fiction list")
            return candidate
    return None


class NYTBooksService:
    """Service for the NYT Books bestseller lists"""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or settings.nyt_books_api_key
        self.base_url = "https://api.nytimes.com/svc/books/v3"

    async def overview(self) -> List[Dict[str, Any]]:
        """All current lists; cached for an hour by default"""
        if not self.api_key:
            logger.error("NYT_BOOKS_API_KEY not configured")
            raise NYTAPIError("NYT API not configured", 500)

        cache_key = "nyt:overview"
        cached = cache_manager.get(cache_key)
        if cached is not None:
            return cached

        try:
            client = await get_http_client()
            response = await client.get(f"{self.base_url}/lists/overview.json", params={"api-key": self.api_key})
        except httpx.HTTPError as e:
            logger.error(f"NYT API request failed: {e}")
            raise NYTAPIError(f"NYT API request failed: {e}", 502) from e

        if response.status_code != 200:
            logger.error(f"NYT API error: {response.status_code} {response.text[:200]}")
            raise NYTAPIError(f"NYT API error: {response.status_code}", response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"Invalid JSON from NYT API: {e}")
            raise NYTAPIError("Invalid JSON from NYT API", 502) from e
        lists = ((data.get("results") or {}).get("lists")) or []
        cache_manager.set(cache_key, lists, settings.nyt_cache_ttl)
        return lists

    async def bestsellers(self, list_name: Optional[str] = None) -> Dict[str, Any]:
        """Top books of one list. Raises LookupError when no list fits."""
        list_name = list_name or DEFAULT_LIST_NAME
        logger.info(f"Fetching NYT bestsellers list: {list_name}")
        chosen = find_list(await self.overview(), list_name)
        if chosen is None:
            raise LookupError("List not found")
        books = chosen.get("books") or []
        return {
            "success": True,
            "books": [format_book(b) for b in books[:MAX_LIST_BOOKS]],
            "listName": chosen.get("list_name"),
        }
