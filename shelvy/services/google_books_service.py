import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

import httpx

from shelvy.config import settings
from shelvy.services.http_client import get_http_client
from shelvy.utils.covers import normalize_cover_url
from shelvy.utils.validators import TextValidator

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 2000
MAX_CATEGORIES = 5


@dataclass
class BookMetadata:
    """Metadata found for a title/author pair by any upstream source"""
    page_count: Optional[int] = None
    isbn: Optional[str] = None
    description: Optional[str] = None
    categories: Optional[List[str]] = None
    cover_url: Optional[str] = None

    def merged_with(self, other: Optional["BookMetadata"]) -> "BookMetadata":
        """Fill this record's gaps from another record"""
        if other is None:
            return self
        return BookMetadata(
            page_count=self.page_count or other.page_count,
            isbn=self.isbn or other.isbn,
            description=self.description or other.description,
            categories=self.categories or other.categories,
            cover_url=self.cover_url or other.cover_url,
        )


class GoogleBooksAPIError(Exception):
    """Custom exception for Google Books API errors"""
    pass


class RateLimitExceeded(GoogleBooksAPIError):
    """Exception raised when rate limit is exceeded"""
    pass


def pick_isbn(volume_info: Dict[str, Any]) -> Optional[str]:
    """ISBN_13 when present, otherwise ISBN_10"""
    identifiers = volume_info.get("industryIdentifiers") or []
    for wanted in ("ISBN_13", "ISBN_10"):
        for identifier in identifiers:
            if identifier.get("type") == wanted and identifier.get("identifier"):
                return identifier["identifier"]
    return None


class GoogleBooksService:
    """Service for interacting with Google Books API"""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or settings.google_books_api_key
        self.base_url = "https://www.googleapis.com/books/v1"
        self.timeout = settings.google_books_timeout

    async def _make_api_request(self, endpoint: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Make an API request to Google Books"""
        url = f"{self.base_url}/{endpoint}"

        if self.api_key:
            params["key"] = self.api_key

        try:
            client = await get_http_client()
            response = await client.get(url, params=params, timeout=self.timeout)

            if response.status_code == 200:
                return response.json()
            elif response.status_code == 429:
                logger.warning("Rate limit exceeded for Google Books API")
                raise RateLimitExceeded("Rate limit exceeded")
            else:
                logger.error(f"API request failed: {response.status_code} - {response.text[:200]}")
                return None

        except httpx.TimeoutException:
            logger.error(f"API request timed out after {self.timeout}s")
            return None
        except httpx.HTTPError as e:
            logger.error(f"API request failed: {e}")
            return None
        except ValueError as e:
            logger.error(f"Invalid JSON from Google Books: {e}")
            return None

    async def search_volumes(self, query: str, max_results: int = 12, print_type: str = "books") -> List[Dict[str, Any]]:
        """Raw volume items for a free-text query"""
        if not query or not query.strip():
            return []
        params = {"q": query, "maxResults": max_results, "printType": print_type}
        response = await self._make_api_request("volumes", params)
        if not response:
            return []
        return response.get("items") or []

    @staticmethod
    def _parse_metadata(volume_data: Dict[str, Any]) -> BookMetadata:
        volume_info = volume_data.get("volumeInfo") or {}
        description = volume_info.get("description")
        categories = volume_info.get("categories")
        thumbnail = (volume_info.get("imageLinks") or {}).get("thumbnail")
        return BookMetadata(
            page_count=volume_info.get("pageCount") or None,
            isbn=pick_isbn(volume_info),
            description=TextValidator.truncate(description, MAX_DESCRIPTION_LENGTH) if description else None,
            categories=categories[:MAX_CATEGORIES] if categories else None,
            cover_url=normalize_cover_url(thumbnail) if thumbnail else None,
        )

    async def find_metadata(self, title: str, author: str) -> Optional[BookMetadata]:
        """
        Look up metadata for a title and author.

        Returns the first match, or None when Google has nothing.
        """
        items = await self.search_volumes(f"intitle:{title} inauthor:{author}", max_results=1)
        if not items:
            return None
        return self._parse_metadata(items[0])

    async def find_metadata_multi(self, title: str, author: str) -> Optional[BookMetadata]:
        """
        Try progressively looser queries with a series-free title.

        A hit only counts when it carries a page count, description or categories.
        """
        cleaned = TextValidator.clean_title(title)
        queries = [
            f"intitle:{cleaned} inauthor:{author}",
            f'"{cleaned}" {author}',
            f"{cleaned} {author}",
        ]
        for query in queries:
            items = await self.search_volumes(query, max_results=1)
            if not items:
                continue
            metadata = self._parse_metadata(items[0])
            if metadata.page_count or metadata.description or metadata.categories:
                return metadata
        return None

    async def find_details(self, title: str, author: str) -> Optional[BookMetadata]:
        """First of three results that has a cover, a page count or a description"""
        for item in await self.search_volumes(f"{title} {author}", max_results=3):
            metadata = self._parse_metadata(item)
            if metadata.description:
                metadata.description = TextValidator.strip_html(metadata.description)[:MAX_DESCRIPTION_LENGTH] or None
            if metadata.cover_url or metadata.page_count or metadata.description:
                return metadata
        return None

    async def find_cover(self, title: str, author: str) -> Optional[str]:
        """Normalized thumbnail of the first of three results that has one"""
        for item in await self.search_volumes(f"{title} {author}", max_results=3):
            thumbnail = ((item.get("volumeInfo") or {}).get("imageLinks") or {}).get("thumbnail")
            if thumbnail:
                return normalize_cover_url(thumbnail)
        return None
