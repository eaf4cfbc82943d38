import asyncio
import logging
from typing import Optional, Dict, Any, List
from urllib.parse import quote

import httpx

from shelvy.config import settings
from shelvy.services.google_books_service import BookMetadata, MAX_CATEGORIES, MAX_DESCRIPTION_LENGTH
from shelvy.services.http_client import get_http_client
from shelvy.utils.covers import is_placeholder
from shelvy.utils.validators import TextValidator

logger = logging.getLogger(__name__)


class ISBNdbAPIError(Exception):
    """Raised for ISBNdb responses other than success or not-found"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ISBNdbUnavailable(ISBNdbAPIError):
    """Subscription or quota problem (HTTP 403)"""
    pass


class ISBNdbRateLimitExceeded(ISBNdbAPIError):
    """HTTP 429 from ISBNdb"""
    pass


def book_isbn(book: Dict[str, Any]) -> Optional[str]:
    return book.get("isbn13") or book.get("isbn")


def book_description(book: Dict[str, Any]) -> Optional[str]:
    raw = book.get("synopsis") or book.get("overview")
    if not raw:
        return None
    return TextValidator.strip_html(raw)[:MAX_DESCRIPTION_LENGTH] or None


class ISBNdbService:
    """Service for the ISBNdb v2 API"""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or settings.isbndb_api_key
        self.base_url = "https://api2.isbndb.com"
        self.timeout = settings.isbndb_timeout

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    async def _make_api_request(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        if not self.api_key:
            raise ISBNdbUnavailable("ISBNDB_API_KEY not configured")
        headers = {"Authorization": self.api_key, "Content-Type": "application/json"}
        try:
            client = await get_http_client()
            return await client.get(f"{self.base_url}{path}", params=params, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            logger.error(f"ISBNdb request timed out after {self.timeout}s")
            raise ISBNdbAPIError("ISBNdb request timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"ISBNdb request failed: {e}")
            raise ISBNdbAPIError(f"ISBNdb request failed: {e}") from e

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code == 429:
            logger.warning("Rate limited by ISBNdb")
            raise ISBNdbRateLimitExceeded("Rate limit exceeded", 429)
        if response.status_code == 403:
            logger.error("ISBNdb error: 403 - subscription or quota problem")
            raise ISBNdbUnavailable("ISBNdb unavailable", 403)
        logger.error(f"ISBNdb error: {response.status_code}")
        raise ISBNdbAPIError(f"ISBNdb API error: {response.status_code}", response.status_code)

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"Invalid JSON from ISBNdb: {e}")
            raise ISBNdbAPIError("Invalid JSON from ISBNdb", 502) from e

    async def get_book(self, isbn: str) -> Optional[Dict[str, Any]]:
        """Direct ISBN lookup. 404 means None."""
        response = await self._make_api_request(f"/book/{quote(isbn, safe='')}")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            self._raise_for_status(response)
        return self._json(response).get("book")

    async def search_books(self, query: str, page_size: int = 12) -> Dict[str, Any]:
        """Title/author search. 404 yields an empty result set."""
        response = await self._make_api_request(f"/books/{quote(query, safe='')}", {"pageSize": page_size})
        if response.status_code == 404:
            return {"books": [], "total": 0}
        if response.status_code != 200:
            self._raise_for_status(response)
        data = self._json(response)
        return {"books": data.get("books") or [], "total": data.get("total")}

    async def find_best_match(self, title: str, author: str, page_size: int = 5) -> Optional[Dict[str, Any]]:
        """Search with a series-free title and prefer a result whose title overlaps it"""
        cleaned = TextValidator.clean_title(title)
        books = (await self.search_books(f"{cleaned} {author}", page_size=page_size))["books"]
        if not books:
            return None
        wanted = cleaned.lower()
        for book in books:
            candidate = (book.get("title") or book.get("title_long") or "").lower()
            if candidate in wanted or wanted in candidate:
                return book
        return books[0]

    async def find_cover(self, title: str, author: str) -> Optional[str]:
        """First non-placeholder image among three results; errors mean no cover"""
        cleaned = TextValidator.clean_title(title)
        try:
            books = (await self.search_books(f"{cleaned} {author}", page_size=3))["books"]
        except ISBNdbAPIError as e:
            logger.warning(f"ISBNdb cover lookup failed for {title!r}: {e}")
            return None
        for book in books:
            if not is_placeholder(book.get("image")):
                return book["image"]
        return None

    @staticmethod
    def extract_metadata(book: Dict[str, Any]) -> BookMetadata:
        subjects = book.get("subjects") or []
        image = book.get("image")
        return BookMetadata(
            page_count=book.get("pages") or None,
            isbn=book_isbn(book),
            description=book_description(book),
            categories=subjects[:MAX_CATEGORIES] or None,
            cover_url=None if is_placeholder(image) else image,
        )

    @staticmethod
    def normalize_book(book: Dict[str, Any], index: int) -> Dict[str, Any]:
        """Convert an ISBNdb book into the Google Books volume shape"""
        isbn = book_isbn(book)
        volume_info: Dict[str, Any] = {
            "title": book.get("title_long") or book.get("title") or "Unknown Title",
            "authors": book.get("authors"),
            "description": book_description(book),
            "publishedDate": book.get("date_published"),
            "categories": (book.get("subjects") or [])[:MAX_CATEGORIES] or None,
            "pageCount": book.get("pages"),
        }
        if book.get("image"):
            volume_info["imageLinks"] = {"thumbnail": book["image"], "smallThumbnail": book["image"]}
        if isbn:
            volume_info["industryIdentifiers"] = [
                {"type": "ISBN_13" if len(isbn) == 13 else "ISBN_10", "identifier": isbn}
            ]
        return {"id": f"isbndb-{isbn or index}", "volumeInfo": volume_info, "source": "isbndb"}

    async def lookup_many(self, isbns: List[str], delay: float) -> Dict[str, Any]:
        """Sequential lookups with a pause between requests"""
        items: List[Dict[str, Any]] = []
        errors: List[str] = []
        for i, isbn in enumerate(isbns):
            try:
                book = await self.get_book(str(isbn))
                if book:
                    items.append(self.normalize_book(book, i))
            except ISBNdbAPIError as e:
                errors.append(f"ISBN {isbn}: {e.status_code or e}")
            if i < len(isbns) - 1:
                await asyncio.sleep(delay)
        return {"items": items, "errors": errors}
