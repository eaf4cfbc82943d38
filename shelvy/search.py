import asyncio
import logging
import sqlite3
from typing import List, Optional, Dict, Any

from shelvy.book import decode_list
from shelvy.config import settings
from shelvy.database import get_db_connection
from shelvy.services.google_books_service import GoogleBooksAPIError, GoogleBooksService
from shelvy.services.isbndb_service import ISBNdbService, ISBNdbUnavailable
from shelvy.services.open_library_service import OpenLibraryService
from shelvy.utils.covers import sort_categories_by_relevance
from shelvy.utils.validators import MAX_QUERY_LENGTH, ISBNValidator, TextValidator

logger = logging.getLogger(__name__)

MAX_RESULTS = 12
CACHE_CANDIDATES = 50


def _title_key(volume: Dict[str, Any]) -> Optional[str]:
    title = (volume.get("volumeInfo") or {}).get("title")
    return title.lower().strip() if isinstance(title, str) and title.strip() else None


def _has_cover(volume: Dict[str, Any]) -> bool:
    return bool(((volume.get("volumeInfo") or {}).get("imageLinks") or {}).get("thumbnail"))


def merge_results(primary: List[Dict[str, Any]], secondary: List[Dict[str, Any]],
                  limit: int = MAX_RESULTS) -> List[Dict[str, Any]]:
    """
    Merge two volume lists, deduplicated on title.

    Covered primary results come first, then covered secondary ones, then
    whatever is left of both until the limit is reached.
    """
    seen = set()
    results: List[Dict[str, Any]] = []
    for source in (primary, secondary):
        for volume in source:
            key = _title_key(volume)
            if key and key not in seen and _has_cover(volume):
                seen.add(key)
                results.append(volume)
    for volume in primary + secondary:
        if len(results) >= limit:
            break
        key = _title_key(volume)
        if key and key not in seen:
            seen.add(key)
            results.append(volume)
    return results[:limit]


def score_match(title: str, author: str, query: str) -> float:
    """Relevance of a cached book to a query, from 0 to 100"""
    q = query.lower().strip()
    t = (title or "").lower().strip()
    a = (author or "").lower().strip()
    if t == q:
        return 100
    if t.startswith(q):
        return 90
    if a == q:
        return 85
    if q in t:
        return 70
    if q in a:
        return 60
    words = [w for w in q.split() if len(w) > 2]
    combined = f"{t} {a}"
    matching = [w for w in words if w in combined]
    if len(matching) == len(words):
        return 50
    if matching:
        return 30 * (len(matching) / len(words))
    return 0


def cached_volume(row: Dict[str, Any]) -> Dict[str, Any]:
    """A stored book in the Google Books volume shape"""
    volume_info: Dict[str, Any] = {"title": row["title"]}
    if row.get("author"):
        volume_info["authors"] = [row["author"]]
    if row.get("description"):
        volume_info["description"] = row["description"]
    if row.get("cover_url"):
        volume_info["imageLinks"] = {"thumbnail": row["cover_url"], "smallThumbnail": row["cover_url"]}
    categories = sort_categories_by_relevance(decode_list(row.get("categories")))
    if categories:
        volume_info["categories"] = categories
    if row.get("page_count"):
        volume_info["pageCount"] = row["page_count"]
    isbn = row.get("isbn")
    if isbn:
        volume_info["industryIdentifiers"] = [
            {"type": "ISBN_13" if len(isbn) == 13 else "ISBN_10", "identifier": isbn}
        ]
    return {"id": f"cache-{row['id']}", "volumeInfo": volume_info, "source": "cache"}


class BookSearch:
    """Book search across upstream catalogues and every shelf already in the database."""

    def __init__(self, google: Optional[GoogleBooksService] = None,
                 open_library: Optional[OpenLibraryService] = None,
                 isbndb: Optional[ISBNdbService] = None) -> None:
        self.google = google or GoogleBooksService()
        self.open_library = open_library or OpenLibraryService()
        self.isbndb = isbndb or ISBNdbService()

    async def _google_volumes(self, query: str) -> List[Dict[str, Any]]:
        try:
            return await self.google.search_volumes(query, max_results=MAX_RESULTS, print_type="books")
        except GoogleBooksAPIError as e:
            logger.warning(f"Google Books search failed: {e}")
            return []

    async def search_books(self, query: Any) -> Dict[str, Any]:
        """Query Open Library and Google Books concurrently and merge the answers."""
        if not isinstance(query, str):
            return {"items": [], "source": "none", "error": "Query must be a string"}
        query = query[:MAX_QUERY_LENGTH].strip()
        if len(query) < 2:
            return {"items": [], "source": "none"}
        query = TextValidator.sanitize_query(query)

        logger.info(f"Searching for: {query}")
        google_results, open_library_results = await asyncio.gather(
            self._google_volumes(query),
            self.open_library.search_volumes(query, limit=MAX_RESULTS),
        )
        logger.info(f"Google: {len(google_results)} results, Open Library: {len(open_library_results)} results")

        merged = merge_results(open_library_results, google_results)
        if open_library_results and google_results:
            source = "combined"
        elif open_library_results:
            source = "openlibrary"
        else:
            source = "google"
        return {"items": merged, "source": source}

    def search_cache(self, query: Any = None, isbn: Optional[str] = None, mode: str = "search") -> Dict[str, Any]:
        """Look through books other users already shelved with a cover."""
        try:
            if mode == "isbn" and isbn:
                return self._cache_by_isbn(isbn)
            if not query or not isinstance(query, str):
                return {"items": [], "source": "cache", "error": "Query required"}
            query = query[:MAX_QUERY_LENGTH].strip()
            if len(query) < 2:
                return {"items": [], "source": "cache"}
            return self._cache_by_query(query)
        except sqlite3.Error as e:
            logger.error(f"Cache search error: {e}")
            return {"items": [], "source": "cache"}

    def _cache_by_isbn(self, isbn: str) -> Dict[str, Any]:
        if not ISBNValidator.is_valid_isbn(isbn):
            return {"items": [], "source": "cache", "miss": True}
        isbn = ISBNValidator.normalize_isbn(isbn)
        conn = get_db_connection()
        try:
            row = conn.execute(
                """
                SELECT id, title, author, description, cover_url, categories, page_count, isbn
                FROM books WHERE isbn = ? AND cover_url IS NOT NULL AND cover_url != ''
                LIMIT 1
                """,
                (isbn,),
            ).fetchone()
        finally:
            conn.close()
        if not row:
            return {"items": [], "source": "cache", "miss": True}
        return {"items": [cached_volume(dict(row))], "source": "cache", "hit": True}

    def _cache_by_query(self, query: str) -> Dict[str, Any]:
        logger.info(f"Cache searching for: {query}")
        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        conn = get_db_connection()
        try:
            rows = conn.execute(
                """
                SELECT id, title, author, description, cover_url, categories, page_count, isbn
                FROM books
                WHERE (title LIKE ? ESCAPE '\\' OR author LIKE ? ESCAPE '\\')
                  AND cover_url IS NOT NULL AND cover_url != ''
                LIMIT ?
                """,
                (pattern, pattern, CACHE_CANDIDATES),
            ).fetchall()
        finally:
            conn.close()
        if not rows:
            return {"items": [], "source": "cache", "miss": True}

        unique: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            book = dict(row)
            key = f"{book['title'].lower().strip()}|{book['author'].lower().strip()}"
            existing = unique.get(key)
            if (existing is None
                    or (book["description"] and not existing["description"])
                    or (book["isbn"] and not existing["isbn"])):
                unique[key] = book

        scored = [(score_match(b["title"], b["author"], query), b) for b in unique.values()]
        scored = sorted((s for s in scored if s[0] > 0), key=lambda s: s[0], reverse=True)
        items = [cached_volume(book) for _, book in scored[:MAX_RESULTS]]
        logger.info(f"Cache returning {len(items)} results (from {len(rows)} raw matches)")
        return {"items": items, "source": "cache", "hit": bool(items), "total": len(items)}

    async def search_isbndb(self, query: Any = None, isbn: Optional[str] = None,
                            isbns: Optional[List[str]] = None, mode: str = "search") -> Dict[str, Any]:
        """
        ISBNdb lookups in three modes: one ISBN, a batch of ISBNs, or a free-text search.

        Raises ISBNdbUnavailable when no key is configured and ISBNdbAPIError
        for upstream failures that the caller has to report.
        """
        if not self.isbndb.available:
            raise ISBNdbUnavailable("ISBNDB_API_KEY not configured", 500)

        if mode == "isbn" and isbn:
            if not ISBNValidator.is_valid_isbn(str(isbn)):
                logger.info(f"Skipping ISBNdb lookup for invalid ISBN {isbn!r}")
                return {"items": [], "source": "isbndb", "notFound": True}
            book = await self.isbndb.get_book(ISBNValidator.normalize_isbn(str(isbn)))
            if book is None:
                return {"items": [], "source": "isbndb", "notFound": True}
            return {"items": [self.isbndb.normalize_book(book, 0)], "source": "isbndb"}

        if mode == "batch" and isinstance(isbns, list):
            batch = await self.isbndb.lookup_many(isbns, settings.isbndb_delay)
            result: Dict[str, Any] = {"items": batch["items"], "source": "isbndb"}
            if batch["errors"]:
                result["errors"] = batch["errors"]
            return result

        if not query or not isinstance(query, str):
            return {"items": [], "source": "isbndb", "error": "Query required"}
        query = TextValidator.sanitize_query(query)
        if len(query) < 2:
            return {"items": [], "source": "isbndb"}

        logger.info(f"ISBNdb searching for: {query}")
        try:
            found = await self.isbndb.search_books(query, page_size=MAX_RESULTS)
        except ISBNdbUnavailable:
            logger.error("ISBNdb error: 403 - returning empty results for fallback")
            return {"items": [], "source": "isbndb", "unavailable": True}
        items = [self.isbndb.normalize_book(book, i) for i, book in enumerate(found["books"])]
        if not items:
            return {"items": [], "source": "isbndb"}
        logger.info(f"ISBNdb returning {len(items)} results")
        return {"items": items, "source": "isbndb", "total": found["total"]}
