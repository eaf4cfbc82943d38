import asyncio
import logging
import sqlite3
from typing import List, Optional, Dict, Any

from shelvy.book import Book, encode_list
from shelvy.config import settings
from shelvy.database import get_db_connection, utc_now
from shelvy.services.google_books_service import BookMetadata, GoogleBooksAPIError, GoogleBooksService
from shelvy.services.isbndb_service import (
    ISBNdbAPIError,
    ISBNdbRateLimitExceeded,
    ISBNdbService,
)
from shelvy.services.open_library_service import OpenLibraryService
from shelvy.utils.covers import PLACEHOLDER_COVER, needs_cover_refresh
from shelvy.utils.validators import TextValidator

logger = logging.getLogger(__name__)

_MISSING_ANY = "(page_count IS NULL OR isbn IS NULL OR description IS NULL OR categories IS NULL)"


def _fill_nulls(book: Book, metadata: Optional[BookMetadata]) -> Dict[str, Any]:
    """Column values for the fields the book lacks and the metadata has"""
    if metadata is None:
        return {}
    updates: Dict[str, Any] = {}
    if book.page_count is None and metadata.page_count:
        updates["page_count"] = metadata.page_count
    if book.isbn is None and metadata.isbn:
        updates["isbn"] = metadata.isbn
    if book.description is None and metadata.description:
        updates["description"] = metadata.description
    if book.categories is None and metadata.categories:
        updates["categories"] = encode_list(metadata.categories)
    return updates


def _update_book(conn: sqlite3.Connection, book_id: str, updates: Dict[str, Any]) -> None:
    assignments = ", ".join(f"{k} = ?" for k in updates)
    conn.execute(f"UPDATE books SET {assignments} WHERE id = ?", (*updates.values(), book_id))
    conn.commit()


class MetadataEnricher:
    """Fills in page counts, ISBNs, descriptions, categories and covers from upstream catalogues."""

    def __init__(self, google: Optional[GoogleBooksService] = None,
                 open_library: Optional[OpenLibraryService] = None,
                 isbndb: Optional[ISBNdbService] = None) -> None:
        self.google = google or GoogleBooksService()
        self.open_library = open_library or OpenLibraryService()
        self.isbndb = isbndb or ISBNdbService()

    # ------------------------- Single book ------------------------- #
    async def enrich_book(self, title: Any, author: Any = None) -> Dict[str, Any]:
        """
        Metadata for a book about to be added.

        ISBNdb is asked first; Google Books fills whatever it left out and
        Open Library supplies a last-resort cover. Failures never block the
        caller: they come back as success with empty data.
        """
        if not self.isbndb.available:
            logger.info("ISBNDB_API_KEY not configured, skipping enrichment")
            return {"success": True, "enriched": False, "data": {}}
        if not title or not isinstance(title, str):
            raise ValueError("Title is required")

        safe_title = title[:200].strip()
        safe_author = (author if isinstance(author, str) and author else "Unknown")[:100].strip()
        logger.info(f'Enriching: "{safe_title}" by {safe_author}')

        try:
            result: Dict[str, Any] = {}
            try:
                match = await self.isbndb.find_best_match(safe_title, safe_author)
            except ISBNdbAPIError as e:
                logger.warning(f"ISBNdb lookup failed for {safe_title!r}: {e}")
                match = None
            if match:
                found = self.isbndb.extract_metadata(match)
                result["source"] = "isbndb"
                for key, value in (("pageCount", found.page_count), ("isbn", found.isbn),
                                   ("description", found.description), ("categories", found.categories),
                                   ("coverUrl", found.cover_url)):
                    if value:
                        result[key] = value

            if not result.get("pageCount") or not result.get("description") or not result.get("coverUrl"):
                try:
                    google = await self.google.find_details(safe_title, safe_author)
                except GoogleBooksAPIError as e:
                    logger.warning(f"Google Books lookup failed for {safe_title!r}: {e}")
                    google = None
                if google:
                    for key, value in (("pageCount", google.page_count), ("description", google.description),
                                       ("categories", google.categories), ("isbn", google.isbn),
                                       ("coverUrl", google.cover_url)):
                        if not result.get(key) and value:
                            result[key] = value
                    if not result.get("source") and (google.page_count or google.description or google.cover_url):
                        result["source"] = "google"
                    logger.info("Filled in missing data from Google Books")

            if not result.get("coverUrl"):
                cover = await self.open_library.find_cover(f"{safe_title} {safe_author}")
                if cover:
                    result["coverUrl"] = cover
                    result.setdefault("source", "openlibrary")

            enriched = any(k != "source" for k in result)
            logger.info(f"Enrichment {'successful' if enriched else 'empty'} for {safe_title!r}")
            return {"success": True, "enriched": enriched, "data": result}
        except Exception as e:
            logger.error(f"Enrich book error: {e}")
            return {"success": True, "enriched": False, "data": {}, "error": str(e)}

    async def _google_metadata(self, title: str, author: str, multi: bool = False) -> Optional[BookMetadata]:
        """Google Books metadata; rate limits and upstream errors read as no data"""
        try:
            if multi:
                return await self.google.find_metadata_multi(title, author)
            return await self.google.find_metadata(title, author)
        except GoogleBooksAPIError as e:
            logger.warning(f"Google Books lookup failed for {title!r}: {e}")
            return None

    # ------------------------- Per-user backfill ------------------------- #
    async def backfill_user_metadata(self, user_id: str) -> Dict[str, Any]:
        """Fill gaps on every book of one shelf from Google Books, then Open Library."""
        conn = get_db_connection()
        try:
            rows = conn.execute(
                f"SELECT * FROM books WHERE user_id = ? AND {_MISSING_ANY} ORDER BY created_at ASC", (user_id,)
            ).fetchall()
            books = [Book.from_row(row) for row in rows]
            if not books:
                return {"message": "All books already have metadata", "updated": 0}

            logger.info(f"Found {len(books)} books needing metadata for {user_id}")
            updated = 0
            errors: List[str] = []
            for i, book in enumerate(books):
                try:
                    metadata = await self._google_metadata(book.title, book.author)
                    if metadata is None or (not metadata.page_count and not metadata.isbn):
                        fallback = await self.open_library.find_metadata(book.title, book.author)
                        metadata = (metadata or BookMetadata()).merged_with(fallback)
                    updates = _fill_nulls(book, metadata)
                    if updates:
                        updates["updated_at"] = utc_now()
                        _update_book(conn, book.id, updates)
                        updated += 1
                        logger.info(f"Updated: {book.title}")
                except sqlite3.Error as e:
                    errors.append(f"Error processing \"{book.title}\": {e}")
                if i < len(books) - 1:
                    await asyncio.sleep(settings.backfill_delay)
        finally:
            conn.close()

        result: Dict[str, Any] = {"message": "Backfill complete", "total": len(books), "updated": updated}
        if errors:
            result["errors"] = errors
        return result

    # ------------------------- Global backfill ------------------------- #
    async def backfill_all_metadata(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """One batch over every shelf; each book is attempted once."""
        limit = limit or settings.backfill_all_batch_size
        conn = get_db_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM books
                WHERE metadata_attempted_at IS NULL
                  AND (description IS NULL OR page_count IS NULL OR categories IS NULL)
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
            books = [Book.from_row(row) for row in rows]
            if not books:
                return {"message": "All books already have metadata", "updated": 0}

            logger.info(f"Found {len(books)} books needing metadata backfill")
            updated = 0
            no_data_found = 0
            not_found: List[str] = []
            errors: List[str] = []
            for book in books:
                if not book.missing_metadata():
                    continue
                try:
                    metadata = await self._google_metadata(book.title, book.author, multi=True)
                    if metadata is None or (not metadata.page_count and not metadata.isbn):
                        cleaned = TextValidator.clean_title(book.title)
                        fallback = await self.open_library.find_metadata(cleaned, book.author)
                        if fallback:
                            metadata = (metadata or BookMetadata()).merged_with(fallback)

                    updates = _fill_nulls(book, metadata)
                    found = bool(updates)
                    updates["metadata_attempted_at"] = utc_now()
                    _update_book(conn, book.id, updates)
                    if found:
                        updated += 1
                        logger.info(f"Updated: {book.title}")
                    else:
                        no_data_found += 1
                        not_found.append(f"{book.title} by {book.author}")
                        logger.info(f"No metadata found for: {book.title} by {book.author}")
                    await asyncio.sleep(settings.backfill_all_delay)
                except sqlite3.Error as e:
                    errors.append(f"Error processing \"{book.title}\": {e}")
        finally:
            conn.close()

        result: Dict[str, Any] = {
            "message": "Backfill complete",
            "total": len(books),
            "updated": updated,
            "noDataFound": no_data_found,
            "notFoundSamples": not_found[:5],
        }
        if errors:
            result["errors"] = errors[:10]
        return result

    # ------------------------- ISBNdb backfill ------------------------- #
    async def _isbndb_first_hit(self, title: str, author: str) -> Optional[Dict[str, Any]]:
        cleaned = TextValidator.clean_title(title)
        try:
            books = (await self.isbndb.search_books(f"{cleaned} {author}", page_size=1))["books"]
        except ISBNdbRateLimitExceeded:
            logger.info("Rate limited by ISBNdb, backing off...")
            await asyncio.sleep(settings.isbndb_rate_limit_pause)
            return None
        except ISBNdbAPIError as e:
            logger.warning(f"ISBNdb error for {title!r}: {e}")
            return None
        return books[0] if books else None

    async def isbndb_backfill(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """
        One ISBNdb pass over books it has never looked at.

        Each distinct title and author is looked up once. What is found is
        written to the null fields of every copy of that book on any shelf.
        """
        if not self.isbndb.available:
            raise ValueError("ISBNDB_API_KEY not configured")
        limit = limit or settings.isbndb_backfill_batch_size

        conn = get_db_connection()
        try:
            rows = conn.execute(
                f"SELECT * FROM books WHERE isbndb_attempted_at IS NULL AND {_MISSING_ANY} "
                "ORDER BY created_at ASC LIMIT ?",
                (limit,),
            ).fetchall()
            if not rows:
                return {"message": "All books have been processed", "processed": 0, "remaining": 0}

            unique: Dict[str, Book] = {}
            for row in rows:
                book = Book.from_row(row)
                unique.setdefault(f"{book.title.lower()}|||{book.author.lower()}", book)
            logger.info(f"Processing {len(unique)} unique books (from {len(rows)} total) via ISBNdb")

            updated = 0
            not_found = 0
            propagated = 0
            errors: List[str] = []
            for book in unique.values():
                try:
                    hit = await self._isbndb_first_hit(book.title, book.author)
                    updates = _fill_nulls(book, self.isbndb.extract_metadata(hit) if hit else None)
                    if updates:
                        updated += 1
                        logger.info(f"Found: {book.title}" + (f" (ISBN: {updates['isbn']})" if "isbn" in updates else ""))
                    else:
                        not_found += 1

                    matching = [
                        r["id"] for r in conn.execute(
                            "SELECT id FROM books WHERE LOWER(title) = LOWER(?) AND LOWER(author) = LOWER(?)",
                            (book.title, book.author),
                        ).fetchall()
                    ]
                    coalesced = ", ".join(f"{k} = COALESCE({k}, ?)" for k in updates)
                    assignments = f"{coalesced}, isbndb_attempted_at = ?" if coalesced else "isbndb_attempted_at = ?"
                    placeholders = ", ".join("?" for _ in matching)
                    conn.execute(
                        f"UPDATE books SET {assignments} WHERE id IN ({placeholders})",
                        (*updates.values(), utc_now(), *matching),
                    )
                    conn.commit()
                    propagated += max(len(matching) - 1, 0)
                    await asyncio.sleep(settings.isbndb_delay)
                except sqlite3.Error as e:
                    errors.append(f"Error processing \"{book.title}\": {e}")

            remaining = conn.execute(
                f"SELECT COUNT(*) FROM books WHERE isbndb_attempted_at IS NULL AND {_MISSING_ANY}"
            ).fetchone()[0]
        finally:
            conn.close()

        result: Dict[str, Any] = {
            "message": "ISBNdb backfill batch complete",
            "processed": len(unique),
            "updated": updated,
            "notFound": not_found,
            "propagated": propagated,
            "remaining": remaining,
        }
        if errors:
            result["errors"] = errors[:5]
        return result

    # ------------------------- Covers ------------------------- #
    async def find_cover(self, title: str, author: str) -> Optional[str]:
        """ISBNdb, then Google Books, then Open Library"""
        if self.isbndb.available:
            cover = await self.isbndb.find_cover(title, author)
            if cover:
                return cover
        try:
            cover = await self.google.find_cover(title, author)
        except GoogleBooksAPIError as e:
            logger.warning(f"Google Books cover lookup failed for {title!r}: {e}")
            cover = None
        if cover:
            return cover
        return await self.open_library.find_cover(f"{title} {author}", size="M")

    async def refresh_covers(self, user_id: str, book_ids: Optional[List[str]] = None,
                             limit: int = 50) -> Dict[str, Any]:
        """Replace missing, placeholder and unnormalized Google covers on a shelf."""
        conn = get_db_connection()
        try:
            sql = "SELECT * FROM books WHERE user_id = ?"
            params: list = [user_id]
            if book_ids:
                sql += f" AND id IN ({', '.join('?' for _ in book_ids)})"
                params.extend(book_ids)
            sql += " ORDER BY created_at ASC"
            candidates = [Book.from_row(r) for r in conn.execute(sql, params).fetchall()]

            seen = set()
            to_refresh: List[Book] = []
            for book in candidates:
                if book.id in seen or not needs_cover_refresh(book.cover_url):
                    continue
                seen.add(book.id)
                to_refresh.append(book)
                if len(to_refresh) >= limit:
                    break

            results: List[Dict[str, Any]] = []
            for book in to_refresh:
                try:
                    cover = await self.find_cover(book.title, book.author)
                    if cover and cover != PLACEHOLDER_COVER:
                        _update_book(conn, book.id, {"cover_url": cover, "updated_at": utc_now()})
                        results.append({"id": book.id, "title": book.title, "coverUrl": cover, "updated": True})
                    else:
                        results.append({"id": book.id, "title": book.title, "coverUrl": None, "updated": False})
                except sqlite3.Error as e:
                    logger.error(f"Error refreshing cover for {book.title!r}: {e}")
                    results.append({"id": book.id, "title": book.title, "coverUrl": None, "updated": False})
                await asyncio.sleep(settings.cover_refresh_delay)
        finally:
            conn.close()

        updated = sum(1 for r in results if r["updated"])
        logger.info(f"Refreshed {updated} of {len(to_refresh)} books")
        return {"processed": len(to_refresh), "updated": updated, "results": results}
