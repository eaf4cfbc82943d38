import logging
import sqlite3
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any

from shelvy.book import BOOK_STATUSES, DEFAULT_SPINE_COLOR, Book, encode_list
from shelvy.database import get_db_connection, new_id, short_token, utc_now
from shelvy.utils.covers import normalize_cover_url
from shelvy.utils.validators import TextValidator

logger = logging.getLogger(__name__)

SHELF_SKINS = ("oak", "walnut", "white", "dark")
DECOR_DENSITIES = ("minimal", "balanced", "cozy")
_FLAG_FIELDS = ("is_public", "show_bookends", "show_wood_grain", "show_ambient_light", "show_plant")
_BOOK_FIELDS = ("title", "author", "color", "cover_url", "page_count", "isbn", "description", "categories")


def _check_status(status: str) -> str:
    if status not in BOOK_STATUSES:
        raise ValueError(f"Invalid status: {status}. Expected one of {', '.join(BOOK_STATUSES)}")
    return status


def _settings_dict(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    for flag in _FLAG_FIELDS:
        data[flag] = bool(data.get(flag)) if data.get(flag) is not None else True
    return data


class Shelf:
    """A user's books and the way their shelf is displayed and shared."""

    # ------------------------- Books ------------------------- #
    def add_book(self, user_id: str, title: str, author: str, status: str = "want-to-read",
                 color: Optional[str] = None, cover_url: Optional[str] = None,
                 page_count: Optional[int] = None, isbn: Optional[str] = None,
                 description: Optional[str] = None, categories: Optional[list] = None,
                 completed_at: Optional[str] = None) -> Book:
        title = TextValidator.require_text(title, "Title")
        author = TextValidator.require_text(author, "Author")
        _check_status(status)
        now = utc_now()
        if status == "read" and not completed_at:
            completed_at = now

        book = Book(
            id=new_id(), user_id=user_id, title=title, author=author, status=status,
            color=color or DEFAULT_SPINE_COLOR, cover_url=normalize_cover_url(cover_url),
            page_count=page_count, isbn=isbn, description=description, categories=categories,
            completed_at=completed_at, created_at=now, updated_at=now,
        )
        conn = get_db_connection()
        try:
            conn.execute(
                """
                INSERT INTO books (
                    id, user_id, title, author, color, status, cover_url, page_count, isbn,
                    description, categories, completed_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    book.id, book.user_id, book.title, book.author, book.color, book.status, book.cover_url,
                    book.page_count, book.isbn, book.description, encode_list(book.categories),
                    book.completed_at, book.created_at, book.updated_at,
                ),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Added '{book.title}' to shelf of {user_id}")
        return book

    def list_books(self, user_id: str, status: Optional[str] = None) -> List[Book]:
        conn = get_db_connection()
        try:
            if status:
                _check_status(status)
                rows = conn.execute(
                    "SELECT * FROM books WHERE user_id = ? AND status = ? ORDER BY created_at ASC",
                    (user_id, status),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM books WHERE user_id = ? ORDER BY created_at ASC", (user_id,)
                ).fetchall()
            return [Book.from_row(row) for row in rows]
        finally:
            conn.close()

    def get_book(self, book_id: str) -> Book:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise LookupError("Book not found")
        return Book.from_row(row)

    def _owned_book(self, user_id: str, book_id: str) -> Book:
        book = self.get_book(book_id)
        if book.user_id != user_id:
            raise PermissionError("You can only change books on your own shelf")
        return book

    def update_book(self, user_id: str, book_id: str, **fields: Any) -> Book:
        """Update editable fields of an owned book. A status change goes through move_book."""
        book = self._owned_book(user_id, book_id)
        status = fields.pop("status", None)
        unknown = set(fields) - set(_BOOK_FIELDS)
        if unknown:
            raise ValueError(f"Unknown book fields: {', '.join(sorted(unknown))}")

        if "title" in fields:
            fields["title"] = TextValidator.require_text(fields["title"], "Title")
        if "author" in fields:
            fields["author"] = TextValidator.require_text(fields["author"], "Author")
        if "cover_url" in fields:
            fields["cover_url"] = normalize_cover_url(fields["cover_url"])
        if "color" in fields and not fields["color"]:
            fields["color"] = DEFAULT_SPINE_COLOR

        if fields:
            values = [encode_list(v) if k == "categories" else v for k, v in fields.items()]
            assignments = ", ".join(f"{k} = ?" for k in fields)
            conn = get_db_connection()
            try:
                conn.execute(
                    f"UPDATE books SET {assignments}, updated_at = ? WHERE id = ?",
                    (*values, utc_now(), book.id),
                )
                conn.commit()
            finally:
                conn.close()

        if status is not None and status != book.status:
            return self.move_book(user_id, book_id, status)
        return self.get_book(book_id)

    def move_book(self, user_id: str, book_id: str, status: str) -> Book:
        """Change reading status. Moving into 'read' from elsewhere stamps completed_at."""
        _check_status(status)
        book = self._owned_book(user_id, book_id)
        now = utc_now()
        conn = get_db_connection()
        try:
            if status == "read" and book.status != "read":
                conn.execute(
                    "UPDATE books SET status = ?, completed_at = ?, updated_at = ? WHERE id = ?",
                    (status, now, now, book_id),
                )
            else:
                conn.execute(
                    "UPDATE books SET status = ?, updated_at = ? WHERE id = ?", (status, now, book_id)
                )
            conn.commit()
        finally:
            conn.close()
        return self.get_book(book_id)

    def set_completed_at(self, user_id: str, book_id: str, completed_at: Optional[str]) -> Book:
        self._owned_book(user_id, book_id)
        conn = get_db_connection()
        try:
            conn.execute(
                "UPDATE books SET completed_at = ?, updated_at = ? WHERE id = ?", (completed_at, utc_now(), book_id)
            )
            conn.commit()
        finally:
            conn.close()
        return self.get_book(book_id)

    def remove_book(self, user_id: str, book_id: str) -> None:
        book = self._owned_book(user_id, book_id)
        conn = get_db_connection()
        try:
            conn.execute("DELETE FROM books WHERE id = ?", (book.id,))
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Removed '{book.title}' from shelf of {user_id}")

    def shelf_stats(self, user_id: str) -> Dict[str, Any]:
        books = self.list_books(user_id)
        year = str(datetime.now(timezone.utc).year)
        counts = {status: 0 for status in BOOK_STATUSES}
        for book in books:
            counts[book.status] = counts.get(book.status, 0) + 1
        finished = [b for b in books if b.status == "read"]
        return {
            "total": len(books),
            "reading": counts["reading"],
            "want_to_read": counts["want-to-read"],
            "read": counts["read"],
            "pages_read": sum(b.page_count or 0 for b in finished),
            "completed_this_year": sum(1 for b in finished if (b.completed_at or "").startswith(year)),
        }

    # ------------------------- Shelf settings ------------------------- #
    def get_settings(self, user_id: str) -> Dict[str, Any]:
        """Shelf settings, created with defaults on first access."""
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM shelf_settings WHERE user_id = ?", (user_id,)).fetchone()
            if not row:
                now = utc_now()
                conn.execute(
                    """
                    INSERT INTO shelf_settings (id, user_id, is_public, share_id, created_at, updated_at)
                    VALUES (?, ?, 1, ?, ?, ?)
                    """,
                    (new_id(), user_id, short_token(12), now, now),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM shelf_settings WHERE user_id = ?", (user_id,)).fetchone()
            return _settings_dict(row)
        finally:
            conn.close()

    def update_settings(self, user_id: str, **fields: Any) -> Dict[str, Any]:
        self.get_settings(user_id)
        updates: Dict[str, Any] = {}
        for key, value in fields.items():
            if value is None and key != "display_name":
                continue
            if key in _FLAG_FIELDS:
                updates[key] = 1 if value else 0
            elif key == "shelf_skin":
                if value not in SHELF_SKINS:
                    raise ValueError(f"Invalid shelf skin: {value}")
                updates[key] = value
            elif key == "decor_density":
                if value not in DECOR_DENSITIES:
                    raise ValueError(f"Invalid decor density: {value}")
                updates[key] = value
            elif key == "background_theme":
                updates[key] = TextValidator.require_text(value, "Background theme", max_length=30)
            elif key == "display_name":
                updates[key] = (value.strip()[:50] or None) if isinstance(value, str) else None
            else:
                raise ValueError(f"Unknown shelf setting: {key}")

        if updates:
            assignments = ", ".join(f"{k} = ?" for k in updates)
            conn = get_db_connection()
            try:
                conn.execute(
                    f"UPDATE shelf_settings SET {assignments}, updated_at = ? WHERE user_id = ?",
                    (*updates.values(), utc_now(), user_id),
                )
                conn.commit()
            finally:
                conn.close()
        return self.get_settings(user_id)

    def regenerate_share_id(self, user_id: str) -> str:
        self.get_settings(user_id)
        share_id = short_token(12)
        conn = get_db_connection()
        try:
            conn.execute(
                "UPDATE shelf_settings SET share_id = ?, updated_at = ? WHERE user_id = ?",
                (share_id, utc_now(), user_id),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info(f"New share id for {user_id}")
        return share_id

    def get_public_shelf(self, share_id: str) -> Dict[str, Any]:
        """The read-only view behind a share link. Private or unknown shelves raise LookupError."""
        conn = get_db_connection()
        try:
            row = conn.execute(
                """
                SELECT s.*, p.username
                FROM shelf_settings s LEFT JOIN profiles p ON p.user_id = s.user_id
                WHERE s.share_id = ? AND s.is_public = 1
                """,
                (share_id,),
            ).fetchone()
            if not row:
                raise LookupError("Shelf not found or not public")
            rows = conn.execute(
                "SELECT * FROM books WHERE user_id = ? ORDER BY created_at ASC", (row["user_id"],)
            ).fetchall()
        finally:
            conn.close()

        settings = _settings_dict(row)
        return {
            "user_id": settings["user_id"],
            "display_name": settings.get("display_name"),
            "username": settings.get("username"),
            "shelf_skin": settings.get("shelf_skin") or "oak",
            "background_theme": settings.get("background_theme") or "office",
            "show_bookends": settings["show_bookends"],
            "show_wood_grain": settings["show_wood_grain"],
            "show_ambient_light": settings["show_ambient_light"],
            "show_plant": settings["show_plant"],
            "decor_density": settings.get("decor_density") or "balanced",
            "books": [Book.from_row(r).to_dict() for r in rows],
        }
