from __future__ import annotations

import json

BOOK_STATUSES = ("reading", "want-to-read", "read")
DEFAULT_SPINE_COLOR = "#8B4513"


def decode_list(value) -> list | None:
    """Decode a JSON array stored as TEXT. NULL stays None."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return list(value)
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return [value] if value else []
    return parsed if isinstance(parsed, list) else [str(parsed)]


def encode_list(value) -> str | None:
    if value is None:
        return None
    return json.dumps(list(value))


class Book:
    """A single book record on a user's shelf."""

    def __init__(self, id: str, user_id: str, title: str, author: str, status: str = "want-to-read",
                 color: str = DEFAULT_SPINE_COLOR, cover_url: str | None = None,
                 # metadata
                 page_count: int | None = None, isbn: str | None = None, description: str | None = None,
                 categories: list | None = None,
                 # bookkeeping
                 completed_at: str | None = None, metadata_attempted_at: str | None = None,
                 isbndb_attempted_at: str | None = None, created_at: str | None = None,
                 updated_at: str | None = None) -> None:
        self.id = id
        self.user_id = user_id
        self.title = title.strip()
        self.author = author.strip()
        self.status = status
        self.color = color or DEFAULT_SPINE_COLOR
        self.cover_url = cover_url

        self.page_count = page_count
        self.isbn = isbn
        self.description = description
        self.categories = categories

        self.completed_at = completed_at
        self.metadata_attempted_at = metadata_attempted_at
        self.isbndb_attempted_at = isbndb_attempted_at
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.status})"

    def missing_metadata(self) -> bool:
        return (
            self.page_count is None
            or self.isbn is None
            or self.description is None
            or self.categories is None
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "author": self.author,
            "status": self.status,
            "color": self.color,
            "cover_url": self.cover_url,
            "page_count": self.page_count,
            "isbn": self.isbn,
            "description": self.description,
            "categories": self.categories,
            "completed_at": self.completed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_row(row) -> "Book":
        data = dict(row)
        return Book(
            id=data["id"],
            user_id=data["user_id"],
            title=data["title"],
            author=data["author"],
            status=data.get("status") or "want-to-read",
            color=data.get("color"),
            cover_url=data.get("cover_url"),
            page_count=data.get("page_count"),
            isbn=data.get("isbn"),
            description=data.get("description"),
            # SQLite stores the list as JSON text
            categories=decode_list(data.get("categories")),
            completed_at=data.get("completed_at"),
            metadata_attempted_at=data.get("metadata_attempted_at"),
            isbndb_attempted_at=data.get("isbndb_attempted_at"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
