from typing import List, Optional
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from shelvy.utils.validators import ISBNValidator

PLACEHOLDER_COVER = "/placeholder.svg"
AMAZON_ASSOCIATE_TAG = "shelvybooks-20"

# Most common genres first
CATEGORY_PRIORITY: List[str] = [
    "Fiction",
    "Science Fiction",
    "Fantasy",
    "Comics & Graphic Novels",
    "Action & Adventure",
    "Religion",
    "Business & Economics",
    "History",
    "Literature & Fiction",
    "Science Fiction & Fantasy",
    "Biography & Autobiography",
    "Horror",
    "Computers",
    "Epic",
    "Self-Help",
    "Thrillers",
    "Crime & Mystery",
    "Military",
    "Science",
    "Juvenile Fiction",
    "Mystery",
    "Romance",
    "Psychology",
    "Philosophy",
    "Poetry",
    "Drama",
    "Art",
    "Music",
    "Cooking",
    "Health & Fitness",
    "Sports & Recreation",
    "Travel",
    "Education",
    "Politics",
    "Social Science",
    "Technology",
    "Nature",
    "Humor",
    "Memoir",
    "Nonfiction",
]
_PRIORITY_INDEX = {name: i for i, name in enumerate(CATEGORY_PRIORITY)}


def _is_google_content(parts) -> bool:
    return parts.hostname == "books.google.com" and parts.path.startswith("/books/content")


def normalize_cover_url(raw_url: Optional[str]) -> Optional[str]:
    """Force https and ask Google Books for the curl-edged, zoom 2 rendition.

    Values that do not parse as absolute URLs are returned unchanged.
    """
    if not raw_url:
        return raw_url
    parts = urlsplit(raw_url)
    if not parts.scheme or not parts.netloc:
        return raw_url

    query = parts.query
    if _is_google_content(parts):
        params = parse_qsl(parts.query, keep_blank_values=True)
        values = dict(params)
        if not values.get("edge"):
            params = [(k, v) for k, v in params if k != "edge"] + [("edge", "curl")]
        zoom = values.get("zoom")
        if not zoom or zoom == "1":
            if "zoom" in values:
                params = [(k, "2" if k == "zoom" else v) for k, v in params]
            else:
                params.append(("zoom", "2"))
        query = urlencode(params)

    return urlunsplit(("https", parts.netloc, parts.path, query, parts.fragment))


def needs_cover_refresh(cover_url: Optional[str]) -> bool:
    """True for missing covers and Google covers that were stored before normalization."""
    if not cover_url or cover_url == PLACEHOLDER_COVER:
        return True
    return "books.google.com/books/content" in cover_url and "edge=curl" not in cover_url


def is_placeholder(url: Optional[str]) -> bool:
    return not url or "placeholder" in url


def sort_categories_by_relevance(categories: Optional[List[str]]) -> List[str]:
    if not categories:
        return []
    known = sorted((c for c in categories if c in _PRIORITY_INDEX), key=_PRIORITY_INDEX.get)
    unknown = sorted(c for c in categories if c not in _PRIORITY_INDEX)
    return known + unknown


def amazon_book_url(title: str, author: str, isbn: Optional[str] = None) -> str:
    """Affiliate link: a product page when an ISBN-10 is known, a search otherwise."""
    if isbn:
        cleaned = isbn.replace("-", "").replace(" ", "")
        isbn10 = cleaned if len(cleaned) == 10 else ISBNValidator.isbn13_to_isbn10(cleaned)
        if isbn10:
            return f"https://www.amazon.com/dp/{isbn10}/?tag={AMAZON_ASSOCIATE_TAG}"
    query = quote(f"{title} {author}", safe="")
    return f"https://www.amazon.com/s?k={query}&i=stripbooks&tag={AMAZON_ASSOCIATE_TAG}"
