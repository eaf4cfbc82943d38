import re
from typing import Any, Optional

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_QUERY_LENGTH = 200
_UNSAFE_QUERY_CHARS = re.compile(r"[<>'\"`;\\]")

# Series markers removed before title lookups, applied in order
_SERIES_PATTERNS = [
    re.compile(r"\s*\([^)]*#\d+[^)]*\)\s*", re.IGNORECASE),  # "(Series, #1)"
    re.compile(r"\s*#\d+\s*", re.IGNORECASE),                 # "#1"
    re.compile(r"\s*,?\s*book\s+\d+\s*", re.IGNORECASE),      # ", Book 1"
    re.compile(r"\s*,?\s*vol\.?\s*\d+\s*", re.IGNORECASE),    # "Vol. 1"
]

_HTML_TAG = re.compile(r"<[^>]*>")
_HTML_ENTITIES = {
    "&nbsp;": " ",
    "&amp;": "&",
    "&lt;": "<",
    "&gt;": ">",
    "&quot;": '"',
    "&#39;": "'",
    "&ldquo;": '"',
    "&rdquo;": '"',
    "&lsquo;": "'",
    "&rsquo;": "'",
    "&mdash;": "—",
    "&ndash;": "–",
    "&#8212;": "—",
    "&#8211;": "–",
    "&#8217;": "'",
    "&#8216;": "'",
    "&#8220;": '"',
    "&#8221;": '"',
}


class ISBNValidator:
    """ISBN-10 / ISBN-13 normalization, checksums and conversion."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        if not isbn:
            return False
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            total = 0
            for i, ch in enumerate(s[:-1], 1):
                if not ch.isdigit():
                    return False
                total += i * int(ch)
            check = s[-1]
            if check == "X":
                check_val = 10
            elif check.isdigit():
                check_val = int(check)
            else:
                return False
            return (total + 10 * check_val) % 11 == 0
        elif len(s) == 13 and s.isdigit():
            total = 0
            for i, ch in enumerate(s[:-1]):
                factor = 1 if i % 2 == 0 else 3
                total += factor * int(ch)
            check_val = (10 - (total % 10)) % 10
            return check_val == int(s[-1])
        return False

    @staticmethod
    def isbn13_to_isbn10(isbn13: Optional[str]) -> Optional[str]:
        """Convert a 978-prefixed ISBN-13 to ISBN-10. Anything else returns None."""
        s = ISBNValidator.normalize_isbn(isbn13)
        if len(s) != 13 or not s.isdigit() or not s.startswith("978"):
            return None
        core = s[3:12]
        total = sum(int(ch) * weight for ch, weight in zip(core, range(10, 1, -1)))
        check = (11 - (total % 11)) % 11
        return core + ("X" if check == 10 else str(check))


class TextValidator:
    """Sanitization and cleanup for user input and upstream text."""

    @staticmethod
    def sanitize_query(query: Any, max_length: int = MAX_QUERY_LENGTH) -> str:
        """Trim a search query and drop characters that have no place in one.

        Raises ValueError when the query is not a string.
        """
        if not isinstance(query, str):
            raise ValueError("Query must be a string")
        return _UNSAFE_QUERY_CHARS.sub("", query[:max_length].strip())

    @staticmethod
    def clean_title(title: str) -> str:
        """Remove series markers such as "(Saga, #2)" or "Book 3"."""
        cleaned = title or ""
        for pattern in _SERIES_PATTERNS:
            cleaned = pattern.sub(" ", cleaned)
        return re.sub(r"\s+", " ", cleaned).strip()

    @staticmethod
    def strip_html(text: Optional[str]) -> str:
        if not text:
            return ""
        cleaned = _HTML_TAG.sub("", text)
        for entity, replacement in _HTML_ENTITIES.items():
            cleaned = cleaned.replace(entity, replacement)
        return re.sub(r"\s+", " ", cleaned).strip()

    @staticmethod
    def truncate(text: Optional[str], max_length: int) -> Optional[str]:
        if text is None:
            return None
        return text[:max_length]

    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        return bool(email) and bool(EMAIL_PATTERN.match(email))

    @staticmethod
    def require_text(value: Optional[str], field_name: str, min_length: int = 1, max_length: int = 500) -> str:
        """Trim user content and enforce its length bounds."""
        text = value.strip() if isinstance(value, str) else ""
        if len(text) < min_length:
            raise ValueError(f"{field_name} cannot be empty")
        if len(text) > max_length:
            raise ValueError(f"{field_name} must be {max_length} characters or less")
        return text
