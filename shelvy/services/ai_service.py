import json
import logging
import re
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

import httpx

from shelvy.config import settings
from shelvy.services.http_client import get_http_client
from shelvy.services.open_library_service import OpenLibraryService
from shelvy.utils.covers import PLACEHOLDER_COVER

logger = logging.getLogger(__name__)

MAX_BOOKS = 100
PROMPT_BOOKS = 20

RECOMMENDER_SYSTEM_PROMPT = """You are a delightful book recommender with a touch of magic ✨. You analyze someone's bookshelf to understand their taste and suggest books they'd love.

Be warm, enthusiastic, and sprinkle in some bookish charm. Keep recommendations diverse but aligned with their interests. Focus on books that feel like perfect matches.

Format your response as a JSON object with this structure:
{
  "insight": "A brief, charming observation about their reading taste (1-2 sentences)",
  "recommendations": [
    {
      "title": "Book Title",
      "author": "Author Name",
      "reason": "A short, enthusiastic reason why they'd love this (1 sentence)",
      "vibe": "A 2-3 word vibe/mood tag like 'cozy adventure' or 'mind-bending'"
    }
  ]
}

Provide exactly 10 recommendations. Make sure they're real, well-known books."""

QUOTE_SYSTEM_PROMPT = """You are a literary expert. Generate a single inspiring, memorable quote from a well-known book. Return ONLY valid JSON in this exact format, no markdown or code blocks:
{"quote": "the quote text", "book": {"title": "Book Title", "author": "Author Name"}}"""

QUOTE_USER_PROMPT = (
    "Give me a memorable, inspiring quote from a classic or popular book. "
    "Choose something different and unexpected - not the most famous quotes everyone knows. "
    "Focus on books from various genres: literary fiction, fantasy, sci-fi, romance, philosophy, "
    "memoirs, or contemporary fiction. Make sure the quote is real and actually from the book you cite."
)

_CODE_FENCE = re.compile(r"```json\n?|\n?```")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class AIServiceError(Exception):
    """AI gateway failure or unusable reply"""
    pass


class RateLimitExceeded(AIServiceError):
    """Gateway returned 429"""
    pass


class CreditsExhausted(AIServiceError):
    """Gateway returned 402"""
    pass


@dataclass
class ShelfBook:
    """A sanitized book entry sent to the recommender"""
    title: str
    author: str
    status: str = "unknown"


def sanitize_books(books: Any) -> List[ShelfBook]:
    """Validate the recommender input.

    Raises ValueError for a non-list, an empty list, more than 100 entries,
    or a list with no usable title/author pair.
    """
    if not isinstance(books, list):
        raise ValueError("Invalid request: books must be an array")
    if not books:
        raise ValueError("Invalid request: books array cannot be empty")
    if len(books) > MAX_BOOKS:
        raise ValueError(f"Invalid request: too many books (max {MAX_BOOKS})")

    sanitized = []
    for book in books:
        if not isinstance(book, dict):
            continue
        title = book.get("title")[:200].strip() if isinstance(book.get("title"), str) else ""
        author = book.get("author")[:100].strip() if isinstance(book.get("author"), str) else ""
        status = book.get("status")[:20].strip() if isinstance(book.get("status"), str) else "unknown"
        if title and author:
            sanitized.append(ShelfBook(title=title, author=author, status=status))

    if not sanitized:
        raise ValueError("Invalid request: no valid books found")
    return sanitized


def sanitize_mood(mood: Any) -> str:
    if not mood or not isinstance(mood, str):
        return ""
    return re.sub(r"[<>]", "", mood[:200].strip())


def build_recommendation_prompt(books: List[ShelfBook], mood: str = "") -> str:
    book_list = "\n".join(
        f'{i}. "{b.title}" by {b.author} ({b.status})' for i, b in enumerate(books[:PROMPT_BOOKS], 1)
    )
    reading = sum(1 for b in books if b.status == "reading")
    read = sum(1 for b in books if b.status == "read")
    want = sum(1 for b in books if b.status == "want-to-read")
    mood_context = f"\n\nThe reader is currently in the mood for: {mood}" if mood else ""
    return (
        f"Here's my bookshelf ({len(books)} total books):\n"
        f"- Currently reading: {reading}\n"
        f"- Already read: {read}\n"
        f"- Want to read: {want}\n\n"
        f"Recent books:\n{book_list}{mood_context}\n\n"
        "What magical books would you recommend for me?"
    )


def extract_json_object(content: str) -> Dict[str, Any]:
    """Parse the outermost {...} of a reply that may carry prose or fences"""
    match = _JSON_OBJECT.search(content)
    if not match:
        raise AIServiceError("Failed to parse recommendations")
    try:
        return json.loads(match.group(0))
    except ValueError as e:
        logger.error(f"Failed to parse AI response: {content[:500]}")
        raise AIServiceError("Failed to parse recommendations") from e


class AIService:
    """Client for an OpenAI-compatible chat completions gateway"""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or settings.ai_api_key
        self.url = settings.ai_gateway_url
        self.timeout = settings.ai_timeout

    async def _chat(self, payload: Dict[str, Any]) -> str:
        if not self.api_key:
            raise AIServiceError("AI_API_KEY is not configured")

        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            client = await get_http_client()
            response = await client.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            logger.error(f"AI gateway timed out after {self.timeout}s")
            raise AIServiceError("AI gateway timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"AI gateway request failed: {e}")
            raise AIServiceError("AI gateway request failed") from e

        if response.status_code == 429:
            raise RateLimitExceeded("Rate limit exceeded. Please try again in a moment.")
        if response.status_code == 402:
            raise CreditsExhausted("AI credits depleted. Please add credits to continue.")
        if response.status_code != 200:
            logger.error(f"AI gateway error: {response.status_code} {response.text[:500]}")
            raise AIServiceError(f"AI API returned {response.status_code}")

        try:
            choices = response.json().get("choices") or []
        except ValueError as e:
            logger.error(f"Invalid JSON from AI gateway: {e}")
            raise AIServiceError("Invalid response from AI gateway") from e
        content = ((choices[0].get("message") or {}).get("content")) if choices else None
        if not content:
            raise AIServiceError("No content in AI response")
        return content

    async def recommend(self, books: Any, mood: Any = None) -> Dict[str, Any]:
        """Ask the model for ten picks based on a shelf"""
        sanitized = sanitize_books(books)
        prompt = build_recommendation_prompt(sanitized, sanitize_mood(mood))
        content = await self._chat({
            "model": settings.ai_model,
            "messages": [
                {"role": "system", "content": RECOMMENDER_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        })
        return extract_json_object(content)

    async def generate_quote(self) -> Dict[str, Any]:
        """A quote with its book and an Open Library cover"""
        content = await self._chat({
            "model": settings.ai_quote_model,
            "messages": [
                {"role": "system", "content": QUOTE_SYSTEM_PROMPT},
                {"role": "user", "content": QUOTE_USER_PROMPT},
            ],
            "temperature": 1.0,
            "max_tokens": 200,
        })

        try:
            data = json.loads(_CODE_FENCE.sub("", content.strip()).strip())
        except ValueError as e:
            logger.error(f"Failed to parse AI response: {content[:500]}")
            raise AIServiceError("Invalid response format") from e

        if not isinstance(data, dict):
            raise AIServiceError("Invalid quote structure")
        book = data.get("book")
        if not data.get("quote") or not isinstance(book, dict) or not book.get("title") or not book.get("author"):
            logger.error(f"Invalid quote structure: {data}")
            raise AIServiceError("Invalid quote structure")

        cover_url = await OpenLibraryService().find_cover(
            f"{book['title']} {book['author']}", size="L", limit=1
        )
        logger.info(f"Returning quote: {book['title']} by {book['author']}")
        return {
            "quote": data["quote"],
            "book": {
                "title": book["title"],
                "author": book["author"],
                "coverUrl": cover_url or PLACEHOLDER_COVER,
            },
        }
