import logging
from typing import Optional, Dict, Any, List

from shelvy.config import settings
from shelvy.services.google_books_service import BookMetadata, MAX_CATEGORIES
from shelvy.services.http_client import get_http_client

logger = logging.getLogger(__name__)

SEARCH_FIELDS = "key,title,author_name,cover_i,first_publish_year,subject"
METADATA_FIELDS = "key,title,author_name,number_of_pages_median,isbn,subject"
COVERS_BASE_URL = "https://covers.openlibrary.org/b/id"


def cover_url_for(cover_id: Any, size: str = "M") -> str:
    return f"{COVERS_BASE_URL}/{cover_id}-{size}.jpg"


class OpenLibraryService:
    """Service for the Open Library search API"""

    def __init__(self):
        self.base_url = "https://openlibrary.org"
        self.timeout = settings.openlibrary_timeout

    async def search(self, query: str, limit: int = 12, fields: Optional[str] = SEARCH_FIELDS) -> List[Dict[str, Any]]:
        """Raw search docs; any upstream failure yields an empty list"""
        params: Dict[str, Any] = {"q": query, "limit": limit}
        if fields:
            params["fields"] = fields
        try:
            client = await get_http_client()
            response = await client.get_with_retry(
                f"{self.base_url}/search.json", retries=2, params=params, timeout=self.timeout
            )
            if response is None:
                logger.error("Open Library unreachable")
                return []
            if response.status_code != 200:
                logger.error(f"Open Library API error: {response.status_code} - {response.text[:200]}")
                return []
            return response.json().get("docs") or []
        except ValueError as e:
            logger.error(f"Invalid JSON from Open Library: {e}")
            return []

    @staticmethod
    def to_volume(doc: Dict[str, Any]) -> Dict[str, Any]:
        """Convert an Open Library doc into the Google Books volume shape"""
        volume_info: Dict[str, Any] = {
            "title": doc.get("title"),
            "authors": doc.get("author_name"),
            "infoLink": f"https://openlibrary.org{doc.get('key')}",
        }
        if doc.get("cover_i"):
            volume_info["imageLinks"] = {
                "thumbnail": cover_url_for(doc["cover_i"], "M"),
                "smallThumbnail": cover_url_for(doc["cover_i"], "S"),
            }
        if doc.get("first_publish_year"):
            volume_info["publishedDate"] = str(doc["first_publish_year"])
        if doc.get("subject"):
            volume_info["categories"] = doc["subject"][:3]
        return {"id": f"ol-{doc.get('key')}", "volumeInfo": volume_info}

    async def search_volumes(self, query: str, limit: int = 12) -> List[Dict[str, Any]]:
        return [self.to_volume(doc) for doc in await self.search(query, limit=limit)]

    async def find_metadata(self, title: str, author: str) -> Optional[BookMetadata]:
        docs = await self.search(f"{title} {author}", limit=1, fields=METADATA_FIELDS)
        if not docs:
            return None
        doc = docs[0]
        isbns = doc.get("isbn") or []
        subjects = doc.get("subject") or []
        return BookMetadata(
            page_count=doc.get("number_of_pages_median"),
            isbn=isbns[0] if isbns else None,
            categories=subjects[:MAX_CATEGORIES] or None,
        )

    async def find_cover(self, query: str, size: str = "M", limit: int = 3) -> Optional[str]:
        """Cover URL of the first result that has one"""
        for doc in await self.search(query, limit=limit, fields="cover_i"):
            if doc.get("cover_i"):
                return cover_url_for(doc["cover_i"], size)
        return None
