import asyncio

import httpx
import pytest

from shelvy.database import get_db_connection
from shelvy.metadata import MetadataEnricher
from shelvy.services.isbndb_service import ISBNdbService
from shelvy.shelf import Shelf

GOOGLE_VOLUME = {
    "volumeInfo": {
        "title": "Dune",
        "pageCount": 412,
        "description": "Desert planet",
        "categories": ["Fiction"],
        "industryIdentifiers": [{"type": "ISBN_13", "identifier": "9780441013593"}],
        "imageLinks": {"thumbnail": "https://books.google.com/books/content?id=g1&zoom=1"},
    }
}


def _enricher(isbndb_key=None):
    isbndb = ISBNdbService()
    isbndb.api_key = isbndb_key
    return MetadataEnricher(isbndb=isbndb)


@pytest.fixture
def shelf():
    return Shelf()


# ------------------------- Single book ------------------------- #
def test_enrich_without_isbndb_key_is_a_no_op():
    assert asyncio.run(_enricher().enrich_book("Dune", "Frank Herbert")) == {
        "success": True, "enriched": False, "data": {}}


def test_enrich_requires_title():
    with pytest.raises(ValueError, match="Title is required"):
        asyncio.run(_enricher("key").enrich_book(None))


def test_enrich_uses_isbndb_then_google(mock_http):
    def handler(request):
        if request.url.host == "api2.isbndb.com":
            return httpx.Response(200, json={"books": [
                {"title": "Dune", "isbn13": "9780441013593", "subjects": ["Science Fiction"],
                 "image": "https://images.isbndb.com/covers/placeholder.jpg"},
            ]})
        return httpx.Response(200, json={"items": [GOOGLE_VOLUME]})

    mock_http(handler)
    result = asyncio.run(_enricher("key").enrich_book("Dune", "Frank Herbert"))
    assert result["enriched"] is True
    data = result["data"]
    assert data["source"] == "isbndb"
    assert data["isbn"] == "9780441013593"
    assert data["categories"] == ["Science Fiction"]
    assert data["pageCount"] == 412
    assert data["description"] == "Desert planet"
    assert "edge=curl" in data["coverUrl"]


def test_enrich_falls_back_to_open_library_cover(mock_http):
    def handler(request):
        if request.url.host == "api2.isbndb.com":
            return httpx.Response(404)
        if request.url.host == "openlibrary.org":
            return httpx.Response(200, json={"docs": [{"cover_i": 9}]})
        return httpx.Response(200, json={})

    mock_http(handler)
    result = asyncio.run(_enricher("key").enrich_book("Dune", None))
    assert result["data"] == {"coverUrl": "https://covers.openlibrary.org/b/id/9-M.jpg", "source": "openlibrary"}


def test_enrich_never_raises_on_upstream_failure(mock_http, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("boom")

    enricher = _enricher("key")
    monkeypatch.setattr(enricher.isbndb, "find_best_match", broken)
    result = asyncio.run(enricher.enrich_book("Dune", "Frank Herbert"))
    assert result == {"success": True, "enriched": False, "data": {}, "error": "boom"}


# ------------------------- Backfills ------------------------- #
def test_backfill_user_metadata_fills_only_nulls(mock_http, shelf, make_user):
    alice = make_user("alice")
    dune = shelf.add_book(alice["id"], "Dune", "Frank Herbert", description="My own blurb")
    mock_http(lambda request: httpx.Response(200, json={"items": [GOOGLE_VOLUME]}))

    result = asyncio.run(_enricher().backfill_user_metadata(alice["id"]))
    assert result == {"message": "Backfill complete", "total": 1, "updated": 1}

    book = shelf.get_book(dune.id)
    assert book.page_count == 412
    assert book.isbn == "9780441013593"
    assert book.categories == ["Fiction"]
    assert book.description == "My own blurb"

    assert asyncio.run(_enricher().backfill_user_metadata(alice["id"]))["message"] == "All books already have metadata"


def test_backfill_user_metadata_uses_open_library_when_google_is_thin(mock_http, shelf, make_user):
    alice = make_user("alice")
    emma = shelf.add_book(alice["id"], "Emma", "Jane Austen")

    def handler(request):
        if request.url.host == "openlibrary.org":
            return httpx.Response(200, json={"docs": [
                {"number_of_pages_median": 474, "isbn": ["0141439580"], "subject": ["Classics"]},
            ]})
        return httpx.Response(200, json={"items": []})

    mock_http(handler)
    asyncio.run(_enricher().backfill_user_metadata(alice["id"]))
    book = shelf.get_book(emma.id)
    assert book.page_count == 474
    assert book.isbn == "0141439580"
    assert book.description is None


def test_backfill_all_marks_attempts(mock_http, shelf, make_user):
    alice = make_user("alice")
    shelf.add_book(alice["id"], "Unfindable", "Nobody")
    mock_http(lambda request: httpx.Response(200, json={}))

    result = asyncio.run(_enricher().backfill_all_metadata(limit=10))
    assert result["total"] == 1
    assert result["noDataFound"] == 1
    assert result["notFoundSamples"] == ["Unfindable by Nobody"]

    again = asyncio.run(_enricher().backfill_all_metadata(limit=10))
    assert again == {"message": "All books already have metadata", "updated": 0}


def _google_failing_with(status):
    def handler(request):
        if request.url.host == "openlibrary.org":
            return httpx.Response(200, json={"docs": [{"number_of_pages_median": 412, "subject": ["Fiction"]}]})
        return httpx.Response(status)
    return handler


@pytest.mark.parametrize("status", [429, 503])
def test_backfill_all_falls_back_when_google_fails(mock_http, shelf, make_user, status):
    alice = make_user("alice")
    dune = shelf.add_book(alice["id"], "Dune", "Frank Herbert")
    mock_http(_google_failing_with(status))

    result = asyncio.run(_enricher().backfill_all_metadata(limit=10))
    assert result["updated"] == 1
    assert "errors" not in result

    book = shelf.get_book(dune.id)
    assert book.page_count == 412
    assert book.categories == ["Fiction"]
    conn = get_db_connection()
    row = conn.execute("SELECT metadata_attempted_at FROM books WHERE id = ?", (dune.id,)).fetchone()
    conn.close()
    assert row["metadata_attempted_at"] is not None


def test_backfill_all_stamps_attempt_when_every_upstream_fails(mock_http, shelf, make_user):
    alice = make_user("alice")
    shelf.add_book(alice["id"], "Dune", "Frank Herbert")
    mock_http(lambda request: httpx.Response(429))

    result = asyncio.run(_enricher().backfill_all_metadata(limit=10))
    assert result["noDataFound"] == 1
    assert asyncio.run(_enricher().backfill_all_metadata(limit=10))["updated"] == 0


@pytest.mark.parametrize("status", [429, 500])
def test_backfill_user_falls_back_when_google_fails(mock_http, shelf, make_user, status):
    alice = make_user("alice")
    dune = shelf.add_book(alice["id"], "Dune", "Frank Herbert")
    mock_http(_google_failing_with(status))

    result = asyncio.run(_enricher().backfill_user_metadata(alice["id"]))
    assert result == {"message": "Backfill complete", "total": 1, "updated": 1}
    assert shelf.get_book(dune.id).page_count == 412


def test_isbndb_backfill_requires_key():
    with pytest.raises(ValueError, match="ISBNDB_API_KEY not configured"):
        asyncio.run(_enricher().isbndb_backfill())


def test_isbndb_backfill_propagates_to_every_copy(mock_http, shelf, make_user):
    alice = make_user("alice")
    bob = make_user("bob")
    first = shelf.add_book(alice["id"], "Dune", "Frank Herbert")
    second = shelf.add_book(bob["id"], "dune", "frank herbert", page_count=500)
    queries = []

    def handler(request):
        queries.append((request.url.path, request.url.params["pageSize"]))
        return httpx.Response(200, json={"books": [
            {"title": "Dune", "isbn13": "9780441013593", "pages": 412, "synopsis": "Spice",
             "subjects": ["Fiction"]},
        ]})

    mock_http(handler)
    result = asyncio.run(_enricher("key").isbndb_backfill())
    assert len(queries) == 1
    assert queries[0][1] == "1"
    assert result["processed"] == 1
    assert result["updated"] == 1
    assert result["propagated"] == 1
    assert result["remaining"] == 0

    assert shelf.get_book(first.id).page_count == 412
    copy = shelf.get_book(second.id)
    assert copy.page_count == 500
    assert copy.isbn == "9780441013593"

    conn = get_db_connection()
    assert conn.execute("SELECT COUNT(*) FROM books WHERE isbndb_attempted_at IS NULL").fetchone()[0] == 0
    conn.close()

    assert asyncio.run(_enricher("key").isbndb_backfill())["message"] == "All books have been processed"


def test_isbndb_backfill_rate_limit_counts_as_not_found(mock_http, shelf, make_user):
    alice = make_user("alice")
    shelf.add_book(alice["id"], "Dune", "Frank Herbert")
    mock_http(lambda request: httpx.Response(429))
    result = asyncio.run(_enricher("key").isbndb_backfill())
    assert result["notFound"] == 1
    assert result["updated"] == 0


# ------------------------- Covers ------------------------- #
def test_refresh_covers(mock_http, shelf, make_user):
    alice = make_user("alice")
    missing = shelf.add_book(alice["id"], "Dune", "Frank Herbert")
    good = shelf.add_book(alice["id"], "Emma", "Jane Austen", cover_url="https://covers.openlibrary.org/b/id/1-M.jpg")
    nothing = shelf.add_book(alice["id"], "Unfindable", "Nobody", cover_url="/placeholder.svg")

    def handler(request):
        query = request.url.params.get("q", "")
        if "Unfindable" in query:
            return httpx.Response(200, json={})
        return httpx.Response(200, json={"items": [GOOGLE_VOLUME]})

    mock_http(handler)
    result = asyncio.run(_enricher().refresh_covers(alice["id"]))
    assert result["processed"] == 2
    assert result["updated"] == 1
    assert "edge=curl" in shelf.get_book(missing.id).cover_url
    assert shelf.get_book(good.id).cover_url == "https://covers.openlibrary.org/b/id/1-M.jpg"
    assert shelf.get_book(nothing.id).cover_url == "/placeholder.svg"


def test_refresh_covers_limited_to_given_ids(mock_http, shelf, make_user):
    alice = make_user("alice")
    first = shelf.add_book(alice["id"], "Dune", "Frank Herbert")
    shelf.add_book(alice["id"], "Emma", "Jane Austen")
    mock_http(lambda request: httpx.Response(200, json={"items": [GOOGLE_VOLUME]}))

    result = asyncio.run(_enricher().refresh_covers(alice["id"], book_ids=[first.id]))
    assert [r["id"] for r in result["results"]] == [first.id]


def test_refresh_covers_survives_non_json_isbndb(mock_http, shelf, make_user):
    alice = make_user("alice")
    dune = shelf.add_book(alice["id"], "Dune", "Frank Herbert")

    def handler(request):
        if request.url.host == "api2.isbndb.com":
            return httpx.Response(200, text="<html>maintenance</html>")
        return httpx.Response(200, json={"items": [GOOGLE_VOLUME]})

    mock_http(handler)
    result = asyncio.run(_enricher("key").refresh_covers(alice["id"]))
    assert result["updated"] == 1
    assert "edge=curl" in shelf.get_book(dune.id).cover_url
