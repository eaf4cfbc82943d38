import httpx
import pytest
from fastapi.testclient import TestClient

from shelvy import __version__, api
from shelvy.config import settings


@pytest.fixture
def client(monkeypatch):
    # Keep follow/recommendation handlers from reaching the email provider
    monkeypatch.setattr(settings, "enable_email_notifications", False)
    return TestClient(api.app)


@pytest.fixture
def signup(client):
    """Create an account through the API; returns (user, auth headers)."""
    def _signup(name: str):
        response = client.post("/auth/signup", json={
            "email": f"{name}@example.com", "password": "secret123", "username": name,
        })
        assert response.status_code == 201
        data = response.json()
        return data["user"], {"Authorization": f"Bearer {data['access_token']}"}
    return _signup


def _admin(signup, name="admin"):
    user, headers = signup(name)
    api.accounts.grant_role(user["id"], "admin")
    return user, headers


# ------------------------- Health and auth ------------------------- #
def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["db"] is True
    assert "hits" in data["cache"]
    assert data["version"] == __version__ == api.app.version
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_requests_without_token_are_unauthorized(client):
    assert client.get("/books").status_code == 401
    assert client.get("/books", headers={"Authorization": "Bearer nope"}).status_code == 401
    assert client.get("/auth/me", headers={"Authorization": "Token abc"}).status_code == 401


def test_signup_login_logout(client, signup):
    user, headers = signup("alice")
    me = client.get("/auth/me", headers=headers).json()
    assert me["email"] == "alice@example.com"
    assert me["is_admin"] is False

    duplicate = client.post("/auth/signup", json={"email": "alice@example.com", "password": "secret123"})
    assert duplicate.status_code == 400

    assert client.post("/auth/login", json={"email": "alice@example.com", "password": "wrong"}).status_code == 401
    login = client.post("/auth/login", json={"email": "alice@example.com", "password": "secret123"})
    assert login.status_code == 200
    assert login.json()["user"]["id"] == user["id"]

    assert client.post("/auth/logout", headers=headers).json() == {"success": True}
    assert client.get("/auth/me", headers=headers).status_code == 401


def test_delete_account(client, signup):
    _, headers = signup("alice")
    response = client.delete("/account", headers=headers)
    assert response.json() == {"success": True, "message": "Account deleted successfully"}
    assert client.get("/books", headers=headers).status_code == 401


# ------------------------- Books and shelf ------------------------- #
def test_book_crud_and_stats(client, signup):
    _, headers = signup("alice")
    created = client.post("/books", headers=headers, json={
        "title": "Dune", "author": "Frank Herbert", "isbn": "9780441013593", "page_count": 412,
    })
    assert created.status_code == 201
    book = created.json()
    assert book["status"] == "want-to-read"
    assert book["amazon_url"] == "https://www.amazon.com/dp/0441013597/?tag=shelvybooks-20"

    moved = client.post(f"/books/{book['id']}/move", headers=headers, json={"status": "read"})
    assert moved.json()["completed_at"] is not None

    patched = client.patch(f"/books/{book['id']}", headers=headers, json={"title": "Dune (Deluxe)"})
    assert patched.json()["title"] == "Dune (Deluxe)"
    assert patched.json()["completed_at"] is not None

    cleared = client.patch(f"/books/{book['id']}", headers=headers, json={"completed_at": None})
    assert cleared.json()["completed_at"] is None

    stats = client.get("/books/stats", headers=headers).json()
    assert stats["total"] == 1
    assert stats["read"] == 1
    assert stats["pages_read"] == 412

    assert client.post(f"/books/{book['id']}/move", headers=headers, json={"status": "lost"}).status_code == 400
    assert client.delete(f"/books/{book['id']}", headers=headers).json() == {"success": True}
    assert client.get(f"/books/{book['id']}", headers=headers).status_code == 404


def test_book_validation(client, signup):
    _, headers = signup("alice")
    assert client.post("/books", headers=headers, json={"title": "  ", "author": "x"}).status_code == 400
    assert client.post("/books", headers=headers, json={"title": "x", "author": "y", "page_count": -1}).status_code == 422


def test_other_users_books_follow_profile_visibility(client, signup):
    _, alice = signup("alice")
    _, bob = signup("bob")
    book = client.post("/books", headers=alice, json={"title": "Dune", "author": "Frank Herbert"}).json()

    assert client.get(f"/books/{book['id']}", headers=bob).status_code == 200
    client.patch("/shelf/settings", headers=alice, json={"is_public": False})
    assert client.get(f"/books/{book['id']}", headers=bob).status_code == 403
    assert client.patch(f"/books/{book['id']}", headers=bob, json={"title": "Mine"}).status_code == 403


def test_public_shelf_by_share_id(client, signup):
    _, headers = signup("alice")
    client.post("/books", headers=headers, json={"title": "Dune", "author": "Frank Herbert"})
    share_id = client.get("/shelf/settings", headers=headers).json()["share_id"]

    shelf = client.get(f"/shelf/{share_id}").json()
    assert shelf["username"] == "alice"
    assert [b["title"] for b in shelf["books"]] == ["Dune"]

    new_id = client.post("/shelf/share-id", headers=headers).json()["share_id"]
    assert new_id != share_id
    assert client.get(f"/shelf/{share_id}").status_code == 404

    client.patch("/shelf/settings", headers=headers, json={"is_public": False})
    assert client.get(f"/shelf/{new_id}").status_code == 404
    assert client.patch("/shelf/settings", headers=headers, json={"shelf_skin": "marble"}).status_code == 400


# ------------------------- Social ------------------------- #
def test_follow_like_comment_flow(client, signup):
    alice_user, alice = signup("alice")
    bob_user, bob = signup("bob")
    book = client.post("/books", headers=alice, json={"title": "Dune", "author": "Frank Herbert"}).json()

    assert client.post(f"/users/{alice_user['id']}/follow", headers=bob).json() == {"following": True}
    assert client.post(f"/users/{bob_user['id']}/follow", headers=bob).status_code == 400
    followers = client.get(f"/users/{alice_user['id']}/followers", headers=alice).json()
    assert [f["username"] for f in followers] == ["bob"]

    liked = client.post(f"/books/{book['id']}/like", headers=bob).json()
    assert liked == {"book_id": book["id"], "count": 1, "liked": True}
    assert client.get(f"/books/{book['id']}/likes").json()["liked"] is False

    comment = client.post(f"/books/{book['id']}/comments", headers=bob, json={"content": "Great"})
    assert comment.status_code == 201
    assert client.delete(f"/comments/{comment.json()['id']}", headers=alice).status_code == 403

    summary = client.get("/notifications", headers=alice).json()
    assert summary["total"] == 2
    client.post("/notifications/seen", headers=alice, json={})
    assert client.get("/notifications", headers=alice).json()["total"] == 0


def test_notes_and_private_profiles(client, signup):
    alice_user, alice = signup("alice")
    book = client.post("/books", headers=alice, json={"title": "Dune", "author": "Frank Herbert"}).json()

    note = client.put(f"/books/{book['id']}/note", headers=alice, json={"content": "Start here", "color": "pink"})
    assert note.json()["note"]["color"] == "pink"
    assert client.get(f"/books/{book['id']}/note").json()["note"]["content"] == "Start here"

    client.patch("/shelf/settings", headers=alice, json={"is_public": False})
    assert client.get(f"/books/{book['id']}/note").status_code == 403
    assert client.get(f"/profiles/{alice_user['id']}").status_code == 403
    assert client.get(f"/profiles/{alice_user['id']}", headers=alice).status_code == 200


def test_recommendation_round_trip(client, signup):
    alice_user, alice = signup("alice")
    _, bob = signup("bob")
    rec = client.post("/recommendations", headers=bob, json={
        "to_user_id": alice_user["id"], "title": "Emma", "author": "Jane Austen", "message": "Trust me",
    })
    assert rec.status_code == 201
    assert "emailSent" not in rec.json()

    pending = client.get("/recommendations", headers=alice, params={"status": "pending"}).json()
    assert len(pending) == 1
    answered = client.post(f"/recommendations/{pending[0]['id']}/respond", headers=alice, json={"accept": True})
    assert answered.json()["book"]["title"] == "Emma"
    assert [b["title"] for b in client.get("/books", headers=alice).json()] == ["Emma"]


def test_find_user(client, signup):
    _, alice = signup("alice")
    signup("bobby")
    assert [r["username"] for r in client.get("/users/find", headers=alice, params={"q": "bob"}).json()["results"]] == ["bobby"]
    assert client.post("/functions/find-user", headers=alice, json={"query": "b"}).status_code == 400


# ------------------------- Clubs ------------------------- #
def test_club_flow(client, signup):
    _, owner = signup("owner")
    _, member = signup("member")
    club = client.post("/clubs", headers=owner, json={"name": "Sunday Readers"}).json()

    assert client.get(f"/clubs/invite/{club['invite_code']}").json() == {"id": club["id"], "name": "Sunday Readers"}
    assert client.get(f"/clubs/{club['id']}", headers=member).status_code == 403
    client.post("/clubs/join", headers=member, json={"invite_code": club["invite_code"]})
    assert len(client.get(f"/clubs/{club['id']}/members", headers=member).json()) == 2

    suggestion = client.post(f"/clubs/{club['id']}/suggestions", headers=member,
                             json={"title": "Dune", "author": "Frank Herbert"}).json()
    assert client.post(f"/suggestions/{suggestion['id']}/vote", headers=owner).json() == {"voted": True}
    assert client.patch(f"/suggestions/{suggestion['id']}/status", headers=member,
                        json={"status": "read"}).status_code == 403
    client.patch(f"/suggestions/{suggestion['id']}/status", headers=owner, json={"status": "read"})

    reflection = client.put(f"/suggestions/{suggestion['id']}/reflections", headers=member,
                            json={"rating": 5, "content": "Loved it"})
    assert reflection.status_code == 200
    assert len(client.get(f"/suggestions/{suggestion['id']}/reflections", headers=owner).json()) == 1

    assert client.post(f"/clubs/{club['id']}/leave", headers=owner).status_code == 400
    assert client.delete(f"/clubs/{club['id']}", headers=owner).json() == {"success": True}


# ------------------------- Functions ------------------------- #
def test_book_cache_needs_no_auth(client, signup):
    _, headers = signup("alice")
    client.post("/books", headers=headers, json={
        "title": "Dune", "author": "Frank Herbert", "cover_url": "https://img.test/dune.jpg",
    })
    result = client.post("/functions/book-cache", json={"query": "dune"}).json()
    assert result["hit"] is True
    assert result["items"][0]["volumeInfo"]["title"] == "Dune"


def test_isbndb_search_without_key(client, monkeypatch):
    monkeypatch.setattr(api.book_search.isbndb, "api_key", None)
    response = client.post("/functions/isbndb-search", json={"query": "dune"})
    assert response.status_code == 500
    assert response.json()["items"] == []


def test_enrich_book_requires_title(client, signup, monkeypatch):
    _, headers = signup("alice")
    monkeypatch.setattr(api.enricher.isbndb, "api_key", "key")
    response = client.post("/functions/enrich-book", headers=headers, json={"author": "Frank Herbert"})
    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Title is required"}


def test_batch_jobs_need_admin(client, signup, monkeypatch):
    monkeypatch.setattr(settings, "admin_key", "s3cret")
    _, headers = signup("alice")
    assert client.post("/functions/backfill-all-metadata").status_code == 401
    assert client.post("/functions/backfill-all-metadata", headers=headers).status_code == 403
    assert client.post("/functions/backfill-all-metadata", headers={"x-admin-key": "wrong"}).status_code == 401

    response = client.post("/functions/backfill-all-metadata", headers={"x-admin-key": "s3cret"})
    assert response.status_code == 200
    assert response.json() == {"message": "All books already have metadata", "updated": 0}


def test_isbndb_backfill_for_admin_without_key(client, signup, monkeypatch):
    monkeypatch.setattr(api.enricher.isbndb, "api_key", None)
    _, headers = _admin(signup)
    response = client.post("/functions/isbndb-backfill", headers=headers, json={"limit": 5})
    assert response.status_code == 500
    assert response.json()["detail"] == "ISBNDB_API_KEY not configured"


def test_ai_endpoints_disabled(client, monkeypatch):
    monkeypatch.setattr(settings, "enable_ai_features", False)
    assert client.post("/functions/book-recommender", json={"books": []}).status_code == 503
    assert client.post("/functions/generate-quote").status_code == 503


def test_book_recommender_rejects_empty_shelf(client, monkeypatch):
    monkeypatch.setattr(settings, "enable_ai_features", True)
    response = client.post("/functions/book-recommender", json={"books": []})
    assert response.status_code == 400
    assert "cannot be empty" in response.json()["error"]


def test_nyt_bestsellers(client, mock_http, monkeypatch):
    monkeypatch.setattr(settings, "nyt_books_api_key", "nyt")
    mock_http(lambda request: httpx.Response(200, json={"results": {"lists": [
        {"list_name": "Combined Print and E-Book Fiction", "books": [{"title": "DUNE", "rank": 1}]},
        {"list_name": "Graphic Books and Manga", "books": []},
    ]}}))
    ok = client.post("/functions/nyt-bestsellers", json={})
    assert ok.json()["listName"] == "Combined Print and E-Book Fiction"
    assert ok.json()["books"][0]["title"] == "DUNE"

    missing = client.post("/functions/nyt-bestsellers", json={"listName": "poetry"})
    assert missing.status_code == 200
    assert missing.json()["listName"] == "Combined Print and E-Book Fiction"


def test_nyt_bestsellers_errors(client, mock_http, monkeypatch):
    monkeypatch.setattr(settings, "nyt_books_api_key", None)
    unconfigured = client.post("/functions/nyt-bestsellers", json={})
    assert unconfigured.status_code == 500
    assert unconfigured.json()["success"] is False

    monkeypatch.setattr(settings, "nyt_books_api_key", "nyt")
    mock_http(lambda request: httpx.Response(200, json={"results": {"lists": [{"list_name": "Graphic Books and Manga"}]}}))
    assert client.post("/functions/nyt-bestsellers", json={"listName": "poetry"}).status_code == 404


def test_admin_users(client, signup):
    _, alice = signup("alice")
    assert client.get("/functions/admin-users", headers=alice).status_code == 403
    _, admin = _admin(signup)
    users = client.get("/functions/admin-users", headers=admin).json()["users"]
    assert {u["email"] for u in users} == {"alice@example.com", "admin@example.com"}


def test_send_invite_failure(client, signup):
    _, headers = signup("alice")
    response = client.post("/functions/send-invite", headers=headers, json={
        "recipientEmail": "carol@example.com", "senderName": "alice",
    })
    assert response.status_code == 500
    assert response.json()["detail"] == "Failed to send email"
    assert client.post("/functions/send-invite", headers=headers, json={"senderName": "alice"}).status_code == 400
