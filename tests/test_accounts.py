import asyncio
import json

import httpx
import pytest

from shelvy.accounts import AccountManager, hash_password, verify_password
from shelvy.config import settings
from shelvy.database import get_db_connection, utc_now
from shelvy.services.email_service import EmailService
from shelvy.shelf import Shelf
from shelvy.social import SocialGraph


def test_hash_and_verify_password():
    encoded = hash_password("correct horse", iterations=1000)
    assert encoded.startswith("pbkdf2_sha256$1000$")
    assert verify_password("correct horse", encoded)
    assert not verify_password("wrong horse", encoded)
    assert not verify_password("correct horse", "garbage")


def test_sign_up_creates_profile_shelf_and_notification_rows(accounts):
    user = accounts.sign_up("  Reader@Example.com ", "secret123")
    assert user["email"] == "reader@example.com"

    conn = get_db_connection()
    try:
        profile = conn.execute("SELECT username FROM profiles WHERE user_id = ?", (user["id"],)).fetchone()
        shelf = conn.execute("SELECT is_public, share_id FROM shelf_settings WHERE user_id = ?", (user["id"],)).fetchone()
        seen = conn.execute("SELECT 1 FROM notification_settings WHERE user_id = ?", (user["id"],)).fetchone()
    finally:
        conn.close()
    assert profile["username"] == "reader"
    assert shelf["is_public"] == 1
    assert len(shelf["share_id"]) == 12
    assert seen is not None


def test_sign_up_rejects_duplicates_and_bad_input(accounts):
    accounts.sign_up("a@example.com", "secret123")
    with pytest.raises(ValueError, match="already exists"):
        accounts.sign_up("A@example.com", "secret123")
    with pytest.raises(ValueError, match="Invalid email format"):
        accounts.sign_up("not-an-email", "secret123")
    with pytest.raises(ValueError, match="Email is required"):
        accounts.sign_up("", "secret123")
    with pytest.raises(ValueError, match="at least"):
        accounts.sign_up("b@example.com", "123")


def test_sign_in_resolve_and_sign_out(accounts, make_user):
    user = make_user("alice")
    token = accounts.sign_in("alice@example.com", "secret123")
    assert accounts.resolve_token(token)["id"] == user["id"]

    with pytest.raises(PermissionError, match="Invalid login credentials"):
        accounts.sign_in("alice@example.com", "wrong-password")
    with pytest.raises(PermissionError):
        accounts.sign_in("nobody@example.com", "secret123")

    accounts.sign_out(token)
    assert accounts.resolve_token(token) is None
    assert accounts.resolve_token(None) is None


def test_expired_session_is_removed(accounts, make_user):
    make_user("alice")
    token = accounts.sign_in("alice@example.com", "secret123")
    conn = get_db_connection()
    conn.execute("UPDATE sessions SET expires_at = ?", ("2000-01-01T00:00:00+00:00",))
    conn.commit()
    conn.close()

    assert accounts.resolve_token(token) is None
    conn = get_db_connection()
    assert conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0] == 0
    conn.close()


def test_roles(accounts, make_user):
    user = make_user("alice")
    assert not accounts.has_role(user["id"], "admin")
    accounts.grant_role(user["id"], "admin")
    accounts.grant_role(user["id"], "admin")
    assert accounts.has_role(user["id"], "admin")
    with pytest.raises(ValueError):
        accounts.grant_role(user["id"], "superuser")
    with pytest.raises(LookupError):
        accounts.grant_role("missing", "admin")


def test_list_users_newest_first(accounts, make_user):
    make_user("first")
    make_user("second")
    assert [u["email"] for u in accounts.list_users()] == ["second@example.com", "first@example.com"]


def test_password_reset_flow(make_user, mock_http, monkeypatch):
    monkeypatch.setattr(settings, "enable_email_notifications", True)
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "email-1"})

    mock_http(handler)
    accounts = AccountManager(EmailService(api_key="re_test"))
    make_user("alice")
    old_token = accounts.sign_in("alice@example.com", "secret123")

    result = asyncio.run(accounts.request_password_reset("alice@example.com", "https://app.test/reset"))
    assert result == {"success": True}
    assert sent[0]["to"] == ["alice@example.com"]
    html = sent[0]["html"]
    link_start = html.index("https://app.test/reset?token=")
    token = html[link_start:].split('"')[0].split("token=")[1]

    accounts.complete_password_reset(token, "new-secret")
    assert accounts.resolve_token(old_token) is None
    assert accounts.sign_in("alice@example.com", "new-secret")
    with pytest.raises(ValueError, match="Invalid or expired reset token"):
        accounts.complete_password_reset(token, "another-secret")


def test_password_reset_for_unknown_email_still_succeeds(accounts, mock_http):
    def handler(request):
        raise AssertionError("no email should be sent")

    mock_http(handler)
    assert asyncio.run(accounts.request_password_reset("ghost@example.com")) == {"success": True}


def test_password_reset_survives_email_failure(make_user, mock_http, monkeypatch):
    monkeypatch.setattr(settings, "enable_email_notifications", True)
    mock_http(lambda request: httpx.Response(500, text="boom"))
    accounts = AccountManager(EmailService(api_key="re_test"))
    make_user("alice")
    assert asyncio.run(accounts.request_password_reset("alice@example.com")) == {"success": True}


def test_migration_password(accounts, make_user):
    user = make_user("alice")
    conn = get_db_connection()
    conn.execute(
        "INSERT INTO migration_pending (user_id, email, created_at) VALUES (?, ?, ?)",
        (user["id"], "alice@example.com", utc_now()),
    )
    conn.commit()
    conn.close()

    with pytest.raises(ValueError, match="Email and password are required"):
        accounts.set_migration_password("alice@example.com", "")
    accounts.set_migration_password("alice@example.com", "migrated-pw")
    assert accounts.sign_in("alice@example.com", "migrated-pw")
    with pytest.raises(LookupError, match="No pending migration"):
        accounts.set_migration_password("alice@example.com", "migrated-pw")


def test_delete_account_removes_everything(accounts, make_user):
    alice = make_user("alice")
    bob = make_user("bob")
    shelf = Shelf()
    social = SocialGraph(shelf)
    book = shelf.add_book(alice["id"], "Dune", "Frank Herbert")
    bobs_book = shelf.add_book(bob["id"], "Emma", "Jane Austen")
    social.like_book(alice["id"], bobs_book.id)
    social.add_comment(alice["id"], bobs_book.id, "Lovely")
    social.follow(alice["id"], bob["id"])
    social.follow(bob["id"], alice["id"])
    social.send_recommendation(bob["id"], alice["id"], "Emma", "Jane Austen")
    token = accounts.sign_in("alice@example.com", "secret123")

    accounts.delete_account(alice["id"])

    conn = get_db_connection()
    try:
        for table, column in (("books", "user_id"), ("book_likes", "user_id"), ("book_comments", "user_id"),
                              ("follows", "follower_id"), ("follows", "following_id"),
                              ("book_recommendations", "to_user_id"), ("profiles", "user_id"),
                              ("shelf_settings", "user_id"), ("users", "id")):
            count = conn.execute(f"SELECT COUNT(*) FROM {table} WHERE {column} = ?", (alice["id"],)).fetchone()[0]
            assert count == 0, table
        assert conn.execute("SELECT COUNT(*) FROM books WHERE id = ?", (book.id,)).fetchone()[0] == 0
        assert conn.execute("SELECT COUNT(*) FROM books WHERE id = ?", (bobs_book.id,)).fetchone()[0] == 1
    finally:
        conn.close()
    assert accounts.resolve_token(token) is None

    with pytest.raises(LookupError):
        accounts.delete_account(alice["id"])
