import pytest

from shelvy.clubs import ClubManager
from shelvy.shelf import Shelf
from shelvy.social import SocialGraph


@pytest.fixture
def shelf():
    return Shelf()


@pytest.fixture
def social(shelf):
    return SocialGraph(shelf)


@pytest.fixture
def users(make_user):
    return make_user("alice"), make_user("bob")


# ------------------------- Profiles ------------------------- #
def test_private_profile_visibility(social, shelf, users, make_user):
    alice, bob = users
    shelf.update_settings(alice["id"], is_public=False)

    assert social.can_view_profile(alice["id"], alice["id"])
    assert not social.can_view_profile(bob["id"], alice["id"])
    assert not social.can_view_profile(None, alice["id"])
    with pytest.raises(PermissionError, match="This profile is private"):
        social.get_profile(bob["id"], alice["id"])

    own = social.get_profile(alice["id"], alice["id"])
    assert own["is_public"] is False
    assert own["share_id"] is not None


def test_shared_club_membership_grants_profile_access(social, shelf, users):
    alice, bob = users
    shelf.update_settings(alice["id"], is_public=False)
    clubs = ClubManager()
    club = clubs.create_club(alice["id"], "Readers")
    clubs.join_club(bob["id"], club["invite_code"])

    assert social.can_view_profile(bob["id"], alice["id"])
    assert social.get_profile(bob["id"], alice["id"])["share_id"] is None


def test_update_profile(social, users):
    alice, _ = users
    profile = social.update_profile(alice["id"], username="  Alice ", avatar_url="https://img.test/a.png")
    assert profile["username"] == "Alice"
    assert profile["avatar_url"] == "https://img.test/a.png"
    with pytest.raises(ValueError):
        social.update_profile(alice["id"], username="x" * 31)
    with pytest.raises(LookupError):
        social.get_profile(alice["id"], "missing")


# ------------------------- Follows ------------------------- #
def test_follow_and_unfollow(social, users):
    alice, bob = users
    assert social.follow(alice["id"], bob["id"]) is True
    assert social.follow(alice["id"], bob["id"]) is False
    assert social.is_following(alice["id"], bob["id"])

    followers = social.list_followers(bob["id"])
    assert [f["username"] for f in followers] == ["alice"]
    assert [f["username"] for f in social.list_following(alice["id"])] == ["bob"]

    social.unfollow(alice["id"], bob["id"])
    assert not social.is_following(alice["id"], bob["id"])


def test_follow_rejects_self_and_unknown(social, users):
    alice, _ = users
    with pytest.raises(ValueError, match="cannot follow yourself"):
        social.follow(alice["id"], alice["id"])
    with pytest.raises(LookupError, match="User not found"):
        social.follow(alice["id"], "missing")


def test_follow_list_hides_private_share_ids(social, shelf, users):
    alice, bob = users
    shelf.update_settings(bob["id"], is_public=False)
    social.follow(alice["id"], bob["id"])
    assert social.list_following(alice["id"])[0]["share_id"] is None


# ------------------------- Likes, comments and notes ------------------------- #
def test_likes(social, shelf, users):
    alice, bob = users
    book = shelf.add_book(alice["id"], "Dune", "Frank Herbert")
    social.like_book(bob["id"], book.id)
    social.like_book(bob["id"], book.id)

    assert social.like_summary(book.id, bob["id"]) == {"book_id": book.id, "count": 1, "liked": True}
    assert social.like_summary(book.id, alice["id"])["liked"] is False
    social.unlike_book(bob["id"], book.id)
    assert social.like_summary(book.id)["count"] == 0
    with pytest.raises(LookupError):
        social.like_book(bob["id"], "missing")


def test_comments(social, shelf, users):
    alice, bob = users
    book = shelf.add_book(alice["id"], "Dune", "Frank Herbert")
    comment = social.add_comment(bob["id"], book.id, "  Spice must flow  ")
    assert comment["content"] == "Spice must flow"
    assert comment["username"] == "bob"
    assert [c["content"] for c in social.list_comments(book.id)] == ["Spice must flow"]

    with pytest.raises(ValueError):
        social.add_comment(bob["id"], book.id, "x" * 501)
    with pytest.raises(PermissionError):
        social.delete_comment(alice["id"], comment["id"])
    social.delete_comment(bob["id"], comment["id"])
    assert social.list_comments(book.id) == []
    with pytest.raises(LookupError):
        social.delete_comment(bob["id"], comment["id"])


def test_notes(social, shelf, users):
    alice, bob = users
    book = shelf.add_book(alice["id"], "Dune", "Frank Herbert")

    note = social.upsert_note(alice["id"], book.id, "Read this first!", "pink")
    assert note["color"] == "pink"
    note = social.upsert_note(alice["id"], book.id, "Changed my mind", "blue")
    assert note["content"] == "Changed my mind"

    assert social.get_note(bob["id"], book.id)["content"] == "Changed my mind"
    with pytest.raises(PermissionError):
        social.upsert_note(bob["id"], book.id, "Not my book")

    shelf.update_settings(alice["id"], is_public=False)
    with pytest.raises(PermissionError):
        social.get_note(bob["id"], book.id)

    social.delete_note(alice["id"], book.id)
    assert social.get_note(alice["id"], book.id) is None


def test_notes_on_private_shelf_visible_to_club_members(social, shelf, users):
    alice, bob = users
    book = shelf.add_book(alice["id"], "Dune", "Frank Herbert")
    social.upsert_note(alice["id"], book.id, "Read this first!")
    shelf.update_settings(alice["id"], is_public=False)
    with pytest.raises(PermissionError):
        social.get_note(bob["id"], book.id)

    clubs = ClubManager()
    club = clubs.create_club(alice["id"], "Readers")
    clubs.join_club(bob["id"], club["invite_code"])
    assert social.get_note(bob["id"], book.id)["content"] == "Read this first!"


# ------------------------- Recommendations ------------------------- #
def test_accepting_a_recommendation_adds_the_book(social, shelf, users):
    alice, bob = users
    rec = social.send_recommendation(bob["id"], alice["id"], "Emma", "Jane Austen",
                                     message="You will love it", categories=["Classics"], page_count=474)
    assert rec["status"] == "pending"
    assert rec["from_username"] == "bob"
    assert [r["id"] for r in social.list_recommendations(alice["id"], "pending")] == [rec["id"]]

    result = social.respond_recommendation(alice["id"], rec["id"], accept=True)
    assert result["status"] == "accepted"
    assert result["book"]["status"] == "want-to-read"
    assert result["book"]["description"] == '💌 Recommended by bob: "You will love it"'
    assert result["book"]["categories"] == ["Classics"]
    assert [b.title for b in shelf.list_books(alice["id"])] == ["Emma"]

    with pytest.raises(ValueError, match="already been answered"):
        social.respond_recommendation(alice["id"], rec["id"], accept=False)


def test_declining_a_recommendation(social, shelf, users):
    alice, bob = users
    rec = social.send_recommendation(bob["id"], alice["id"], "Emma", "Jane Austen")
    with pytest.raises(PermissionError):
        social.respond_recommendation(bob["id"], rec["id"], accept=True)

    result = social.respond_recommendation(alice["id"], rec["id"], accept=False)
    assert result["status"] == "declined"
    assert result["book"] is None
    assert shelf.list_books(alice["id"]) == []


def test_recommendation_validation(social, users):
    alice, bob = users
    with pytest.raises(ValueError):
        social.send_recommendation(alice["id"], alice["id"], "Emma", "Jane Austen")
    with pytest.raises(LookupError):
        social.send_recommendation(alice["id"], "missing", "Emma", "Jane Austen")
    with pytest.raises(ValueError):
        social.list_recommendations(alice["id"], "maybe")


# ------------------------- Notifications ------------------------- #
def test_notification_summary_and_mark_seen(social, shelf, users):
    alice, bob = users
    book = shelf.add_book(alice["id"], "Dune", "Frank Herbert")
    social.like_book(bob["id"], book.id)
    social.like_book(alice["id"], book.id)
    social.follow(bob["id"], alice["id"])
    social.send_recommendation(bob["id"], alice["id"], "Emma", "Jane Austen")

    summary = social.notification_summary(alice["id"])
    assert len(summary["likes"]) == 1
    assert summary["likes"][0]["username"] == "bob"
    assert len(summary["followers"]) == 1
    assert len(summary["recommendations"]) == 1
    assert summary["total"] == 3

    social.mark_seen(alice["id"], "likes")
    assert social.notification_summary(alice["id"])["total"] == 2
    social.mark_seen(alice["id"])
    assert social.notification_summary(alice["id"])["total"] == 0
    with pytest.raises(ValueError):
        social.mark_seen(alice["id"], "comments")


# ------------------------- User search ------------------------- #
def test_find_user_by_username_and_email(social, shelf, users, make_user):
    alice, bob = users
    make_user("bobby")
    shelf.update_settings(alice["id"], is_public=False)

    results = social.find_user(alice["id"], "BOB")
    assert [r["username"] for r in results] == ["bob", "bobby"]
    assert all(r["matchedBy"] == "username" for r in results)

    by_email = social.find_user(bob["id"], "bobby@example.com")
    assert by_email[-1]["matchedBy"] == "email"

    assert social.find_user(bob["id"], "alice") == []
    with pytest.raises(ValueError, match="at least 2 characters"):
        social.find_user(alice["id"], "b")


def test_find_user_escapes_wildcards(social, users):
    alice, _ = users
    assert social.find_user(alice["id"], "%%") == []
