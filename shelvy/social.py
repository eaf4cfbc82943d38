import logging
import sqlite3
from typing import List, Optional, Dict, Any

from shelvy.book import Book, encode_list, decode_list
from shelvy.database import get_db_connection, new_id, utc_now
from shelvy.shelf import Shelf
from shelvy.utils.validators import TextValidator

logger = logging.getLogger(__name__)

MAX_USERNAME_LENGTH = 30
MAX_COMMENT_LENGTH = 500
MAX_NOTE_LENGTH = 200
MAX_RECOMMENDATION_MESSAGE = 500
FIND_USER_LIMIT = 10
NOTIFICATION_KINDS = ("likes", "followers", "recommendations")
RECOMMENDATION_STATUSES = ("pending", "accepted", "declined")


def _username(conn: sqlite3.Connection, user_id: str) -> Optional[str]:
    row = conn.execute("SELECT username FROM profiles WHERE user_id = ?", (user_id,)).fetchone()
    return row["username"] if row else None


def _recommendation_dict(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data["categories"] = decode_list(data.get("categories"))
    return data


class SocialGraph:
    """Profiles, follows, book interactions, recommendations and notification counters."""

    def __init__(self, shelf: Optional[Shelf] = None) -> None:
        self.shelf = shelf or Shelf()

    # ------------------------- Profiles ------------------------- #
    def can_view_profile(self, viewer_id: Optional[str], user_id: str) -> bool:
        """Own profile, a public shelf, or a club both users belong to."""
        if viewer_id and viewer_id == user_id:
            return True
        conn = get_db_connection()
        try:
            public = conn.execute(
                "SELECT 1 FROM shelf_settings WHERE user_id = ? AND is_public = 1", (user_id,)
            ).fetchone()
            if public:
                return True
            if not viewer_id:
                return False
            shared = conn.execute(
                """
                SELECT 1 FROM book_club_members a
                JOIN book_club_members b ON a.club_id = b.club_id
                WHERE a.user_id = ? AND b.user_id = ?
                LIMIT 1
                """,
                (viewer_id, user_id),
            ).fetchone()
            return shared is not None
        finally:
            conn.close()

    def get_profile(self, viewer_id: Optional[str], user_id: str) -> Dict[str, Any]:
        conn = get_db_connection()
        try:
            row = conn.execute(
                """
                SELECT p.user_id, p.username, p.avatar_url, p.created_at, s.is_public, s.share_id
                FROM profiles p LEFT JOIN shelf_settings s ON s.user_id = p.user_id
                WHERE p.user_id = ?
                """,
                (user_id,),
            ).fetchone()
        finally:
            conn.close()
        if not row:
            raise LookupError("Profile not found")
        if not self.can_view_profile(viewer_id, user_id):
            raise PermissionError("This profile is private")

        profile = dict(row)
        profile["is_public"] = bool(profile.get("is_public"))
        if not profile["is_public"] and viewer_id != user_id:
            profile["share_id"] = None
        return profile

    def update_profile(self, user_id: str, username: Optional[str] = None,
                       avatar_url: Optional[str] = None) -> Dict[str, Any]:
        updates: Dict[str, Any] = {}
        if username is not None:
            updates["username"] = TextValidator.require_text(username, "Username", max_length=MAX_USERNAME_LENGTH)
        if avatar_url is not None:
            updates["avatar_url"] = avatar_url.strip() or None
        if updates:
            assignments = ", ".join(f"{k} = ?" for k in updates)
            conn = get_db_connection()
            try:
                cursor = conn.execute(
                    f"UPDATE profiles SET {assignments}, updated_at = ? WHERE user_id = ?",
                    (*updates.values(), utc_now(), user_id),
                )
                conn.commit()
                if cursor.rowcount == 0:
                    raise LookupError("Profile not found")
            finally:
                conn.close()
        return self.get_profile(user_id, user_id)

    # ------------------------- Follows ------------------------- #
    def follow(self, follower_id: str, following_id: str) -> bool:
        """Follow a user. Returns False when the follow already existed."""
        if follower_id == following_id:
            raise ValueError("You cannot follow yourself")
        conn = get_db_connection()
        try:
            if not conn.execute("SELECT 1 FROM users WHERE id = ?", (following_id,)).fetchone():
                raise LookupError("User not found")
            cursor = conn.execute(
                "INSERT OR IGNORE INTO follows (id, follower_id, following_id, created_at) VALUES (?, ?, ?, ?)",
                (new_id(), follower_id, following_id, utc_now()),
            )
            conn.commit()
            created = cursor.rowcount > 0
        finally:
            conn.close()
        if created:
            logger.info(f"{follower_id} now follows {following_id}")
        return created

    def unfollow(self, follower_id: str, following_id: str) -> None:
        conn = get_db_connection()
        try:
            conn.execute(
                "DELETE FROM follows WHERE follower_id = ? AND following_id = ?", (follower_id, following_id)
            )
            conn.commit()
        finally:
            conn.close()

    def is_following(self, follower_id: str, following_id: str) -> bool:
        conn = get_db_connection()
        try:
            row = conn.execute(
                "SELECT 1 FROM follows WHERE follower_id = ? AND following_id = ?", (follower_id, following_id)
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def _follow_list(self, user_id: str, column: str, other: str) -> List[Dict[str, Any]]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                f"""
                SELECT f.{other} AS user_id, p.username, p.avatar_url, s.share_id, s.is_public,
                       f.created_at AS followed_at
                FROM follows f
                LEFT JOIN profiles p ON p.user_id = f.{other}
                LEFT JOIN shelf_settings s ON s.user_id = f.{other}
                WHERE f.{column} = ?
                ORDER BY f.created_at DESC
                """,
                (user_id,),
            ).fetchall()
        finally:
            conn.close()
        result = []
        for row in rows:
            entry = dict(row)
            entry["is_public"] = bool(entry.get("is_public"))
            if not entry["is_public"]:
                entry["share_id"] = None
            result.append(entry)
        return result

    def list_followers(self, user_id: str) -> List[Dict[str, Any]]:
        return self._follow_list(user_id, "following_id", "follower_id")

    def list_following(self, user_id: str) -> List[Dict[str, Any]]:
        return self._follow_list(user_id, "follower_id", "following_id")

    # ------------------------- Likes ------------------------- #
    def like_book(self, user_id: str, book_id: str) -> None:
        self.shelf.get_book(book_id)
        conn = get_db_connection()
        try:
            conn.execute(
                "INSERT OR IGNORE INTO book_likes (id, book_id, user_id, created_at) VALUES (?, ?, ?, ?)",
                (new_id(), book_id, user_id, utc_now()),
            )
            conn.commit()
        finally:
            conn.close()

    def unlike_book(self, user_id: str, book_id: str) -> None:
        conn = get_db_connection()
        try:
            conn.execute("DELETE FROM book_likes WHERE book_id = ? AND user_id = ?", (book_id, user_id))
            conn.commit()
        finally:
            conn.close()

    def like_summary(self, book_id: str, viewer_id: Optional[str] = None) -> Dict[str, Any]:
        conn = get_db_connection()
        try:
            count = conn.execute("SELECT COUNT(*) FROM book_likes WHERE book_id = ?", (book_id,)).fetchone()[0]
            liked = False
            if viewer_id:
                liked = conn.execute(
                    "SELECT 1 FROM book_likes WHERE book_id = ? AND user_id = ?", (book_id, viewer_id)
                ).fetchone() is not None
            return {"book_id": book_id, "count": count, "liked": liked}
        finally:
            conn.close()

    # ------------------------- Comments ------------------------- #
    def add_comment(self, user_id: str, book_id: str, content: str) -> Dict[str, Any]:
        content = TextValidator.require_text(content, "Comment", max_length=MAX_COMMENT_LENGTH)
        self.shelf.get_book(book_id)
        now = utc_now()
        comment = {"id": new_id(), "book_id": book_id, "user_id": user_id, "content": content,
                   "created_at": now, "updated_at": now}
        conn = get_db_connection()
        try:
            conn.execute(
                """
                INSERT INTO book_comments (id, book_id, user_id, content, created_at, updated_at)
                VALUES (:id, :book_id, :user_id, :content, :created_at, :updated_at)
                """,
                comment,
            )
            conn.commit()
            comment["username"] = _username(conn, user_id)
        finally:
            conn.close()
        return comment

    def list_comments(self, book_id: str) -> List[Dict[str, Any]]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                """
                SELECT c.*, p.username, p.avatar_url
                FROM book_comments c LEFT JOIN profiles p ON p.user_id = c.user_id
                WHERE c.book_id = ?
                ORDER BY c.created_at ASC
                """,
                (book_id,),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def delete_comment(self, user_id: str, comment_id: str) -> None:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT user_id FROM book_comments WHERE id = ?", (comment_id,)).fetchone()
            if not row:
                raise LookupError("Comment not found")
            if row["user_id"] != user_id:
                raise PermissionError("You can only delete your own comments")
            conn.execute("DELETE FROM book_comments WHERE id = ?", (comment_id,))
            conn.commit()
        finally:
            conn.close()

    # ------------------------- Notes ------------------------- #
    def upsert_note(self, user_id: str, book_id: str, content: str, color: str = "yellow") -> Dict[str, Any]:
        """Write the sticky note on one of the user's own books."""
        content = TextValidator.require_text(content, "Note", max_length=MAX_NOTE_LENGTH)
        book = self.shelf.get_book(book_id)
        if book.user_id != user_id:
            raise PermissionError("You can only add notes to books on your own shelf")
        now = utc_now()
        conn = get_db_connection()
        try:
            conn.execute(
                """
                INSERT INTO book_notes (id, book_id, user_id, content, color, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (book_id, user_id)
                DO UPDATE SET content = excluded.content, color = excluded.color, updated_at = excluded.updated_at
                """,
                (new_id(), book_id, user_id, content, color or "yellow", now, now),
            )
            conn.commit()
        finally:
            conn.close()
        return self.get_note(user_id, book_id)

    def get_note(self, viewer_id: Optional[str], book_id: str) -> Optional[Dict[str, Any]]:
        """The owner's note on a book, visible to whoever may see the owner's profile."""
        book = self.shelf.get_book(book_id)
        if not self.can_view_profile(viewer_id, book.user_id):
            raise PermissionError("This shelf is private")
        conn = get_db_connection()
        try:
            row = conn.execute(
                "SELECT * FROM book_notes WHERE book_id = ? AND user_id = ?", (book_id, book.user_id)
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def delete_note(self, user_id: str, book_id: str) -> None:
        conn = get_db_connection()
        try:
            conn.execute("DELETE FROM book_notes WHERE book_id = ? AND user_id = ?", (book_id, user_id))
            conn.commit()
        finally:
            conn.close()

    # ------------------------- Recommendations ------------------------- #
    def send_recommendation(self, from_user_id: str, to_user_id: str, title: str, author: str,
                            cover_url: Optional[str] = None, message: Optional[str] = None,
                            isbn: Optional[str] = None, description: Optional[str] = None,
                            categories: Optional[list] = None,
                            page_count: Optional[int] = None) -> Dict[str, Any]:
        if from_user_id == to_user_id:
            raise ValueError("You cannot recommend a book to yourself")
        title = TextValidator.require_text(title, "Title")
        author = TextValidator.require_text(author, "Author")
        if message is not None:
            message = message.strip()[:MAX_RECOMMENDATION_MESSAGE] or None

        rec = {
            "id": new_id(), "from_user_id": from_user_id, "to_user_id": to_user_id, "title": title,
            "author": author, "cover_url": cover_url, "message": message, "isbn": isbn,
            "description": description, "categories": encode_list(categories), "page_count": page_count,
            "created_at": utc_now(),
        }
        conn = get_db_connection()
        try:
            if not conn.execute("SELECT 1 FROM users WHERE id = ?", (to_user_id,)).fetchone():
                raise LookupError("Recipient not found")
            conn.execute(
                """
                INSERT INTO book_recommendations (
                    id, from_user_id, to_user_id, title, author, cover_url, message, isbn,
                    description, categories, page_count, status, created_at
                ) VALUES (
                    :id, :from_user_id, :to_user_id, :title, :author, :cover_url, :message, :isbn,
                    :description, :categories, :page_count, 'pending', :created_at
                )
                """,
                rec,
            )
            conn.commit()
        finally:
            conn.close()
        logger.info(f"{from_user_id} recommended '{title}' to {to_user_id}")
        return self.get_recommendation(rec["id"])

    def get_recommendation(self, rec_id: str) -> Dict[str, Any]:
        conn = get_db_connection()
        try:
            row = conn.execute(
                """
                SELECT r.*, p.username AS from_username
                FROM book_recommendations r LEFT JOIN profiles p ON p.user_id = r.from_user_id
                WHERE r.id = ?
                """,
                (rec_id,),
            ).fetchone()
        finally:
            conn.close()
        if not row:
            raise LookupError("Recommendation not found")
        return _recommendation_dict(row)

    def list_recommendations(self, user_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """Recommendations received by a user, newest first."""
        if status and status not in RECOMMENDATION_STATUSES:
            raise ValueError(f"Invalid recommendation status: {status}")
        sql = """
            SELECT r.*, p.username AS from_username
            FROM book_recommendations r LEFT JOIN profiles p ON p.user_id = r.from_user_id
            WHERE r.to_user_id = ?
        """
        params: list = [user_id]
        if status:
            sql += " AND r.status = ?"
            params.append(status)
        sql += " ORDER BY r.created_at DESC"
        conn = get_db_connection()
        try:
            return [_recommendation_dict(row) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def respond_recommendation(self, user_id: str, rec_id: str, accept: bool) -> Dict[str, Any]:
        """
        Accept or decline a pending recommendation.

        Accepting puts the book on the recipient's want-to-read shelf. The
        sender's message, when present, becomes the book description.
        """
        rec = self.get_recommendation(rec_id)
        if rec["to_user_id"] != user_id:
            raise PermissionError("This recommendation was not sent to you")
        if rec["status"] != "pending":
            raise ValueError("This recommendation has already been answered")

        book: Optional[Book] = None
        if accept:
            if rec.get("message"):
                description = f'💌 Recommended by {rec.get("from_username") or "a friend"}: "{rec["message"]}"'
            else:
                description = rec.get("description")
            book = self.shelf.add_book(
                user_id, rec["title"], rec["author"], status="want-to-read",
                cover_url=rec.get("cover_url"), page_count=rec.get("page_count"), isbn=rec.get("isbn"),
                description=description, categories=rec.get("categories"),
            )

        conn = get_db_connection()
        try:
            conn.execute(
                "UPDATE book_recommendations SET status = ?, responded_at = ? WHERE id = ?",
                ("accepted" if accept else "declined", utc_now(), rec_id),
            )
            conn.commit()
        finally:
            conn.close()

        result = self.get_recommendation(rec_id)
        result["book"] = book.to_dict() if book else None
        return result

    # ------------------------- Notifications ------------------------- #
    def _notification_settings(self, conn: sqlite3.Connection, user_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM notification_settings WHERE user_id = ?", (user_id,)).fetchone()
        if row:
            return row
        now = utc_now()
        conn.execute(
            """
            INSERT INTO notification_settings
                (user_id, last_seen_likes_at, last_seen_followers_at, last_seen_recommendations_at, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (user_id, now, now, now, now),
        )
        conn.commit()
        return conn.execute("SELECT * FROM notification_settings WHERE user_id = ?", (user_id,)).fetchone()

    def notification_summary(self, user_id: str) -> Dict[str, Any]:
        """What happened since the user last looked: likes by others, new followers, new recommendations."""
        conn = get_db_connection()
        try:
            seen = self._notification_settings(conn, user_id)
            likes = conn.execute(
                """
                SELECT l.id, l.book_id, b.title AS book_title, l.user_id, p.username, l.created_at
                FROM book_likes l
                JOIN books b ON b.id = l.book_id
                LEFT JOIN profiles p ON p.user_id = l.user_id
                WHERE b.user_id = ? AND l.user_id != ? AND l.created_at > ?
                ORDER BY l.created_at DESC
                """,
                (user_id, user_id, seen["last_seen_likes_at"]),
            ).fetchall()
            followers = conn.execute(
                """
                SELECT f.follower_id AS user_id, p.username, f.created_at
                FROM follows f LEFT JOIN profiles p ON p.user_id = f.follower_id
                WHERE f.following_id = ? AND f.created_at > ?
                ORDER BY f.created_at DESC
                """,
                (user_id, seen["last_seen_followers_at"]),
            ).fetchall()
            recommendations = conn.execute(
                """
                SELECT r.id, r.title, r.author, r.from_user_id, p.username AS from_username, r.created_at
                FROM book_recommendations r LEFT JOIN profiles p ON p.user_id = r.from_user_id
                WHERE r.to_user_id = ? AND r.status = 'pending' AND r.created_at > ?
                ORDER BY r.created_at DESC
                """,
                (user_id, seen["last_seen_recommendations_at"]),
            ).fetchall()
        finally:
            conn.close()

        return {
            "likes": [dict(r) for r in likes],
            "followers": [dict(r) for r in followers],
            "recommendations": [dict(r) for r in recommendations],
            "total": len(likes) + len(followers) + len(recommendations),
        }

    def mark_seen(self, user_id: str, kind: str = "all") -> None:
        kinds = NOTIFICATION_KINDS if kind == "all" else (kind,)
        if any(k not in NOTIFICATION_KINDS for k in kinds):
            raise ValueError(f"Unknown notification kind: {kind}")
        now = utc_now()
        conn = get_db_connection()
        try:
            self._notification_settings(conn, user_id)
            assignments = ", ".join(f"last_seen_{k}_at = ?" for k in kinds)
            conn.execute(
                f"UPDATE notification_settings SET {assignments} WHERE user_id = ?", (*([now] * len(kinds)), user_id)
            )
            conn.commit()
        finally:
            conn.close()

    # ------------------------- User search ------------------------- #
    def find_user(self, viewer_id: str, query: Any) -> List[Dict[str, Any]]:
        """Users with a public shelf whose username contains the query, or whose email is the query."""
        if not isinstance(query, str) or len(query.strip()) < 2:
            raise ValueError("Query must be at least 2 characters")
        query = query.strip()

        conn = get_db_connection()
        try:
            escaped = query.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            rows = conn.execute(
                """
                SELECT p.user_id, p.username, p.avatar_url, s.share_id
                FROM profiles p JOIN shelf_settings s ON s.user_id = p.user_id
                WHERE LOWER(p.username) LIKE ? ESCAPE '\\' AND p.user_id != ? AND s.is_public = 1
                ORDER BY p.username
                LIMIT ?
                """,
                (f"%{escaped}%", viewer_id, FIND_USER_LIMIT),
            ).fetchall()
            results = [
                {"userId": r["user_id"], "username": r["username"], "avatarUrl": r["avatar_url"],
                 "shareId": r["share_id"], "matchedBy": "username"}
                for r in rows
            ]

            if "@" in query:
                row = conn.execute(
                    """
                    SELECT u.id AS user_id, p.username, p.avatar_url, s.share_id
                    FROM users u
                    JOIN shelf_settings s ON s.user_id = u.id
                    LEFT JOIN profiles p ON p.user_id = u.id
                    WHERE u.email = ? AND u.id != ? AND s.is_public = 1
                    """,
                    (query.lower(), viewer_id),
                ).fetchone()
                if row and not any(r["userId"] == row["user_id"] for r in results):
                    results.append({
                        "userId": row["user_id"], "username": row["username"], "avatarUrl": row["avatar_url"],
                        "shareId": row["share_id"], "matchedBy": "email",
                    })
            return results
        finally:
            conn.close()
