import logging
import sqlite3
from typing import List, Optional, Dict, Any

from shelvy.database import get_db_connection, new_id, short_token, utc_now
from shelvy.utils.covers import normalize_cover_url
from shelvy.utils.validators import TextValidator

logger = logging.getLogger(__name__)

SUGGESTION_STATUSES = ("suggested", "reading", "read")
MAX_CLUB_NAME = 100
MAX_CLUB_DESCRIPTION = 500
MAX_REFLECTION_LENGTH = 280


class ClubManager:
    """Book clubs: membership by invite code, suggestions, votes and reflections."""

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _club_row(conn: sqlite3.Connection, club_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM book_clubs WHERE id = ?", (club_id,)).fetchone()
        if not row:
            raise LookupError("Club not found")
        return row

    @staticmethod
    def _member_role(conn: sqlite3.Connection, club_id: str, user_id: str) -> Optional[str]:
        row = conn.execute(
            "SELECT role FROM book_club_members WHERE club_id = ? AND user_id = ?", (club_id, user_id)
        ).fetchone()
        return row["role"] if row else None

    def _require_member(self, conn: sqlite3.Connection, club_id: str, user_id: str) -> str:
        self._club_row(conn, club_id)
        role = self._member_role(conn, club_id, user_id)
        if not role:
            raise PermissionError("You are not a member of this club")
        return role

    @staticmethod
    def _suggestion_row(conn: sqlite3.Connection, suggestion_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM book_club_suggestions WHERE id = ?", (suggestion_id,)).fetchone()
        if not row:
            raise LookupError("Suggestion not found")
        return row

    # ------------------------- Clubs ------------------------- #
    def create_club(self, owner_id: str, name: str, description: Optional[str] = None) -> Dict[str, Any]:
        name = TextValidator.require_text(name, "Club name", max_length=MAX_CLUB_NAME)
        if isinstance(description, str):
            description = description.strip()[:MAX_CLUB_DESCRIPTION] or None
        else:
            description = None

        club_id = new_id()
        now = utc_now()
        conn = get_db_connection()
        try:
            conn.execute(
                """
                INSERT INTO book_clubs (id, name, description, invite_code, owner_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (club_id, name, description, short_token(8), owner_id, now, now),
            )
            conn.execute(
                "INSERT INTO book_club_members (id, club_id, user_id, role, joined_at) VALUES (?, ?, ?, 'owner', ?)",
                (new_id(), club_id, owner_id, now),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Club '{name}' created by {owner_id}")
        return self.get_club(owner_id, club_id)

    def lookup_invite(self, invite_code: str) -> Dict[str, Any]:
        """Only the id and name are revealed to someone holding an invite code."""
        conn = get_db_connection()
        try:
            row = conn.execute(
                "SELECT id, name FROM book_clubs WHERE invite_code = ?", ((invite_code or "").strip().lower(),)
            ).fetchone()
        finally:
            conn.close()
        if not row:
            raise LookupError("Invalid invite code")
        return {"id": row["id"], "name": row["name"]}

    def join_club(self, user_id: str, invite_code: str) -> Dict[str, Any]:
        club = self.lookup_invite(invite_code)
        conn = get_db_connection()
        try:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO book_club_members (id, club_id, user_id, role, joined_at) "
                "VALUES (?, ?, ?, 'member', ?)",
                (new_id(), club["id"], user_id, utc_now()),
            )
            conn.commit()
            if cursor.rowcount:
                logger.info(f"{user_id} joined club {club['id']}")
        finally:
            conn.close()
        return self.get_club(user_id, club["id"])

    def leave_club(self, user_id: str, club_id: str) -> None:
        conn = get_db_connection()
        try:
            role = self._require_member(conn, club_id, user_id)
            if role == "owner":
                raise ValueError("The owner cannot leave the club; delete it instead")
            conn.execute("DELETE FROM book_club_members WHERE club_id = ? AND user_id = ?", (club_id, user_id))
            conn.commit()
        finally:
            conn.close()

    def list_clubs(self, user_id: str) -> List[Dict[str, Any]]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                """
                SELECT c.*, m.role,
                       (SELECT COUNT(*) FROM book_club_members x WHERE x.club_id = c.id) AS member_count
                FROM book_clubs c JOIN book_club_members m ON m.club_id = c.id
                WHERE m.user_id = ?
                ORDER BY m.joined_at DESC
                """,
                (user_id,),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def get_club(self, user_id: str, club_id: str) -> Dict[str, Any]:
        conn = get_db_connection()
        try:
            role = self._require_member(conn, club_id, user_id)
            club = dict(self._club_row(conn, club_id))
            club["role"] = role
            club["member_count"] = conn.execute(
                "SELECT COUNT(*) FROM book_club_members WHERE club_id = ?", (club_id,)
            ).fetchone()[0]
            return club
        finally:
            conn.close()

    def list_members(self, user_id: str, club_id: str) -> List[Dict[str, Any]]:
        conn = get_db_connection()
        try:
            self._require_member(conn, club_id, user_id)
            rows = conn.execute(
                """
                SELECT m.user_id, m.role, m.joined_at, p.username, p.avatar_url
                FROM book_club_members m LEFT JOIN profiles p ON p.user_id = m.user_id
                WHERE m.club_id = ?
                ORDER BY m.joined_at ASC
                """,
                (club_id,),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def delete_club(self, user_id: str, club_id: str) -> None:
        conn = get_db_connection()
        try:
            club = self._club_row(conn, club_id)
            if club["owner_id"] != user_id:
                raise PermissionError("Only the owner can delete this club")
            conn.execute("DELETE FROM book_clubs WHERE id = ?", (club_id,))
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Club {club_id} deleted by {user_id}")

    # ------------------------- Suggestions and votes ------------------------- #
    def suggest_book(self, user_id: str, club_id: str, title: str, author: str,
                     cover_url: Optional[str] = None) -> Dict[str, Any]:
        title = TextValidator.require_text(title, "Title")
        author = TextValidator.require_text(author, "Author")
        suggestion_id = new_id()
        conn = get_db_connection()
        try:
            self._require_member(conn, club_id, user_id)
            conn.execute(
                """
                INSERT INTO book_club_suggestions (id, club_id, title, author, cover_url, suggested_by, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 'suggested', ?)
                """,
                (suggestion_id, club_id, title, author, normalize_cover_url(cover_url), user_id, utc_now()),
            )
            conn.commit()
            return dict(self._suggestion_row(conn, suggestion_id))
        finally:
            conn.close()

    def list_suggestions(self, user_id: str, club_id: str) -> List[Dict[str, Any]]:
        """Suggestions with vote counts, most voted first."""
        conn = get_db_connection()
        try:
            self._require_member(conn, club_id, user_id)
            rows = conn.execute(
                """
                SELECT s.*, p.username AS suggested_by_username,
                       (SELECT COUNT(*) FROM book_club_votes v WHERE v.suggestion_id = s.id) AS vote_count,
                       EXISTS (SELECT 1 FROM book_club_votes v
                               WHERE v.suggestion_id = s.id AND v.user_id = ?) AS has_voted
                FROM book_club_suggestions s LEFT JOIN profiles p ON p.user_id = s.suggested_by
                WHERE s.club_id = ?
                ORDER BY vote_count DESC, s.created_at ASC
                """,
                (user_id, club_id),
            ).fetchall()
        finally:
            conn.close()
        suggestions = []
        for row in rows:
            entry = dict(row)
            entry["has_voted"] = bool(entry["has_voted"])
            suggestions.append(entry)
        return suggestions

    def vote(self, user_id: str, suggestion_id: str) -> None:
        conn = get_db_connection()
        try:
            suggestion = self._suggestion_row(conn, suggestion_id)
            self._require_member(conn, suggestion["club_id"], user_id)
            if suggestion["status"] != "suggested":
                raise ValueError("Voting is only open for suggested books")
            conn.execute(
                "INSERT OR IGNORE INTO book_club_votes (id, suggestion_id, user_id, created_at) VALUES (?, ?, ?, ?)",
                (new_id(), suggestion_id, user_id, utc_now()),
            )
            conn.commit()
        finally:
            conn.close()

    def unvote(self, user_id: str, suggestion_id: str) -> None:
        conn = get_db_connection()
        try:
            conn.execute(
                "DELETE FROM book_club_votes WHERE suggestion_id = ? AND user_id = ?", (suggestion_id, user_id)
            )
            conn.commit()
        finally:
            conn.close()

    def set_suggestion_status(self, user_id: str, suggestion_id: str, status: str) -> Dict[str, Any]:
        """
        Move a suggestion through suggested, reading and read.

        Finishing a book stamps finished_at and resets the votes on the
        club's other open suggestions so the next round starts fresh.
        """
        if status not in SUGGESTION_STATUSES:
            raise ValueError(f"Invalid status: {status}")
        conn = get_db_connection()
        try:
            suggestion = self._suggestion_row(conn, suggestion_id)
            club = self._club_row(conn, suggestion["club_id"])
            if club["owner_id"] != user_id:
                raise PermissionError("Only the club owner can change a suggestion's status")

            if status == "read":
                finished_at = suggestion["finished_at"] if suggestion["status"] == "read" else utc_now()
                conn.execute(
                    "UPDATE book_club_suggestions SET status = ?, finished_at = ? WHERE id = ?",
                    (status, finished_at or utc_now(), suggestion_id),
                )
                cursor = conn.execute(
                    """
                    DELETE FROM book_club_votes WHERE suggestion_id IN (
                        SELECT id FROM book_club_suggestions
                        WHERE club_id = ? AND status = 'suggested' AND id != ?
                    )
                    """,
                    (club["id"], suggestion_id),
                )
                logger.info(f"Club {club['id']} finished '{suggestion['title']}', cleared {cursor.rowcount} votes")
            else:
                conn.execute(
                    "UPDATE book_club_suggestions SET status = ?, finished_at = NULL WHERE id = ?",
                    (status, suggestion_id),
                )
            conn.commit()
            return dict(self._suggestion_row(conn, suggestion_id))
        finally:
            conn.close()

    # ------------------------- Reflections ------------------------- #
    def upsert_reflection(self, user_id: str, suggestion_id: str, rating: int, content: str,
                          is_anonymous: bool = False) -> Dict[str, Any]:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValueError("Rating must be between 1 and 5")
        content = TextValidator.require_text(content, "Reflection", max_length=MAX_REFLECTION_LENGTH)
        now = utc_now()
        conn = get_db_connection()
        try:
            suggestion = self._suggestion_row(conn, suggestion_id)
            self._require_member(conn, suggestion["club_id"], user_id)
            if suggestion["status"] != "read":
                raise ValueError("Reflections can only be added to finished books")
            conn.execute(
                """
                INSERT INTO book_club_reflections
                    (id, club_id, suggestion_id, user_id, rating, content, is_anonymous, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (suggestion_id, user_id) DO UPDATE SET
                    rating = excluded.rating, content = excluded.content,
                    is_anonymous = excluded.is_anonymous, updated_at = excluded.updated_at
                """,
                (new_id(), suggestion["club_id"], suggestion_id, user_id, rating, content,
                 1 if is_anonymous else 0, now, now),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM book_club_reflections WHERE suggestion_id = ? AND user_id = ?", (suggestion_id, user_id)
            ).fetchone()
        finally:
            conn.close()
        reflection = dict(row)
        reflection["is_anonymous"] = bool(reflection["is_anonymous"])
        return reflection

    def list_reflections(self, user_id: str, suggestion_id: str) -> List[Dict[str, Any]]:
        """Reflections on a finished book. Anonymous ones hide who wrote them."""
        conn = get_db_connection()
        try:
            suggestion = self._suggestion_row(conn, suggestion_id)
            self._require_member(conn, suggestion["club_id"], user_id)
            rows = conn.execute(
                """
                SELECT r.*, p.username
                FROM book_club_reflections r LEFT JOIN profiles p ON p.user_id = r.user_id
                WHERE r.suggestion_id = ?
                ORDER BY r.created_at ASC
                """,
                (suggestion_id,),
            ).fetchall()
        finally:
            conn.close()

        reflections = []
        for row in rows:
            entry = dict(row)
            entry["is_anonymous"] = bool(entry["is_anonymous"])
            entry["is_mine"] = entry["user_id"] == user_id
            if entry["is_anonymous"]:
                entry["user_id"] = None
                entry["username"] = None
            reflections.append(entry)
        return reflections
