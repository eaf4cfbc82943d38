import hashlib
import hmac
import logging
import secrets
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List

from shelvy.config import settings
from shelvy.database import get_db_connection, new_id, short_token, utc_now
from shelvy.services.email_service import EmailDeliveryError, EmailService
from shelvy.utils.validators import TextValidator

logger = logging.getLogger(__name__)

ROLES = ("admin", "moderator", "user")
_HASH_ALGORITHM = "pbkdf2_sha256"


def hash_password(password: str, iterations: Optional[int] = None) -> str:
    """PBKDF2-HMAC-SHA256 encoded as algorithm$iterations$salt$hash"""
    iterations = iterations or settings.password_hash_iterations
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), iterations)
    return f"{_HASH_ALGORITHM}${iterations}${salt}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        algorithm, iterations, salt, expected = encoded.split("$", 3)
    except (AttributeError, ValueError):
        return False
    if algorithm != _HASH_ALGORITHM:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), int(iterations))
    return hmac.compare_digest(digest.hex(), expected)


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _expiry(minutes: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(minutes=minutes)).isoformat(timespec="microseconds")


def _normalize_email(email: Any) -> str:
    if not isinstance(email, str) or not email.strip():
        raise ValueError("Email is required")
    email = email.strip().lower()
    if not TextValidator.is_valid_email(email):
        raise ValueError("Invalid email format")
    return email


def _check_password(password: Any) -> str:
    if not isinstance(password, str) or not password:
        raise ValueError("Password is required")
    if len(password) < settings.min_password_length:
        raise ValueError(f"Password must be at least {settings.min_password_length} characters")
    return password


def _public_user(row: sqlite3.Row) -> Dict[str, Any]:
    return {"id": row["id"], "email": row["email"], "created_at": row["created_at"]}


class AccountManager:
    """Users, sessions, roles and the account lifecycle."""

    def __init__(self, email_service: Optional[EmailService] = None) -> None:
        self.email_service = email_service or EmailService()

    # ------------------------- Registration ------------------------- #
    def sign_up(self, email: str, password: str, username: Optional[str] = None) -> Dict[str, Any]:
        email = _normalize_email(email)
        password = _check_password(password)
        if username is not None:
            username = TextValidator.require_text(username, "Username", max_length=30)
        else:
            username = email.split("@", 1)[0][:30]

        user_id = new_id()
        now = utc_now()
        conn = get_db_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO users (id, email, password_hash, created_at) VALUES (?, ?, ?, ?)",
                (user_id, email, hash_password(password), now),
            )
            cursor.execute(
                "INSERT INTO profiles (user_id, username, avatar_url, created_at, updated_at) VALUES (?, ?, NULL, ?, ?)",
                (user_id, username, now, now),
            )
            cursor.execute(
                """
                INSERT INTO shelf_settings (id, user_id, is_public, share_id, created_at, updated_at)
                VALUES (?, ?, 1, ?, ?, ?)
                """,
                (new_id(), user_id, short_token(12), now, now),
            )
            cursor.execute(
                """
                INSERT INTO notification_settings
                    (user_id, last_seen_likes_at, last_seen_followers_at, last_seen_recommendations_at, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, now, now, now, now),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise ValueError("An account with this email already exists") from e
        finally:
            conn.close()

        logger.info(f"Created account {user_id} for {email}")
        return {"id": user_id, "email": email, "created_at": now}

    # ------------------------- Sessions ------------------------- #
    def sign_in(self, email: str, password: str) -> str:
        """Return a new session token. Wrong credentials raise PermissionError."""
        if not isinstance(email, str) or not isinstance(password, str):
            raise PermissionError("Invalid login credentials")
        conn = get_db_connection()
        try:
            row = conn.execute(
                "SELECT id, password_hash FROM users WHERE email = ?", (email.strip().lower(),)
            ).fetchone()
            if not row or not verify_password(password, row["password_hash"]):
                raise PermissionError("Invalid login credentials")

            token = secrets.token_urlsafe(32)
            conn.execute(
                "INSERT INTO sessions (token_hash, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
                (_hash_token(token), row["id"], utc_now(), _expiry(settings.session_ttl_minutes)),
            )
            conn.commit()
            return token
        finally:
            conn.close()

    def sign_out(self, token: str) -> None:
        conn = get_db_connection()
        try:
            conn.execute("DELETE FROM sessions WHERE token_hash = ?", (_hash_token(token),))
            conn.commit()
        finally:
            conn.close()

    def resolve_token(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        """The user behind a session token, or None. Expired sessions are removed."""
        if not token:
            return None
        token_hash = _hash_token(token)
        conn = get_db_connection()
        try:
            row = conn.execute(
                """
                SELECT u.id, u.email, u.created_at, s.expires_at
                FROM sessions s JOIN users u ON u.id = s.user_id
                WHERE s.token_hash = ?
                """,
                (token_hash,),
            ).fetchone()
            if not row:
                return None
            if row["expires_at"] <= utc_now():
                conn.execute("DELETE FROM sessions WHERE token_hash = ?", (token_hash,))
                conn.commit()
                return None
            return _public_user(row)
        finally:
            conn.close()

    # ------------------------- Roles ------------------------- #
    def grant_role(self, user_id: str, role: str) -> None:
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role}")
        conn = get_db_connection()
        try:
            if not conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone():
                raise LookupError("User not found")
            conn.execute(
                "INSERT OR IGNORE INTO user_roles (id, user_id, role, created_at) VALUES (?, ?, ?, ?)",
                (new_id(), user_id, role, utc_now()),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Granted role {role} to {user_id}")

    def has_role(self, user_id: str, role: str) -> bool:
        conn = get_db_connection()
        try:
            row = conn.execute(
                "SELECT 1 FROM user_roles WHERE user_id = ? AND role = ?", (user_id, role)
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        conn = get_db_connection()
        try:
            row = conn.execute(
                "SELECT id, email, created_at FROM users WHERE email = ?", (email.strip().lower(),)
            ).fetchone()
            return _public_user(row) if row else None
        finally:
            conn.close()

    def list_users(self) -> List[Dict[str, Any]]:
        conn = get_db_connection()
        try:
            rows = conn.execute("SELECT id, email, created_at FROM users ORDER BY created_at DESC").fetchall()
            return [_public_user(row) for row in rows]
        finally:
            conn.close()

    # ------------------------- Password reset ------------------------- #
    async def request_password_reset(self, email: Any, redirect_to: Optional[str] = None) -> Dict[str, Any]:
        """
        Email a one-hour reset link when the account exists.

        The answer is the same whether or not the address is registered.
        """
        email = _normalize_email(email)
        user = self.get_user_by_email(email)
        if not user:
            logger.info(f"Password reset requested for unknown address {email}")
            return {"success": True}

        token = secrets.token_urlsafe(32)
        conn = get_db_connection()
        try:
            conn.execute(
                "INSERT INTO password_resets (token_hash, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
                (_hash_token(token), user["id"], utc_now(), _expiry(settings.password_reset_ttl_minutes)),
            )
            conn.commit()
        finally:
            conn.close()

        base = redirect_to or f"{settings.app_url.rstrip('/')}/reset-password"
        separator = "&" if "?" in base else "?"
        try:
            await self.email_service.send_password_reset(email, f"{base}{separator}token={token}")
        except EmailDeliveryError as e:
            logger.error(f"Failed to send password reset email to {email}: {e}")
        return {"success": True}

    def complete_password_reset(self, token: str, new_password: str) -> None:
        new_password = _check_password(new_password)
        token_hash = _hash_token(token or "")
        conn = get_db_connection()
        try:
            row = conn.execute(
                "SELECT user_id, expires_at FROM password_resets WHERE token_hash = ?", (token_hash,)
            ).fetchone()
            if not row or row["expires_at"] <= utc_now():
                raise ValueError("Invalid or expired reset token")
            conn.execute(
                "UPDATE users SET password_hash = ? WHERE id = ?", (hash_password(new_password), row["user_id"])
            )
            conn.execute("DELETE FROM password_resets WHERE token_hash = ?", (token_hash,))
            conn.execute("DELETE FROM sessions WHERE user_id = ?", (row["user_id"],))
            conn.commit()
            logger.info(f"Password reset completed for {row['user_id']}")
        finally:
            conn.close()

    def set_migration_password(self, email: Any, password: Any) -> None:
        """Set the first password of an account imported without one."""
        if not email or not password:
            raise ValueError("Email and password are required")
        password = _check_password(password)
        email = _normalize_email(email)
        conn = get_db_connection()
        try:
            row = conn.execute(
                "SELECT user_id FROM migration_pending WHERE email = ?", (email,)
            ).fetchone()
            if not row:
                raise LookupError("No pending migration for this email")
            conn.execute("UPDATE users SET password_hash = ? WHERE id = ?", (hash_password(password), row["user_id"]))
            conn.execute("DELETE FROM migration_pending WHERE email = ?", (email,))
            conn.commit()
            logger.info(f"Migration password set for {email}")
        finally:
            conn.close()

    # ------------------------- Deletion ------------------------- #
    def delete_account(self, user_id: str) -> None:
        """
        Remove a user and everything they own.

        Each cleanup step is logged and skipped on failure; only the final
        delete of the user row can fail the call.
        """
        owned_clubs = "SELECT id FROM book_clubs WHERE owner_id = ?"
        steps = [
            ("likes", "DELETE FROM book_likes WHERE user_id = ?", (user_id,)),
            ("comments", "DELETE FROM book_comments WHERE user_id = ?", (user_id,)),
            ("notes", "DELETE FROM book_notes WHERE user_id = ?", (user_id,)),
            ("books", "DELETE FROM books WHERE user_id = ?", (user_id,)),
            ("follows", "DELETE FROM follows WHERE follower_id = ? OR following_id = ?", (user_id, user_id)),
            ("owned club votes",
             f"DELETE FROM book_club_votes WHERE suggestion_id IN "
             f"(SELECT id FROM book_club_suggestions WHERE club_id IN ({owned_clubs}))", (user_id,)),
            ("owned club reflections",
             f"DELETE FROM book_club_reflections WHERE club_id IN ({owned_clubs})", (user_id,)),
            ("owned club suggestions",
             f"DELETE FROM book_club_suggestions WHERE club_id IN ({owned_clubs})", (user_id,)),
            ("owned club members",
             f"DELETE FROM book_club_members WHERE club_id IN ({owned_clubs})", (user_id,)),
            ("owned clubs", "DELETE FROM book_clubs WHERE owner_id = ?", (user_id,)),
            ("club memberships", "DELETE FROM book_club_members WHERE user_id = ?", (user_id,)),
            ("club votes", "DELETE FROM book_club_votes WHERE user_id = ?", (user_id,)),
            ("club suggestions", "DELETE FROM book_club_suggestions WHERE suggested_by = ?", (user_id,)),
            ("club reflections", "DELETE FROM book_club_reflections WHERE user_id = ?", (user_id,)),
            ("recommendations",
             "DELETE FROM book_recommendations WHERE from_user_id = ? OR to_user_id = ?", (user_id, user_id)),
            ("notification settings", "DELETE FROM notification_settings WHERE user_id = ?", (user_id,)),
            ("shelf settings", "DELETE FROM shelf_settings WHERE user_id = ?", (user_id,)),
            ("profile", "DELETE FROM profiles WHERE user_id = ?", (user_id,)),
            ("roles", "DELETE FROM user_roles WHERE user_id = ?", (user_id,)),
            ("sessions", "DELETE FROM sessions WHERE user_id = ?", (user_id,)),
            ("reset tokens", "DELETE FROM password_resets WHERE user_id = ?", (user_id,)),
        ]

        logger.info(f"Deleting account {user_id}")
        conn = get_db_connection()
        try:
            for label, sql, params in steps:
                try:
                    conn.execute(sql, params)
                    conn.commit()
                except sqlite3.Error as e:
                    conn.rollback()
                    logger.error(f"Error deleting {label} for {user_id}: {e}")

            cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
            conn.commit()
            if cursor.rowcount == 0:
                raise LookupError("User not found")
        finally:
            conn.close()
        logger.info(f"Account {user_id} deleted")
