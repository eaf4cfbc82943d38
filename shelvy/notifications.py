import logging
from typing import Optional, Dict, Any, List

from shelvy.config import settings
from shelvy.database import get_db_connection
from shelvy.services.email_service import EmailDeliveryError, EmailService
from shelvy.utils.validators import TextValidator

logger = logging.getLogger(__name__)


def _email_for(user_id: str) -> Optional[str]:
    conn = get_db_connection()
    try:
        row = conn.execute("SELECT email FROM users WHERE id = ?", (user_id,)).fetchone()
        return row["email"] if row else None
    finally:
        conn.close()


class Notifier:
    """Transactional email flows around recommendations, follows, invites and announcements."""

    def __init__(self, email_service: Optional[EmailService] = None) -> None:
        self.email = email_service or EmailService()

    async def notify_book_recommendation(self, sender_username: str, book_title: str, book_author: str,
                                         recipient_user_id: Optional[str] = None,
                                         recipient_email: Optional[str] = None,
                                         message: Optional[str] = None) -> Dict[str, Any]:
        if not sender_username or not book_title or not book_author:
            raise ValueError("Missing required fields")

        if recipient_user_id:
            recipient_email = _email_for(recipient_user_id)
            if not recipient_email:
                logger.info(f"No email found for user {recipient_user_id}")
                return {"success": True, "emailSent": False, "reason": "No email found"}
        if not recipient_email:
            raise ValueError("No recipient email provided")

        try:
            await self.email.send_book_recommendation(
                recipient_email, sender_username, book_title, book_author, message
            )
        except EmailDeliveryError as e:
            logger.error(f"Recommendation email failed: {e}")
            return {"success": True, "emailSent": False, "reason": "Email API error"}
        return {"success": True, "emailSent": True}

    async def notify_new_follower(self, following_user_id: str, follower_user_id: str) -> Dict[str, Any]:
        if not following_user_id or not follower_user_id:
            raise ValueError("Missing required fields")

        email = _email_for(following_user_id)
        if not email:
            return {"success": True, "message": "No email found for user"}

        conn = get_db_connection()
        try:
            profile = conn.execute(
                "SELECT username FROM profiles WHERE user_id = ?", (follower_user_id,)
            ).fetchone()
            shelf = conn.execute(
                "SELECT share_id, is_public FROM shelf_settings WHERE user_id = ?", (follower_user_id,)
            ).fetchone()
        finally:
            conn.close()

        username = (profile["username"] if profile else None) or "Someone"
        shelf_url = None
        if shelf and shelf["is_public"] and shelf["share_id"]:
            shelf_url = f"{settings.app_url.rstrip('/')}/shelf/{shelf['share_id']}"

        try:
            await self.email.send_new_follower(email, username, shelf_url)
        except EmailDeliveryError as e:
            logger.error(f"New follower email failed: {e}")
            return {"success": False, "message": "Failed to send email"}
        return {"success": True, "message": "Email sent"}

    async def send_invite(self, recipient_email: Any, sender_name: Any,
                          shelf_url: Optional[str] = None) -> Dict[str, Any]:
        """Invite someone by email. Raises EmailDeliveryError when the send fails."""
        if not recipient_email or not sender_name:
            raise ValueError("Missing required fields")
        if not isinstance(recipient_email, str) or not TextValidator.is_valid_email(recipient_email.strip()):
            raise ValueError("Invalid email address")
        recipient_email = recipient_email.strip()

        conn = get_db_connection()
        try:
            existing = conn.execute(
                "SELECT 1 FROM users WHERE email = ?", (recipient_email.lower(),)
            ).fetchone() is not None
        finally:
            conn.close()

        await self.email.send_invite(recipient_email, str(sender_name), existing, shelf_url)
        logger.info(f"Invite sent to {recipient_email}, isExistingUser: {existing}")
        return {"success": True, "isExistingUser": existing}

    async def send_announcement(self, test_email: Optional[str] = None, send_to_all: bool = False) -> Dict[str, Any]:
        """Send the feature announcement to one address, or to everyone with a shelf."""
        if test_email:
            await self.email.send_announcement(test_email)
            return {"success": True, "message": f"Test email sent to {test_email}"}
        if not send_to_all:
            raise ValueError("Provide testEmail or sendToAll")

        conn = get_db_connection()
        try:
            rows = conn.execute(
                """
                SELECT u.email FROM shelf_settings s JOIN users u ON u.id = s.user_id
                WHERE u.email IS NOT NULL AND u.email != ''
                ORDER BY u.created_at ASC
                """
            ).fetchall()
        finally:
            conn.close()
        emails: List[str] = [row["email"] for row in rows]
        if not emails:
            return {"success": True, "message": "No users with shelves found"}

        sent = 0
        failed = 0
        batch_size = settings.announcement_batch_size
        for start in range(0, len(emails), batch_size):
            for email in emails[start:start + batch_size]:
                try:
                    await self.email.send_announcement(email)
                    sent += 1
                except EmailDeliveryError as e:
                    failed += 1
                    logger.error(f"Failed to send to {email}: {e}")

        logger.info(f"Announcement sent: {sent} succeeded, {failed} failed")
        message = f"Sent to {sent} users" + (f", {failed} failed" if failed else "")
        return {"success": True, "message": message}
