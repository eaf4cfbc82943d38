import logging
from typing import Optional, Dict, Any, List

import httpx
from jinja2 import Environment, PackageLoader, TemplateError, select_autoescape

from shelvy.config import settings
from shelvy.services.http_client import get_http_client

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

_JINJA_ENV = Environment(
    loader=PackageLoader("shelvy", "templates/email"),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)

ANNOUNCEMENT_SUBJECT = "New on Shelvy: Find Friends, Genre Filters & More! 📚"
ANNOUNCEMENT_FEATURES = [
    {
        "title": "🎨 Cleaner UI & Mobile Support",
        "body": "A tidier, more polished look that works beautifully on your phone.",
    },
    {
        "title": "👋 Find & Invite Friends",
        "body": "Search for friends on Shelvy or invite new ones to join and share reading recommendations.",
    },
    {
        "title": "🏷️ Genre Filters",
        "body": "Easily filter your shelf by genre to find exactly what you're looking for.",
    },
    {
        "title": "📝 Staff Pick Notes",
        "body": "Add personal recommendation notes to your favorite books, displayed as cute post-it notes on your shelf.",
    },
]


class EmailDeliveryError(Exception):
    """Raised when an email cannot be rendered or sent"""
    pass


def render_template(name: str, **context: Any) -> str:
    try:
        return _JINJA_ENV.get_template(name).render(**context)
    except TemplateError as e:
        raise EmailDeliveryError(f"Failed to render {name}: {e}") from e


class EmailService:
    """Transactional email through the Resend API"""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or settings.resend_api_key
        self.sender = settings.email_from
        self.app_url = settings.app_url.rstrip("/")

    async def send(self, to: str, subject: str, html: str) -> Dict[str, Any]:
        """Send one email; raises EmailDeliveryError on any failure"""
        if not settings.enable_email_notifications:
            raise EmailDeliveryError("Email notifications are disabled")
        if not self.api_key:
            raise EmailDeliveryError("RESEND_API_KEY is not configured")

        payload = {"from": self.sender, "to": [to], "subject": subject, "html": html}
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            client = await get_http_client()
            response = await client.post(RESEND_API_URL, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Resend request failed: {e}")
            raise EmailDeliveryError(f"Resend request failed: {e}") from e

        if response.status_code >= 300:
            logger.error(f"Resend API error: {response.status_code} {response.text[:300]}")
            raise EmailDeliveryError(f"Resend API error: {response.status_code}")

        logger.info(f"Email sent to {to}: {subject}")
        try:
            return response.json()
        except ValueError:
            logger.warning("Resend accepted the email but returned a non-JSON body")
            return {}

    async def send_book_recommendation(self, to: str, sender_username: str, book_title: str,
                                       book_author: str, message: Optional[str] = None) -> Dict[str, Any]:
        html = render_template(
            "book_recommendation.html",
            sender_username=sender_username,
            book_title=book_title,
            book_author=book_author,
            message=message,
            cta_url=self.app_url,
            cta_text="View Recommendation",
        )
        return await self.send(to, f'{sender_username} recommended "{book_title}" for you!', html)

    async def send_new_follower(self, to: str, follower_username: str,
                                follower_shelf_url: Optional[str] = None) -> Dict[str, Any]:
        if follower_shelf_url:
            cta_url, cta_text = follower_shelf_url, f"Check out {follower_username}'s shelf"
        else:
            cta_url, cta_text = self.app_url, "View your shelf"
        html = render_template(
            "new_follower.html",
            follower_username=follower_username,
            cta_url=cta_url,
            cta_text=cta_text,
        )
        return await self.send(to, f"{follower_username} is now following your bookshelf 📚", html)

    async def send_invite(self, to: str, sender_name: str, existing_user: bool,
                          shelf_url: Optional[str] = None) -> Dict[str, Any]:
        if existing_user:
            subject = f"{sender_name} wants to connect with you on Shelvy!"
            cta_text = f"View {sender_name}'s Shelf" if shelf_url else "Open Shelvy"
        else:
            subject = f"{sender_name} invited you to join Shelvy!"
            cta_text = f"View {sender_name}'s Shelf" if shelf_url else "Start Your Shelf"
        html = render_template(
            "invite.html",
            sender_name=sender_name,
            existing_user=existing_user,
            cta_url=shelf_url or self.app_url,
            cta_text=cta_text,
        )
        return await self.send(to, subject, html)

    async def send_announcement(self, to: str, features: Optional[List[Dict[str, str]]] = None) -> Dict[str, Any]:
        html = render_template(
            "announcement.html",
            features=features or ANNOUNCEMENT_FEATURES,
            cta_url=self.app_url,
            cta_text="Check It Out",
        )
        return await self.send(to, ANNOUNCEMENT_SUBJECT, html)

    async def send_password_reset(self, to: str, reset_link: str) -> Dict[str, Any]:
        html = render_template("password_reset.html", cta_url=reset_link, cta_text="Reset Password")
        return await self.send(to, "Reset your Shelvy password", html)
