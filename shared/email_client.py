"""
Transactional email client backed by Resend.

The Resend SDK is synchronous; send_email() runs it in a worker thread so the
flush worker's event loop is never blocked on the provider.
"""

import asyncio
import logging

import resend

from shared.config import get_settings

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    """Raised when the provider rejects or fails to accept an email."""

    pass


class EmailClient:
    """Thin wrapper around resend.Emails.send."""

    def __init__(self, api_key: str | None = None, from_address: str | None = None):
        settings = get_settings()
        self.api_key = api_key or settings.RESEND_API_KEY
        self.from_address = from_address or (
            f"{settings.SALON_BRAND_NAME} <{settings.EMAIL_FROM_ADDRESS}>"
        )
        self.reply_to = settings.EMAIL_REPLY_TO or None

    async def send_email(
        self,
        to: str,
        subject: str,
        html: str,
        from_address: str | None = None,
        reply_to: str | None = None,
    ) -> str:
        """
        Send one email.

        Returns:
            Provider message id

        Raises:
            EmailDeliveryError: If the provider call fails or returns no id
        """
        email_data: dict = {
            "from": from_address or self.from_address,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if reply_to or self.reply_to:
            email_data["reply_to"] = reply_to or self.reply_to

        resend.api_key = self.api_key

        try:
            response = await asyncio.to_thread(resend.Emails.send, email_data)
        except Exception as e:
            logger.error(f"Email send error to {to}: {e}")
            raise EmailDeliveryError(f"Failed to send email: {e}") from e

        message_id = response.get("id") if isinstance(response, dict) else None
        if not message_id:
            raise EmailDeliveryError(f"Provider returned no message id: {response!r}")

        logger.info(f"Email sent via Resend to {to}: id={message_id}")
        return message_id


_email_client: EmailClient | None = None


def get_email_client() -> EmailClient:
    global _email_client
    if _email_client is None:
        _email_client = EmailClient()
    return _email_client
