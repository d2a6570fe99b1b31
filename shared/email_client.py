"""
Transactional email client.

Sends HTML email through a SendGrid-compatible v3 ``mail/send`` endpoint.
"""

import logging

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from shared.config import get_settings

logger = logging.getLogger(__name__)


class EmailClient:
    """Client for the transactional email API."""

    def __init__(
        self,
        api_url: str | None = None,
        api_key: str | None = None,
        from_address: str | None = None,
        from_name: str | None = None,
    ):
        settings = get_settings()
        self.api_url = api_url or settings.EMAIL_API_URL
        self.from_address = from_address or settings.EMAIL_FROM_ADDRESS
        self.from_name = from_name or settings.EMAIL_FROM_NAME

        self.headers = {
            "Authorization": f"Bearer {api_key or settings.EMAIL_API_KEY}",
            "Content-Type": "application/json",
        }

        logger.info(f"EmailClient initialized: {self.api_url}, from={self.from_address}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(httpx.HTTPError),
        reraise=True,
    )
    async def send(self, to_address: str, to_name: str, subject: str, body: str) -> bool:
        """
        Send one HTML email.

        Args:
            to_address: Recipient email address
            to_name: Recipient display name
            subject: Subject line
            body: HTML body

        Returns:
            True if the provider accepted the message, False if it was rejected
            (4xx other than rate limiting).

        Raises:
            httpx.HTTPError: Network errors and 5xx/429 after retries are exhausted
        """
        if not to_address:
            logger.warning("Email not sent: recipient address is empty")
            return False

        payload = {
            "personalizations": [
                {"to": [{"email": to_address, "name": to_name}]}
            ],
            "from": {"email": self.from_address, "name": self.from_name},
            "subject": subject,
            "content": [{"type": "text/html", "value": body}],
        }

        async with httpx.AsyncClient() as client:
            try:
                response = await client.post(
                    self.api_url,
                    json=payload,
                    headers=self.headers,
                    timeout=15.0,
                )

                if response.status_code == 429 or response.status_code >= 500:
                    response.raise_for_status()

                if response.status_code >= 400:
                    logger.error(
                        f"Email rejected for {to_address}: "
                        f"status={response.status_code}, body={response.text[:200]}"
                    )
                    return False

                logger.info(f"Email sent to {to_address}: {subject}")
                return True

            except httpx.HTTPError as e:
                logger.error(f"HTTP error sending email to {to_address}: {e}")
                raise
