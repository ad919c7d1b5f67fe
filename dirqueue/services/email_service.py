import logging
from abc import ABC, abstractmethod

import httpx

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    pass


class EmailSender(ABC):
    @abstractmethod
    async def send(self, to: str, subject: str, html: str, text: str) -> None:
        """Deliver one email. Raises EmailDeliveryError if it was not accepted."""


class ResendEmailSender(EmailSender):
    """Sends mail through the Resend HTTPS API."""

    def __init__(
        self,
        api_key: str | None,
        sender: str,
        api_url: str = "https://api.resend.com/emails",
        timeout: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._sender = sender
        self._api_url = api_url
        self._timeout = timeout

    async def send(self, to: str, subject: str, html: str, text: str) -> None:
        if not self._api_key:
            raise EmailDeliveryError("RESEND_API_KEY is not configured")

        payload = {
            "from": self._sender,
            "to": [to],
            "subject": subject,
            "html": html,
            "text": text,
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._api_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise EmailDeliveryError(f"email transport error: {exc}") from exc

        if response.status_code not in (200, 201, 202):
            raise EmailDeliveryError(f"email API returned {response.status_code}: {response.text}")
        logger.debug("[email] sent | to=%s | subject=%s", to, subject)
