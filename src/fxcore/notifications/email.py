"""Alert email transports.

EmailTransport is the second delivery channel the dispatcher fans out to,
next to PushTransport. MailgunEmailTransport posts to the Mailgun HTTP API
via httpx; there is no logging variant because an unconfigured mail
domain simply disables the channel.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from fxcore.config import MailSettings
from fxcore.exceptions import FatalConfigError, TransientError
from fxcore.logging import get_logger
from fxcore.models import AlertRule, RateSnapshot
from fxcore.notifications.transport import message_id_from

logger = get_logger(__name__)


@dataclass(frozen=True)
class EmailMessage:
    subject: str
    text: str


def build_email(rule: AlertRule, snapshot: RateSnapshot) -> EmailMessage:
    """Render the alert email."""
    return EmailMessage(
        subject=f"Your FX rate alert: {rule.pair}",
        text=(
            f"Good news! The rate for {rule.pair.base} to {rule.pair.quote} is now "
            f"{snapshot.rate.normalize():f}, meeting your target of "
            f"{rule.threshold_rate:f} ({rule.direction.value})."
        ),
    )


class EmailTransport(ABC):
    """Abstract email delivery channel."""

    @abstractmethod
    async def send(self, to: str, message: EmailMessage) -> str:
        """Deliver message to the address and return a message id.

        Raises TransientError on any delivery failure.
        """
        ...

    async def close(self) -> None:
        """Release network resources."""


class MailgunEmailTransport(EmailTransport):
    """Mailgun messages API transport.

    Args:
        settings: Sending domain, API key and endpoint.
        transport: Optional httpx transport (tests inject httpx.MockTransport).
    """

    def __init__(
        self,
        settings: MailSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not settings.domain or not settings.api_key.get_secret_value():
            raise FatalConfigError("MAIL_DOMAIN and MAIL_API_KEY are required for Mailgun")
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
            transport=transport,
            auth=("api", settings.api_key.get_secret_value()),
        )

    async def send(self, to: str, message: EmailMessage) -> str:
        form = {
            "from": self._settings.sender,
            "to": to,
            "subject": message.subject,
            "text": message.text,
        }
        try:
            response = await self._client.post(f"/{self._settings.domain}/messages", data=form)
        except httpx.TimeoutException as e:
            raise TransientError("Email send timed out") from e
        except httpx.HTTPError as e:
            raise TransientError(f"Email send failed: {e}") from e

        if response.status_code >= 400:
            raise TransientError(f"Mail endpoint returned {response.status_code}")

        return message_id_from(response, "id")

    async def close(self) -> None:
        await self._client.aclose()
