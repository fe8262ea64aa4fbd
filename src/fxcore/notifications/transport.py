"""Push transports.

PushTransport is the seam the dispatcher depends on. FcmPushTransport talks
to Firebase Cloud Messaging's HTTP v1 API via httpx; LoggingPushTransport
only logs, for local development.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from fxcore.config import PushSettings
from fxcore.exceptions import FatalConfigError, SubscriptionExpired, TransientError
from fxcore.logging import get_logger

logger = get_logger(__name__)

# FCM reports unregistered tokens as 404; web-push endpoints use 410
_EXPIRED_STATUSES = frozenset({404, 410})


def message_id_from(response: httpx.Response, key: str) -> str:
    """Read the provider message id from a 2xx reply.

    The message was accepted once the status is 2xx, so a body that is not
    a JSON object yields an empty id rather than a failed send.
    """
    try:
        body = response.json()
    except ValueError:
        logger.warning(
            "notification_response_unparsable",
            status=response.status_code,
            content_type=response.headers.get("content-type", ""),
        )
        return ""
    if not isinstance(body, dict):
        return ""
    return str(body.get(key, ""))


@dataclass(frozen=True)
class PushPayload:
    """Notification content. data values must be strings (FCM requirement)."""

    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)


class PushTransport(ABC):
    """Abstract push delivery channel."""

    @abstractmethod
    async def send(self, subscription: dict[str, Any], payload: PushPayload) -> str:
        """Deliver payload to subscription and return a message id.

        Raises SubscriptionExpired when the endpoint is gone and
        TransientError on any other delivery failure.
        """
        ...

    async def close(self) -> None:
        """Release network resources."""


class FcmPushTransport(PushTransport):
    """Firebase Cloud Messaging HTTP v1 transport.

    The subscription dict must carry the device registration token under
    "token".

    Args:
        settings: Project id, OAuth access token and endpoint.
        transport: Optional httpx transport (tests inject httpx.MockTransport).
    """

    def __init__(
        self,
        settings: PushSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not settings.project_id or not settings.access_token.get_secret_value():
            raise FatalConfigError("PUSH_PROJECT_ID and PUSH_ACCESS_TOKEN are required for FCM")
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
            transport=transport,
            headers={
                "Authorization": f"Bearer {settings.access_token.get_secret_value()}",
            },
        )

    async def send(self, subscription: dict[str, Any], payload: PushPayload) -> str:
        token = subscription.get("token")
        if not token:
            raise SubscriptionExpired("Subscription has no registration token")

        message = {
            "message": {
                "token": token,
                "notification": {"title": payload.title, "body": payload.body},
                "data": payload.data,
                "android": {"priority": "high"},
            }
        }
        url = f"/projects/{self._settings.project_id}/messages:send"
        try:
            response = await self._client.post(url, json=message)
        except httpx.TimeoutException as e:
            raise TransientError("Push send timed out") from e
        except httpx.HTTPError as e:
            raise TransientError(f"Push send failed: {e}") from e

        if response.status_code in _EXPIRED_STATUSES:
            raise SubscriptionExpired(f"Push endpoint returned {response.status_code}")
        if response.status_code >= 400:
            raise TransientError(f"Push endpoint returned {response.status_code}")

        return message_id_from(response, "name")

    async def close(self) -> None:
        await self._client.aclose()


class LoggingPushTransport(PushTransport):
    """Logs notifications instead of sending them."""

    def __init__(self) -> None:
        self._sent = 0

    async def send(self, subscription: dict[str, Any], payload: PushPayload) -> str:
        self._sent += 1
        logger.info(
            "push_notification_logged",
            title=payload.title,
            body=payload.body,
            data=payload.data,
        )
        return f"log-{self._sent}"
