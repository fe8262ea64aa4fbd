"""Push and email delivery for triggered alerts."""

from fxcore.notifications.dispatcher import (
    Channel,
    ChannelResult,
    DispatchResult,
    DispatchStatus,
    NotificationDispatcher,
)
from fxcore.notifications.email import EmailMessage, EmailTransport, MailgunEmailTransport
from fxcore.notifications.transport import (
    FcmPushTransport,
    LoggingPushTransport,
    PushPayload,
    PushTransport,
)

__all__ = [
    "Channel",
    "ChannelResult",
    "DispatchResult",
    "DispatchStatus",
    "EmailMessage",
    "EmailTransport",
    "FcmPushTransport",
    "LoggingPushTransport",
    "MailgunEmailTransport",
    "NotificationDispatcher",
    "PushPayload",
    "PushTransport",
]
