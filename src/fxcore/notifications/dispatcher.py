"""Notification dispatcher for triggered rate alerts.

At most one send attempt per rule per tick: the dispatcher remembers which
rules it has attempted since begin_tick() and refuses a second attempt.
A rule is delivered on every channel it has: push when it carries a
subscription, email when it carries an address and an email transport is
configured. Channels are sent concurrently and fail independently; each
send is bounded by send_timeout and its failure comes back as a
ChannelResult instead of an exception, so the monitor loop never blocks on
or breaks because of a delivery channel. Delivery is not exactly-once
across process restarts: a crash between send and the monitor's
bookkeeping can repeat a notification on the next run.
"""

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass
from enum import Enum

from fxcore.exceptions import SubscriptionExpired, TransientError
from fxcore.logging import get_logger
from fxcore.models import AlertRule, RateSnapshot
from fxcore.notifications.email import EmailTransport, build_email
from fxcore.notifications.transport import PushPayload, PushTransport

logger = get_logger(__name__)


class DispatchStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"  # transient; the monitor re-arms so the next tick retries
    EXPIRED = "expired"  # endpoint gone; subscription should be cleared
    NO_SUBSCRIPTION = "no_subscription"
    DUPLICATE = "duplicate"  # already attempted this tick


class Channel(str, Enum):
    PUSH = "push"
    EMAIL = "email"


@dataclass(frozen=True)
class ChannelResult:
    channel: Channel
    status: DispatchStatus
    message_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one dispatch across all of the rule's channels.

    status is SENT when any channel delivered, FAILED when none delivered
    and at least one can be retried, EXPIRED when every channel is gone.
    """

    rule_id: str
    status: DispatchStatus
    message_id: str | None = None
    error: str | None = None
    channels: tuple[ChannelResult, ...] = ()

    def channel(self, channel: Channel) -> ChannelResult | None:
        for result in self.channels:
            if result.channel is channel:
                return result
        return None


def build_payload(rule: AlertRule, snapshot: RateSnapshot) -> PushPayload:
    """Render the alert notification."""
    return PushPayload(
        title=f"FX Alert: {rule.pair}",
        body=f"Rate is now {snapshot.rate.normalize():f} (target: {rule.threshold_rate:f})",
        data={
            "type": "rate_alert",
            "rule_id": rule.id,
            "pair": str(rule.pair),
            "rate": str(snapshot.rate),
            "threshold": str(rule.threshold_rate),
            "direction": rule.direction.value,
        },
    )


def _combine(rule_id: str, channels: tuple[ChannelResult, ...]) -> DispatchResult:
    statuses = {result.status for result in channels}
    if DispatchStatus.SENT in statuses:
        status = DispatchStatus.SENT
    elif DispatchStatus.FAILED in statuses:
        status = DispatchStatus.FAILED
    else:
        status = DispatchStatus.EXPIRED
    message_id = next(
        (r.message_id for r in channels if r.status is DispatchStatus.SENT), None
    )
    error = next((r.error for r in channels if r.error is not None), None)
    return DispatchResult(rule_id, status, message_id, error, channels)


class NotificationDispatcher:
    """Sends one notification per channel per triggered alert per tick.

    Args:
        transport: Push delivery channel.
        send_timeout: Upper bound in seconds for a single send.
        email_transport: Email delivery channel; None disables email.
    """

    def __init__(
        self,
        transport: PushTransport,
        send_timeout: float = 5.0,
        email_transport: EmailTransport | None = None,
    ) -> None:
        self._transport = transport
        self._send_timeout = send_timeout
        self._email_transport = email_transport
        self._attempted: set[str] = set()
        self._tick_id: str | None = None

    def begin_tick(self, tick_id: str) -> None:
        """Reset the per-tick attempt ledger."""
        self._tick_id = tick_id
        self._attempted.clear()

    async def dispatch(self, rule: AlertRule, snapshot: RateSnapshot) -> DispatchResult:
        if rule.id in self._attempted:
            logger.warning("dispatch_duplicate_in_tick", rule_id=rule.id, tick_id=self._tick_id)
            return DispatchResult(rule.id, DispatchStatus.DUPLICATE)
        self._attempted.add(rule.id)

        sends: list[Awaitable[ChannelResult]] = []
        if rule.push_subscription:
            sends.append(
                self._deliver(
                    Channel.PUSH,
                    rule,
                    self._transport.send(rule.push_subscription, build_payload(rule, snapshot)),
                )
            )
        if rule.email and self._email_transport is not None:
            sends.append(
                self._deliver(
                    Channel.EMAIL,
                    rule,
                    self._email_transport.send(rule.email, build_email(rule, snapshot)),
                )
            )
        if not sends:
            logger.info("dispatch_no_subscription", rule_id=rule.id, user_id=rule.user_id)
            return DispatchResult(rule.id, DispatchStatus.NO_SUBSCRIPTION)

        channels = tuple(await asyncio.gather(*sends))
        return _combine(rule.id, channels)

    async def _deliver(
        self, channel: Channel, rule: AlertRule, send: Awaitable[str]
    ) -> ChannelResult:
        """Await one channel's send and map its failure. Never raises."""
        try:
            message_id = await asyncio.wait_for(send, timeout=self._send_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "dispatch_timeout",
                rule_id=rule.id,
                channel=channel.value,
                timeout_seconds=self._send_timeout,
            )
            return ChannelResult(channel, DispatchStatus.FAILED, error="timeout")
        except SubscriptionExpired as e:
            logger.info(
                "dispatch_subscription_expired",
                rule_id=rule.id,
                channel=channel.value,
                error=str(e),
            )
            return ChannelResult(channel, DispatchStatus.EXPIRED, error=str(e))
        except TransientError as e:
            logger.warning("dispatch_failed", rule_id=rule.id, channel=channel.value, error=str(e))
            return ChannelResult(channel, DispatchStatus.FAILED, error=str(e))
        except Exception as e:
            logger.error("dispatch_error", rule_id=rule.id, channel=channel.value, exc_info=True)
            return ChannelResult(channel, DispatchStatus.FAILED, error=type(e).__name__)

        logger.info(
            "alert_notification_sent",
            rule_id=rule.id,
            user_id=rule.user_id,
            pair=str(rule.pair),
            channel=channel.value,
            message_id=message_id,
        )
        return ChannelResult(channel, DispatchStatus.SENT, message_id=message_id)
