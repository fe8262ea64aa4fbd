"""Tests for NotificationDispatcher: per-tick dedup, timeouts, failure mapping,
and per-channel isolation between push and email."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from fxcore.exceptions import SubscriptionExpired, TransientError
from fxcore.models import AlertDirection, AlertRule, CurrencyPair, RateSnapshot
from fxcore.notifications.dispatcher import (
    Channel,
    DispatchStatus,
    NotificationDispatcher,
    build_payload,
)
from fxcore.notifications.email import EmailTransport
from fxcore.notifications.transport import PushTransport


@pytest.fixture
def rule() -> AlertRule:
    return AlertRule(
        id="rule-1",
        user_id="user-1",
        pair=CurrencyPair("USD", "NGN"),
        threshold_rate=Decimal("1500"),
        direction=AlertDirection.ABOVE,
        push_subscription={"token": "device-1"},
    )


@pytest.fixture
def snapshot() -> RateSnapshot:
    return RateSnapshot(pair=CurrencyPair("USD", "NGN"), rate=Decimal("1510.50"), as_of=0.0)


@pytest.fixture
def mock_transport() -> AsyncMock:
    transport = AsyncMock(spec=PushTransport)
    transport.send.return_value = "msg-1"
    return transport


@pytest.fixture
def dispatcher(mock_transport: AsyncMock) -> NotificationDispatcher:
    dispatcher = NotificationDispatcher(mock_transport, send_timeout=0.2)
    dispatcher.begin_tick("tick-1")
    return dispatcher


class TestPayload:
    def test_content(self, rule: AlertRule, snapshot: RateSnapshot) -> None:
        payload = build_payload(rule, snapshot)
        assert payload.title == "FX Alert: USD/NGN"
        assert payload.body == "Rate is now 1510.5 (target: 1500)"
        assert payload.data["rule_id"] == "rule-1"
        assert payload.data["rate"] == "1510.50"
        assert payload.data["direction"] == "above"
        assert all(isinstance(v, str) for v in payload.data.values())


class TestDispatch:
    @pytest.mark.asyncio
    async def test_sent(
        self, dispatcher: NotificationDispatcher, mock_transport: AsyncMock,
        rule: AlertRule, snapshot: RateSnapshot,
    ) -> None:
        result = await dispatcher.dispatch(rule, snapshot)
        assert result.status is DispatchStatus.SENT
        assert result.message_id == "msg-1"
        mock_transport.send.assert_awaited_once()
        subscription, payload = mock_transport.send.await_args.args
        assert subscription == {"token": "device-1"}
        assert payload.title == "FX Alert: USD/NGN"

    @pytest.mark.asyncio
    async def test_second_attempt_in_tick_is_duplicate(
        self, dispatcher: NotificationDispatcher, mock_transport: AsyncMock,
        rule: AlertRule, snapshot: RateSnapshot,
    ) -> None:
        await dispatcher.dispatch(rule, snapshot)
        result = await dispatcher.dispatch(rule, snapshot)
        assert result.status is DispatchStatus.DUPLICATE
        assert mock_transport.send.await_count == 1

    @pytest.mark.asyncio
    async def test_new_tick_allows_resend(
        self, dispatcher: NotificationDispatcher, mock_transport: AsyncMock,
        rule: AlertRule, snapshot: RateSnapshot,
    ) -> None:
        await dispatcher.dispatch(rule, snapshot)
        dispatcher.begin_tick("tick-2")
        result = await dispatcher.dispatch(rule, snapshot)
        assert result.status is DispatchStatus.SENT
        assert mock_transport.send.await_count == 2

    @pytest.mark.asyncio
    async def test_no_subscription(
        self, dispatcher: NotificationDispatcher, mock_transport: AsyncMock,
        rule: AlertRule, snapshot: RateSnapshot,
    ) -> None:
        rule.push_subscription = None
        result = await dispatcher.dispatch(rule, snapshot)
        assert result.status is DispatchStatus.NO_SUBSCRIPTION
        mock_transport.send.assert_not_awaited()


class TestFailures:
    @pytest.mark.asyncio
    async def test_transient_error(
        self, dispatcher: NotificationDispatcher, mock_transport: AsyncMock,
        rule: AlertRule, snapshot: RateSnapshot,
    ) -> None:
        mock_transport.send.side_effect = TransientError("503")
        result = await dispatcher.dispatch(rule, snapshot)
        assert result.status is DispatchStatus.FAILED
        assert result.error == "503"

    @pytest.mark.asyncio
    async def test_expired(
        self, dispatcher: NotificationDispatcher, mock_transport: AsyncMock,
        rule: AlertRule, snapshot: RateSnapshot,
    ) -> None:
        mock_transport.send.side_effect = SubscriptionExpired("410")
        result = await dispatcher.dispatch(rule, snapshot)
        assert result.status is DispatchStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_timeout(
        self, dispatcher: NotificationDispatcher, mock_transport: AsyncMock,
        rule: AlertRule, snapshot: RateSnapshot,
    ) -> None:
        async def _hang(*args, **kwargs) -> str:
            await asyncio.sleep(10)
            return "never"

        mock_transport.send.side_effect = _hang
        result = await dispatcher.dispatch(rule, snapshot)
        assert result.status is DispatchStatus.FAILED
        assert result.error == "timeout"

    @pytest.mark.asyncio
    async def test_unexpected_transport_error(
        self, dispatcher: NotificationDispatcher, mock_transport: AsyncMock,
        rule: AlertRule, snapshot: RateSnapshot,
    ) -> None:
        mock_transport.send.side_effect = RuntimeError("bug")
        result = await dispatcher.dispatch(rule, snapshot)
        assert result.status is DispatchStatus.FAILED
        assert result.error == "RuntimeError"


@pytest.fixture
def mock_email() -> AsyncMock:
    transport = AsyncMock(spec=EmailTransport)
    transport.send.return_value = "email-1"
    return transport


@pytest.fixture
def email_dispatcher(mock_transport: AsyncMock, mock_email: AsyncMock) -> NotificationDispatcher:
    dispatcher = NotificationDispatcher(mock_transport, send_timeout=0.2, email_transport=mock_email)
    dispatcher.begin_tick("tick-1")
    return dispatcher


class TestEmailChannel:
    @pytest.mark.asyncio
    async def test_both_channels_sent(
        self, email_dispatcher: NotificationDispatcher, mock_transport: AsyncMock,
        mock_email: AsyncMock, rule: AlertRule, snapshot: RateSnapshot,
    ) -> None:
        rule.email = "ada@example.com"
        result = await email_dispatcher.dispatch(rule, snapshot)

        assert result.status is DispatchStatus.SENT
        assert result.channel(Channel.PUSH).message_id == "msg-1"
        assert result.channel(Channel.EMAIL).message_id == "email-1"
        mock_transport.send.assert_awaited_once()
        to, message = mock_email.send.await_args.args
        assert to == "ada@example.com"
        assert message.subject == "Your FX rate alert: USD/NGN"

    @pytest.mark.asyncio
    async def test_email_fails_push_still_sent(
        self, email_dispatcher: NotificationDispatcher, mock_transport: AsyncMock,
        mock_email: AsyncMock, rule: AlertRule, snapshot: RateSnapshot,
    ) -> None:
        rule.email = "ada@example.com"
        mock_email.send.side_effect = TransientError("Mail endpoint returned 502")

        result = await email_dispatcher.dispatch(rule, snapshot)

        assert result.status is DispatchStatus.SENT
        assert result.message_id == "msg-1"
        assert result.channel(Channel.PUSH).status is DispatchStatus.SENT
        email = result.channel(Channel.EMAIL)
        assert email.status is DispatchStatus.FAILED
        assert email.error == "Mail endpoint returned 502"
        mock_transport.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_push_fails_email_still_sent(
        self, email_dispatcher: NotificationDispatcher, mock_transport: AsyncMock,
        mock_email: AsyncMock, rule: AlertRule, snapshot: RateSnapshot,
    ) -> None:
        rule.email = "ada@example.com"
        mock_transport.send.side_effect = RuntimeError("bug")

        result = await email_dispatcher.dispatch(rule, snapshot)

        assert result.status is DispatchStatus.SENT
        assert result.channel(Channel.PUSH).error == "RuntimeError"
        assert result.channel(Channel.EMAIL).status is DispatchStatus.SENT

    @pytest.mark.asyncio
    async def test_all_channels_failed(
        self, email_dispatcher: NotificationDispatcher, mock_transport: AsyncMock,
        mock_email: AsyncMock, rule: AlertRule, snapshot: RateSnapshot,
    ) -> None:
        rule.email = "ada@example.com"
        mock_transport.send.side_effect = SubscriptionExpired("410")
        mock_email.send.side_effect = TransientError("502")

        result = await email_dispatcher.dispatch(rule, snapshot)

        assert result.status is DispatchStatus.FAILED
        assert result.channel(Channel.PUSH).status is DispatchStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_email_only_rule(
        self, email_dispatcher: NotificationDispatcher, mock_transport: AsyncMock,
        mock_email: AsyncMock, rule: AlertRule, snapshot: RateSnapshot,
    ) -> None:
        rule.push_subscription = None
        rule.email = "ada@example.com"

        result = await email_dispatcher.dispatch(rule, snapshot)

        assert result.status is DispatchStatus.SENT
        assert result.channel(Channel.PUSH) is None
        mock_transport.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_email_ignored_without_transport(
        self, dispatcher: NotificationDispatcher, rule: AlertRule, snapshot: RateSnapshot,
    ) -> None:
        rule.push_subscription = None
        rule.email = "ada@example.com"

        result = await dispatcher.dispatch(rule, snapshot)

        assert result.status is DispatchStatus.NO_SUBSCRIPTION

    @pytest.mark.asyncio
    async def test_slow_email_does_not_hold_push(
        self, email_dispatcher: NotificationDispatcher, mock_email: AsyncMock,
        rule: AlertRule, snapshot: RateSnapshot,
    ) -> None:
        async def _hang(*args, **kwargs) -> str:
            await asyncio.sleep(10)
            return "never"

        rule.email = "ada@example.com"
        mock_email.send.side_effect = _hang

        result = await email_dispatcher.dispatch(rule, snapshot)

        assert result.status is DispatchStatus.SENT
        assert result.channel(Channel.EMAIL).error == "timeout"
