"""Tests for MailgunEmailTransport and the alert email content."""

import base64
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from fxcore.config import MailSettings
from fxcore.exceptions import FatalConfigError, TransientError
from fxcore.models import AlertDirection, AlertRule, CurrencyPair, RateSnapshot
from fxcore.notifications.email import EmailMessage, MailgunEmailTransport, build_email

MESSAGE = EmailMessage(subject="Your FX rate alert: USD/NGN", text="Rate is now 1510")


def _settings(**overrides) -> MailSettings:
    values = {"api_key": "key-123", "domain": "mg.example.com"}
    values.update(overrides)
    return MailSettings(**values)


def _transport(handler, **overrides) -> MailgunEmailTransport:
    return MailgunEmailTransport(_settings(**overrides), transport=httpx.MockTransport(handler))


class TestBuildEmail:
    def test_content(self) -> None:
        rule = AlertRule(
            id="rule-1",
            user_id="user-1",
            pair=CurrencyPair("USD", "NGN"),
            threshold_rate=Decimal("1500"),
            direction=AlertDirection.ABOVE,
            email="ada@example.com",
        )
        snapshot = RateSnapshot(pair=rule.pair, rate=Decimal("1510.50"), as_of=0.0)

        message = build_email(rule, snapshot)

        assert message.subject == "Your FX rate alert: USD/NGN"
        assert "USD to NGN is now 1510.5" in message.text
        assert "target of 1500" in message.text


class TestMailgunSend:
    @pytest.mark.asyncio
    async def test_success(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "<20261019.1@mg.example.com>", "message": "Queued"})

        transport = _transport(handler)
        message_id = await transport.send("ada@example.com", MESSAGE)
        await transport.close()

        assert message_id == "<20261019.1@mg.example.com>"
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/v3/mg.example.com/messages"
        expected_auth = base64.b64encode(b"api:key-123").decode()
        assert request.headers["Authorization"] == f"Basic {expected_auth}"
        form = parse_qs(request.content.decode())
        assert form["from"] == ["alerts@mg.example.com"]
        assert form["to"] == ["ada@example.com"]
        assert form["subject"] == ["Your FX rate alert: USD/NGN"]
        assert form["text"] == ["Rate is now 1510"]

    @pytest.mark.asyncio
    async def test_explicit_sender(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "m1"})

        transport = _transport(handler, from_address="FX Alerts <fx@example.com>")
        await transport.send("ada@example.com", MESSAGE)
        await transport.close()

        assert parse_qs(seen[0].content.decode())["from"] == ["FX Alerts <fx@example.com>"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 404, 429, 500])
    async def test_errors_transient(self, status: int) -> None:
        transport = _transport(lambda request: httpx.Response(status))
        with pytest.raises(TransientError, match=str(status)):
            await transport.send("ada@example.com", MESSAGE)
        await transport.close()

    @pytest.mark.asyncio
    async def test_timeout_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        transport = _transport(handler)
        with pytest.raises(TransientError, match="timed out"):
            await transport.send("ada@example.com", MESSAGE)
        await transport.close()

    @pytest.mark.asyncio
    async def test_connection_error_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        transport = _transport(handler)
        with pytest.raises(TransientError, match="failed"):
            await transport.send("ada@example.com", MESSAGE)
        await transport.close()

    @pytest.mark.asyncio
    async def test_accepted_with_plain_body(self) -> None:
        transport = _transport(lambda request: httpx.Response(200, text="Queued. Thank you."))
        assert await transport.send("ada@example.com", MESSAGE) == ""
        await transport.close()


class TestMailgunConfig:
    def test_missing_domain(self) -> None:
        with pytest.raises(FatalConfigError):
            MailgunEmailTransport(_settings(domain=""))

    def test_missing_api_key(self) -> None:
        with pytest.raises(FatalConfigError):
            MailgunEmailTransport(_settings(api_key=""))
