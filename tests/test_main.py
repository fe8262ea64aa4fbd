"""Tests for component wiring and settings loading."""

from decimal import Decimal

import pytest

from fxcore.alerts.monitor import RateAlertMonitor
from fxcore.config import (
    AppSettings,
    DatabaseSettings,
    FeeSettings,
    MailSettings,
    MonitorSettings,
    ProviderSettings,
    PushSettings,
    ReferralSettings,
    WalletSettings,
)
from fxcore.exceptions import FatalConfigError
from fxcore.main import _build_components
from fxcore.notifications.email import MailgunEmailTransport
from fxcore.notifications.transport import FcmPushTransport, LoggingPushTransport
from fxcore.referral.creditor import HttpWalletCreditor


class TestBuildComponents:
    def test_defaults(self, mock_settings: AppSettings, tmp_path) -> None:
        mock_settings.database = DatabaseSettings(path=str(tmp_path / "fx.db"))
        components = _build_components(mock_settings)

        assert isinstance(components["rule_monitor"], RateAlertMonitor)
        assert isinstance(components["transport"], LoggingPushTransport)
        assert components["creditor"] is None
        assert components["email_transport"] is None
        assert components["rule_store"]._database is components["database"]
        assert components["referral_store"]._database is components["database"]

    def test_fcm_and_wallet(self, mock_settings: AppSettings) -> None:
        mock_settings.push = PushSettings(
            backend="fcm", project_id="proj", access_token="tok"  # type: ignore[arg-type]
        )
        mock_settings.wallet = WalletSettings(base_url="https://wallet.internal")
        components = _build_components(mock_settings)

        assert isinstance(components["transport"], FcmPushTransport)
        assert isinstance(components["creditor"], HttpWalletCreditor)

    def test_mailgun_and_redelivery_settings(self, mock_settings: AppSettings) -> None:
        mock_settings.mail = MailSettings(domain="mg.example.com", api_key="key")  # type: ignore[arg-type]
        mock_settings.referral = ReferralSettings(max_deliveries=7, redelivery_delay_seconds=0.5)
        components = _build_components(mock_settings)

        assert isinstance(components["email_transport"], MailgunEmailTransport)
        assert components["dispatcher"]._email_transport is components["email_transport"]
        assert components["event_source"]._max_deliveries == 7
        assert components["event_source"]._retry_delay == 0.5

    def test_mail_without_api_key_fails_fast(self, mock_settings: AppSettings) -> None:
        mock_settings.mail = MailSettings(domain="mg.example.com", api_key="")  # type: ignore[arg-type]
        with pytest.raises(FatalConfigError):
            _build_components(mock_settings)

    def test_fcm_without_credentials_fails_fast(self, mock_settings: AppSettings) -> None:
        mock_settings.push = PushSettings(backend="fcm")
        with pytest.raises(FatalConfigError):
            _build_components(mock_settings)


class TestSettingsFromEnv:
    def test_prefixed_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MONITOR_INTERVAL_SECONDS", "15")
        monkeypatch.setenv("REFERRAL_REWARD_PERCENT", "0.025")
        monkeypatch.setenv("OXR_APP_ID", "from-env")

        assert MonitorSettings().interval_seconds == 15
        assert ReferralSettings().reward_percent == Decimal("0.025")
        assert ProviderSettings().app_id.get_secret_value() == "from-env"

    def test_fee_schedule_from_json(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(
            "FEES_SCHEDULE",
            '[{"from_currency": "EUR", "to_currency": "NGN", "percent_fee": "0.01", "max_fee": "20"}]',
        )
        schedule = FeeSettings().schedule
        assert len(schedule) == 1
        assert schedule[0].percent_fee == Decimal("0.01")
        assert schedule[0].min_fee == Decimal("0")
