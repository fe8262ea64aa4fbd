"""Configuration system using pydantic-settings with environment variable loading."""

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderSettings(BaseSettings):
    """OpenExchangeRates connection settings."""

    model_config = SettingsConfigDict(env_prefix="OXR_")

    app_id: SecretStr = SecretStr("")
    base_url: str = "https://openexchangerates.org/api"
    base_currency: str = "USD"  # non-USD bases need a paid plan
    timeout_seconds: float = 10.0


class PushSettings(BaseSettings):
    """Push transport settings (Firebase Cloud Messaging HTTP v1)."""

    model_config = SettingsConfigDict(env_prefix="PUSH_")

    backend: Literal["fcm", "log"] = "log"
    project_id: str = ""
    access_token: SecretStr = SecretStr("")
    base_url: str = "https://fcm.googleapis.com/v1"
    timeout_seconds: float = 5.0


class MailSettings(BaseSettings):
    """Alert email transport settings (Mailgun HTTP API)."""

    model_config = SettingsConfigDict(env_prefix="MAIL_")

    api_key: SecretStr = SecretStr("")
    domain: str = ""  # empty = email channel disabled
    from_address: str = ""  # defaults to alerts@<domain>
    base_url: str = "https://api.mailgun.net/v3"
    timeout_seconds: float = 10.0

    @property
    def sender(self) -> str:
        return self.from_address or f"alerts@{self.domain}"


class WalletSettings(BaseSettings):
    """Wallet API used to credit referral rewards."""

    model_config = SettingsConfigDict(env_prefix="WALLET_")

    base_url: str = ""  # empty = crediting disabled, rewards stay pending
    api_token: SecretStr = SecretStr("")
    timeout_seconds: float = 10.0


class MonitorSettings(BaseSettings):
    """Rate alert monitor loop parameters."""

    model_config = SettingsConfigDict(env_prefix="MONITOR_")

    interval_seconds: float = 60.0
    max_workers: int = 8
    fetch_timeout_seconds: float = 10.0
    send_timeout_seconds: float = 5.0
    backoff_base_seconds: float = 60.0
    backoff_max_seconds: float = 900.0


class FeeSchedule(BaseModel):
    """Fee terms for one ordered currency pair.

    percent_fee is a fraction: Decimal("0.015") means 1.5%.
    """

    from_currency: str
    to_currency: str
    percent_fee: Decimal
    fixed_fee: Decimal = Decimal("0")
    min_fee: Decimal = Decimal("0")
    max_fee: Decimal

    @model_validator(mode="after")
    def _check_bounds(self) -> "FeeSchedule":
        for name in ("percent_fee", "fixed_fee", "min_fee", "max_fee"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")
        if self.min_fee > self.max_fee:
            raise ValueError("min_fee must not exceed max_fee")
        self.from_currency = self.from_currency.upper()
        self.to_currency = self.to_currency.upper()
        return self


def _default_schedule() -> list[FeeSchedule]:
    return [
        FeeSchedule(
            from_currency="USD",
            to_currency="NGN",
            percent_fee=Decimal("0.015"),
            fixed_fee=Decimal("2"),
            min_fee=Decimal("5"),
            max_fee=Decimal("50"),
        ),
        FeeSchedule(
            from_currency="GBP",
            to_currency="NGN",
            percent_fee=Decimal("0.015"),
            fixed_fee=Decimal("1.5"),
            min_fee=Decimal("4"),
            max_fee=Decimal("40"),
        ),
        FeeSchedule(
            from_currency="USD",
            to_currency="GHS",
            percent_fee=Decimal("0.02"),
            fixed_fee=Decimal("1"),
            min_fee=Decimal("3"),
            max_fee=Decimal("35"),
        ),
    ]


class FeeSettings(BaseSettings):
    """Cross-currency transfer fee schedule. Read-only at runtime."""

    model_config = SettingsConfigDict(env_prefix="FEES_")

    schedule: list[FeeSchedule] = _default_schedule()


class ReferralSettings(BaseSettings):
    """First-transaction referral reward policy."""

    model_config = SettingsConfigDict(env_prefix="REFERRAL_")

    reward_percent: Decimal = Decimal("0.01")  # 1% of the qualifying transaction
    fixed_bonus: Decimal = Decimal("0")  # in the referrer's currency
    min_transaction_amount: Decimal = Decimal("10")  # in the transaction's currency
    max_credit_attempts: int = 5
    retry_interval_seconds: float = 300.0
    max_deliveries: int = 5  # per transaction event, before it is left to the sweep
    redelivery_delay_seconds: float = 1.0  # doubled after each failed delivery


class DatabaseSettings(BaseSettings):
    """SQLite persistence location."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    path: str = "data/fxcore.db"


class ApiSettings(BaseSettings):
    """Ops API server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = "0.0.0.0"
    port: int = 8080
    enabled: bool = True


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    provider: ProviderSettings = ProviderSettings()
    push: PushSettings = PushSettings()
    mail: MailSettings = MailSettings()
    wallet: WalletSettings = WalletSettings()
    monitor: MonitorSettings = MonitorSettings()
    fees: FeeSettings = FeeSettings()
    referral: ReferralSettings = ReferralSettings()
    database: DatabaseSettings = DatabaseSettings()
    api: ApiSettings = ApiSettings()
