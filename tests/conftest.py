"""Shared test fixtures for fxcore."""

from collections.abc import AsyncIterator
from decimal import Decimal

import pytest
import pytest_asyncio

from fxcore.config import (
    AppSettings,
    FeeSchedule,
    FeeSettings,
    MonitorSettings,
    ProviderSettings,
    ReferralSettings,
)
from fxcore.data.database import Database
from fxcore.data.referral_store import ReferralStore
from fxcore.data.rule_store import AlertRuleStore


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with test defaults (dummy credentials, fast loops)."""
    return AppSettings(
        log_level="DEBUG",
        provider=ProviderSettings(app_id="test-app-id"),  # type: ignore[arg-type]
        monitor=MonitorSettings(
            interval_seconds=0.01,
            max_workers=4,
            fetch_timeout_seconds=0.5,
            send_timeout_seconds=0.5,
            backoff_base_seconds=0.0,
            backoff_max_seconds=0.0,
        ),
        fees=FeeSettings(
            schedule=[
                FeeSchedule(
                    from_currency="USD",
                    to_currency="NGN",
                    percent_fee=Decimal("0.015"),
                    fixed_fee=Decimal("2"),
                    min_fee=Decimal("5"),
                    max_fee=Decimal("50"),
                ),
            ]
        ),
        referral=ReferralSettings(
            reward_percent=Decimal("0.01"),
            fixed_bonus=Decimal("0"),
            min_transaction_amount=Decimal("10"),
        ),
    )


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncIterator[Database]:
    """Fresh on-disk SQLite database per test."""
    async with Database(str(tmp_path / "fxcore.db")) as db:
        yield db


@pytest.fixture
def rule_store(database: Database) -> AlertRuleStore:
    return AlertRuleStore(database)


@pytest.fixture
def referral_store(database: Database) -> ReferralStore:
    return ReferralStore(database)
