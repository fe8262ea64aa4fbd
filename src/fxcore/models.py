"""Shared data models for the monetary event-processing core.

CRITICAL: All monetary values and rates use Decimal. Never use float for
amounts, fees or exchange rates.
"""

import re
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from fxcore.exceptions import ValidationError

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


def validate_currency(code: str) -> str:
    """Return an upper-case ISO 4217 code or raise ValidationError."""
    if not isinstance(code, str):
        raise ValidationError(f"Currency code must be a string, got {type(code).__name__}")
    normalized = code.strip().upper()
    if not _CURRENCY_RE.match(normalized):
        raise ValidationError(f"Invalid currency code: {code!r}")
    return normalized


class AlertDirection(str, Enum):
    """Which side of the threshold triggers the alert."""

    ABOVE = "above"
    BELOW = "below"


class RewardStatus(str, Enum):
    """Referral reward lifecycle."""

    PENDING = "pending"
    CREDITED = "credited"
    FAILED = "failed"


@dataclass(frozen=True)
class CurrencyPair:
    """Ordered currency pair, e.g. USD/NGN (1 USD = rate NGN)."""

    base: str
    quote: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "base", validate_currency(self.base))
        object.__setattr__(self, "quote", validate_currency(self.quote))
        if self.base == self.quote:
            raise ValidationError(f"Pair needs two distinct currencies: {self.base}")

    @classmethod
    def parse(cls, text: str) -> "CurrencyPair":
        """Parse "USD/NGN" or "USDNGN"."""
        cleaned = text.strip().upper()
        if "/" in cleaned:
            base, _, quote = cleaned.partition("/")
        elif len(cleaned) == 6:
            base, quote = cleaned[:3], cleaned[3:]
        else:
            raise ValidationError(f"Cannot parse currency pair: {text!r}")
        return cls(base, quote)

    def __str__(self) -> str:
        return f"{self.base}/{self.quote}"


@dataclass
class AlertRule:
    """A user-defined FX rate alert.

    armed/last_triggered_at/notified_count are owned by the monitor;
    active/threshold_rate/direction are owned by the user. version is
    bumped on every write and used for compare-and-swap.
    """

    id: str
    user_id: str
    pair: CurrencyPair
    threshold_rate: Decimal
    direction: AlertDirection
    active: bool = True
    armed: bool = True
    last_triggered_at: float | None = None
    push_subscription: dict[str, Any] | None = None
    notified_count: int = 0
    version: int = 0
    created_at: float = field(default_factory=time.time)
    email: str | None = None


@dataclass(frozen=True)
class RateSnapshot:
    """Rate observed for a pair during one monitor tick. Never persisted."""

    pair: CurrencyPair
    rate: Decimal
    as_of: float  # Unix seconds reported by the provider


@dataclass
class Referral:
    """Link between a referrer and the user they referred."""

    referee_id: str
    referrer_id: str
    referrer_currency: str
    first_transaction_id: str | None = None
    first_transaction_at: float | None = None
    first_transaction_amount: Decimal | None = None
    first_transaction_currency: str | None = None
    created_at: float = field(default_factory=time.time)


@dataclass
class ReferralReward:
    """Reward owed to a referrer for a referee's first transaction.

    At most one row exists per (referrer_id, referee_id).
    """

    id: str
    referrer_id: str
    referee_id: str
    amount: Decimal
    currency: str
    status: RewardStatus
    transaction_id: str
    created_at: float
    credited_at: float | None = None
    failure_reason: str | None = None
    attempts: int = 0


@dataclass(frozen=True)
class TransactionEvent:
    """A transaction that reached the completed state upstream."""

    user_id: str
    amount: Decimal
    currency: str
    transaction_id: str
    completed_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class FeeBreakdown:
    """Result of a fee computation, all values quantized to the target currency."""

    amount: Decimal
    fee: Decimal
    net: Decimal
    currency: str
    percent_component: Decimal
    fixed_component: Decimal
    clamped: str | None = None  # "min", "max" or None
    discount: Decimal = Decimal("0")  # tier discount already taken off fee


@dataclass
class TickResult:
    """Summary of one monitor tick."""

    tick_id: str
    processed: int = 0
    notified: int = 0
    rearmed: int = 0
    errors: int = 0
    push_failed: int = 0
    email_failed: int = 0
    skipped_pairs: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
