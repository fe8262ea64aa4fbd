"""Fee computation for cross-currency transfers.

All calculations use Decimal arithmetic exclusively -- no float conversions anywhere.

    fee = clamp(amount * percent_fee + fixed_fee, min_fee, max_fee)
    fee = fee - fee * tier_discount        (only when a tier is given)
    net = amount - fee

The fee is rounded once, to the target currency's minor unit, with
ROUND_HALF_EVEN; net is derived from the rounded fee. Nothing is cached or
accumulated between calls, so identical inputs always produce identical
outputs.
"""

from collections.abc import Iterable, Mapping
from decimal import Decimal, DecimalException

from fxcore.config import FeeSchedule, FeeSettings
from fxcore.exceptions import ValidationError
from fxcore.models import FeeBreakdown, validate_currency
from fxcore.money import convert, quantize_minor, to_decimal

ScheduleTable = Mapping[tuple[str, str], FeeSchedule]

# Share of the fee waived per customer tier; other tiers get no discount
TIER_DISCOUNTS: dict[str, Decimal] = {
    "PREMIUM": Decimal("0.15"),
    "GOLD": Decimal("0.10"),
    "SILVER": Decimal("0.05"),
}


def build_schedule_table(entries: Iterable[FeeSchedule]) -> dict[tuple[str, str], FeeSchedule]:
    """Index schedule entries by (from_currency, to_currency).

    Raises ValidationError on a duplicated pair.
    """
    table: dict[tuple[str, str], FeeSchedule] = {}
    for entry in entries:
        key = (entry.from_currency.upper(), entry.to_currency.upper())
        if key in table:
            raise ValidationError(f"Duplicate fee schedule for {key[0]}->{key[1]}")
        table[key] = entry
    return table


def tier_discount_rate(tier: str | None) -> Decimal:
    if tier is None:
        return Decimal("0")
    return TIER_DISCOUNTS.get(tier.strip().upper(), Decimal("0"))


def calculate_fee(
    amount: Decimal,
    from_currency: str,
    to_currency: str,
    schedule: ScheduleTable,
    tier: str | None = None,
) -> FeeBreakdown:
    """Compute the fee breakdown for a transfer.

    Args:
        amount: Transfer amount (must be a positive Decimal; floats are rejected).
        from_currency: Source currency code.
        to_currency: Target currency code; its minor unit sets the precision.
        schedule: Fee terms keyed by (from_currency, to_currency).
        tier: Customer tier; PREMIUM, GOLD and SILVER take a share off the
            clamped fee. None or any other tier pays the full fee.

    Returns:
        FeeBreakdown with fee and net quantized to the target currency.

    Raises:
        ValidationError: non-positive or out-of-range amount, unknown pair,
            or a fee larger than the amount.
    """
    value = to_decimal(amount)
    if value <= 0:
        raise ValidationError(f"Amount must be positive, got {value}")

    source = validate_currency(from_currency)
    target = validate_currency(to_currency)
    terms = schedule.get((source, target))
    if terms is None:
        raise ValidationError(f"No fee schedule for {source}->{target}")

    try:
        return _breakdown(value, terms, target, tier_discount_rate(tier))
    except DecimalException as e:
        raise ValidationError(f"Amount {value} is out of range") from e


def _breakdown(
    value: Decimal, terms: FeeSchedule, target: str, discount_rate: Decimal
) -> FeeBreakdown:
    percent_component = value * terms.percent_fee
    raw_fee = percent_component + terms.fixed_fee

    clamped: str | None = None
    if raw_fee < terms.min_fee:
        raw_fee = terms.min_fee
        clamped = "min"
    elif raw_fee > terms.max_fee:
        raw_fee = terms.max_fee
        clamped = "max"

    discount = raw_fee * discount_rate
    fee = quantize_minor(raw_fee - discount, target)
    net = quantize_minor(value - fee, target)
    if net < 0:
        raise ValidationError(f"Fee {fee} exceeds transfer amount {value}")

    return FeeBreakdown(
        amount=quantize_minor(value, target),
        fee=fee,
        net=net,
        currency=target,
        percent_component=quantize_minor(percent_component, target),
        fixed_component=quantize_minor(terms.fixed_fee, target),
        clamped=clamped,
        discount=quantize_minor(discount, target),
    )


class FeeCalculator:
    """Fee quotes against the configured schedule.

    The schedule is indexed once at construction and never mutated.

    Args:
        fee_settings: Fee schedule configuration.
    """

    def __init__(self, fee_settings: FeeSettings) -> None:
        self._table = build_schedule_table(fee_settings.schedule)

    @property
    def pairs(self) -> list[tuple[str, str]]:
        """Supported (from, to) pairs, sorted."""
        return sorted(self._table)

    def quote(
        self,
        amount: Decimal,
        from_currency: str,
        to_currency: str,
        tier: str | None = None,
    ) -> FeeBreakdown:
        """Fee breakdown for amount using the configured schedule."""
        return calculate_fee(amount, from_currency, to_currency, self._table, tier=tier)

    def quote_with_rate(
        self,
        amount: Decimal,
        from_currency: str,
        to_currency: str,
        rate: Decimal,
        tier: str | None = None,
    ) -> tuple[FeeBreakdown, Decimal]:
        """Fee breakdown plus the net amount converted at rate.

        Returns:
            (breakdown, recipient_amount) with recipient_amount in to_currency.
        """
        breakdown = self.quote(amount, from_currency, to_currency, tier=tier)
        recipient_amount = convert(breakdown.net, to_decimal(rate, "rate"), breakdown.currency)
        return breakdown, recipient_amount
