"""Decimal money helpers: minor units, rounding and conversion.

All rounding in the project goes through quantize_minor(), which uses
ROUND_HALF_EVEN exclusively. Float inputs are rejected outright.
"""

from decimal import ROUND_HALF_EVEN, Decimal, DecimalException, InvalidOperation

from fxcore.exceptions import ValidationError
from fxcore.models import validate_currency

ROUNDING = ROUND_HALF_EVEN

# ISO 4217 currencies without a fractional unit
_ZERO_DECIMAL = frozenset({
    "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW", "PYG",
    "RWF", "UGX", "UYI", "VND", "VUV", "XAF", "XOF", "XPF",
})

# ISO 4217 currencies with three decimal places
_THREE_DECIMAL = frozenset({"BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND"})


def minor_units(currency: str) -> int:
    """Number of decimal places in the currency's minor unit."""
    code = validate_currency(currency)
    if code in _ZERO_DECIMAL:
        return 0
    if code in _THREE_DECIMAL:
        return 3
    return 2


def quantize_minor(value: Decimal, currency: str) -> Decimal:
    """Round value to the currency's minor unit with banker's rounding.

    Raises ValidationError when value has too many digits to be represented
    at that precision.
    """
    exponent = Decimal(1).scaleb(-minor_units(currency))
    try:
        return value.quantize(exponent, rounding=ROUNDING)
    except InvalidOperation as e:
        raise ValidationError(f"{value} is too large for {currency}") from e


def to_decimal(value: object, field: str = "amount") -> Decimal:
    """Coerce str/int/Decimal to a finite Decimal.

    Floats are refused: a binary float has already lost the exact amount.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"{field} must be a Decimal, str or int, not {type(value).__name__}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation as e:
            raise ValidationError(f"{field} is not a number: {value!r}") from e
    else:
        raise ValidationError(f"{field} has unsupported type {type(value).__name__}")
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite")
    return result


def convert(amount: Decimal, rate: Decimal, currency: str) -> Decimal:
    """Convert amount at rate and round to the target currency's minor unit."""
    if rate <= 0:
        raise ValidationError(f"Conversion rate must be positive, got {rate}")
    try:
        converted = amount * rate
    except DecimalException as e:
        raise ValidationError(f"Converting {amount} at {rate} is out of range") from e
    return quantize_minor(converted, currency)
