"""Threshold crossing with hysteresis.

A rule is armed until it fires. It fires when the rate reaches the
threshold on its configured side (inclusive). After firing it stays
disarmed until the rate is strictly on the opposite side, at which point
it re-arms without firing. Sitting exactly on the threshold never re-arms.

    direction=above: fire if rate >= threshold, re-arm if rate < threshold
    direction=below: fire if rate <= threshold, re-arm if rate > threshold
"""

from decimal import Decimal
from enum import Enum

from fxcore.models import AlertDirection, AlertRule


class Transition(str, Enum):
    """Outcome of evaluating one rule against one rate."""

    FIRE = "fire"
    REARM = "rearm"
    NONE = "none"


def is_crossing(direction: AlertDirection, rate: Decimal, threshold: Decimal) -> bool:
    """True if rate is on (or at) the triggering side of threshold."""
    if direction is AlertDirection.ABOVE:
        return rate >= threshold
    return rate <= threshold


def is_recrossed(direction: AlertDirection, rate: Decimal, threshold: Decimal) -> bool:
    """True if rate is strictly back on the non-triggering side."""
    if direction is AlertDirection.ABOVE:
        return rate < threshold
    return rate > threshold


def evaluate(rule: AlertRule, rate: Decimal) -> Transition:
    """Decide the transition for rule at rate."""
    if not isinstance(rate, Decimal) or not rate.is_finite() or rate <= 0:
        raise ValueError(f"Invalid rate for rule {rule.id}: {rate!r}")
    if rule.armed and is_crossing(rule.direction, rate, rule.threshold_rate):
        return Transition.FIRE
    if not rule.armed and is_recrossed(rule.direction, rate, rule.threshold_rate):
        return Transition.REARM
    return Transition.NONE
