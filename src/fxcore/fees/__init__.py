"""Transfer fee computation."""

from fxcore.fees.calculator import FeeCalculator, build_schedule_table, calculate_fee

__all__ = ["FeeCalculator", "build_schedule_table", "calculate_fee"]
