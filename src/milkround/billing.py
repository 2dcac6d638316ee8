"""Monthly totals derived from the calendar projection.

Confirmed invoices store the resulting figure, not the recipe, so these
functions must stay deterministic: integer arithmetic only, no clock, no
store access.
"""
from typing import Iterable

from .calendar_logic import DEFAULT_TEMPORARY_LABEL, resolve_month
from .models import BillingPreview, CalendarDay, DeliveryPattern, TemporaryChange

ROUNDING_UNIT = 10


def monthly_total(days: Iterable[CalendarDay]) -> int:
    return sum(product.amount for day in days for product in day.products)


def apply_rounding(total: int, rounding_enabled: bool) -> int:
    """Floor to the nearest 10 currency units when rounding is enabled."""
    if not rounding_enabled:
        return total
    return (total // ROUNDING_UNIT) * ROUNDING_UNIT


def rounded_total(days: Iterable[CalendarDay], rounding_enabled: bool) -> int:
    return apply_rounding(monthly_total(days), rounding_enabled)


def preview_month(
    year: int,
    month: int,
    patterns: Iterable[DeliveryPattern],
    changes: Iterable[TemporaryChange],
    rounding_enabled: bool,
    temporary_label: str = DEFAULT_TEMPORARY_LABEL,
) -> BillingPreview:
    days = resolve_month(year, month, patterns, changes, temporary_label)
    raw = monthly_total(days)
    return BillingPreview(
        year=year,
        month=month,
        raw_total=raw,
        amount=apply_rounding(raw, rounding_enabled),
        rounding_enabled=bool(rounding_enabled),
    )
