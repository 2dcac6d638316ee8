from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

from dateutil.relativedelta import relativedelta

from .models import CalendarDay, CalendarProduct, ChangeType, DeliveryPattern, TemporaryChange
from .schedule import day_of_week

DEFAULT_TEMPORARY_LABEL = "(temporary) "


def month_bounds(year: int, month: int) -> tuple:
    """First and last day of the month."""
    first = date(year, month, 1)
    return first, first + relativedelta(months=1) - timedelta(days=1)


def current_patterns(patterns: Iterable[DeliveryPattern], day: date) -> Dict[int, DeliveryPattern]:
    """
    Pick the pattern in force per product on `day`.
    While a schedule edit is being split (old pattern end-dated, new one
    started) both may be active; the later start_date wins. A pattern without
    start date loses against any dated one, equal starts keep the higher id.
    """
    best: Dict[int, DeliveryPattern] = {}
    for pat in patterns:
        if not pat.is_active_on(day):
            continue
        existing = best.get(pat.product_id)
        if existing is None or _starts_later(pat, existing):
            best[pat.product_id] = pat
    return best


def _starts_later(candidate: DeliveryPattern, existing: DeliveryPattern) -> bool:
    if candidate.start_date is None:
        return False
    if existing.start_date is None or candidate.start_date > existing.start_date:
        return True
    if candidate.start_date == existing.start_date:
        return (candidate.id or 0) > (existing.id or 0)
    return False


def base_quantity(pattern: DeliveryPattern, dow: int) -> int:
    if pattern.daily_quantities:
        return pattern.daily_quantities.get(dow, 0)
    if dow in pattern.delivery_days:
        return pattern.quantity or 0
    return 0


def is_scheduled(patterns: Iterable[DeliveryPattern], product_id: int, day: date) -> bool:
    pat = current_patterns(patterns, day).get(product_id)
    return pat is not None and base_quantity(pat, day_of_week(day)) > 0


def _change_order(change: TemporaryChange):
    return (change.created_at or datetime.min, change.id or 0)


def _latest_modify(changes: List[TemporaryChange]) -> Optional[TemporaryChange]:
    modifies = [c for c in changes if c.change_type == ChangeType.MODIFY and c.quantity is not None]
    if not modifies:
        return None
    return max(modifies, key=_change_order)


def resolve_day(
    day: date,
    patterns: Iterable[DeliveryPattern],
    changes: Iterable[TemporaryChange],
    temporary_label: str = DEFAULT_TEMPORARY_LABEL,
) -> CalendarDay:
    """Resolve the product lines delivered on a single day."""
    dow = day_of_week(day)
    entry = CalendarDay(date=day, day=day.day, day_of_week=dow)
    todays = [c for c in changes if c.change_date == day]
    whole_day_skip = any(c.change_type == ChangeType.SKIP and c.product_id is None for c in todays)

    for product_id, pat in current_patterns(patterns, day).items():
        quantity = base_quantity(pat, dow)
        unit_price = pat.unit_price
        for_product = [c for c in todays if c.product_id == product_id]

        if whole_day_skip or any(c.change_type == ChangeType.SKIP for c in for_product):
            quantity = 0
        else:
            latest = _latest_modify(for_product)
            if latest is not None:
                quantity = latest.quantity
                if latest.unit_price is not None:
                    unit_price = latest.unit_price

        if quantity > 0:
            entry.products.append(CalendarProduct(
                product_id=product_id,
                product_name=pat.product_name,
                quantity=quantity,
                unit_price=unit_price,
                unit=pat.unit,
                amount=quantity * unit_price,
            ))

    # adds never depend on a pattern
    for change in todays:
        if change.change_type != ChangeType.ADD or not change.quantity or change.quantity <= 0:
            continue
        if change.unit_price is not None:
            unit_price = change.unit_price
        else:
            unit_price = change.product_unit_price or 0
        entry.products.append(CalendarProduct(
            product_id=change.product_id,
            product_name=f"{temporary_label}{change.product_name}",
            quantity=change.quantity,
            unit_price=unit_price,
            unit=change.unit,
            amount=change.quantity * unit_price,
            is_temporary=True,
        ))

    return entry


def resolve_month(
    year: int,
    month: int,
    patterns: Iterable[DeliveryPattern],
    changes: Iterable[TemporaryChange] = (),
    temporary_label: str = DEFAULT_TEMPORARY_LABEL,
) -> List[CalendarDay]:
    """
    Day-by-day projection for one customer and month.
    Pure: identical inputs always yield identical output, nothing is cached.
    """
    patterns = [p for p in patterns if p.is_active]
    by_date: Dict[date, List[TemporaryChange]] = defaultdict(list)
    for change in changes:
        by_date[change.change_date].append(change)

    first, last = month_bounds(year, month)
    days: List[CalendarDay] = []
    cursor = first
    while cursor <= last:
        days.append(resolve_day(cursor, patterns, by_date.get(cursor, []), temporary_label))
        cursor += timedelta(days=1)
    return days
