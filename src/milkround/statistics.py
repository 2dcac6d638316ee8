from collections import defaultdict
from typing import Dict, Iterable, List, Tuple

from milkround.models import CalendarDay, ProductSummary


def summarize_products(days: Iterable[CalendarDay]) -> List[ProductSummary]:
    """
    Per product line over a month projection:
      quantity      : total units delivered
      delivery_days : number of days with at least one unit
      amount        : sum of the line amounts
    Temporary add lines keep their labelled name and are listed separately
    from the regular line of the same product. Order is first appearance.
    """
    summaries: Dict[Tuple, ProductSummary] = {}
    for day in days:
        for line in day.products:
            key = (line.product_id, line.product_name)
            summary = summaries.get(key)
            if summary is None:
                summary = summaries[key] = ProductSummary(
                    product_id=line.product_id,
                    product_name=line.product_name,
                    unit=line.unit,
                )
            summary.quantity += line.quantity
            summary.delivery_days += 1
            summary.amount += line.amount
    return list(summaries.values())


def count_deliveries_by_weekday(days: Iterable[CalendarDay]) -> Dict[int, int]:
    """0=Sunday … 6=Saturday -> number of days with any delivery."""
    counts: Dict[int, int] = defaultdict(int)
    for day in days:
        if day.products:
            counts[day.day_of_week] += 1
    return {dow: counts.get(dow, 0) for dow in range(7)}
