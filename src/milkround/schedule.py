"""Normalization of stored schedule rows into the canonical model.

Weekday sets and quantity maps reach us either as structured values or as
JSON text (sometimes encoded twice by older clients). Everything is folded
into one shape here so the calendar engine never deals with serialized
forms.
"""
import json
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Mapping, Optional

from dateutil import parser as date_parser

from milkround.models import ChangeType, DeliveryPattern, TemporaryChange


def day_of_week(d: date) -> int:
    """0=Sunday … 6=Saturday."""
    return (d.weekday() + 1) % 7


def _safe_json(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def _decode(value: Any) -> Any:
    # up to two rounds: '"[1,3]"' -> '[1,3]' -> [1, 3]
    parsed = _safe_json(value)
    if isinstance(parsed, str):
        parsed = _safe_json(parsed)
    return parsed


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(Decimal(str(value).strip()).to_integral_value(rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError):
        return None


def ensure_weekdays(value: Any) -> List[int]:
    if value is None or value == "":
        return []
    parsed = _decode(value)
    if isinstance(parsed, str):
        # legacy comma separated text
        parsed = [x for x in parsed.split(",") if x.strip()]
    if isinstance(parsed, (int, float)) and not isinstance(parsed, bool):
        parsed = [parsed]
    if not isinstance(parsed, (list, tuple, set)):
        return []
    days = set()
    for item in parsed:
        wd = _to_int(item)
        if wd is not None and 0 <= wd <= 6:
            days.add(wd)
    return sorted(days)


def ensure_quantity_map(value: Any) -> Optional[Dict[int, int]]:
    """Per-weekday quantities, or None when no usable map is present."""
    if value is None or value == "":
        return None
    parsed = _decode(value)
    if not isinstance(parsed, Mapping):
        return None
    out: Dict[int, int] = {}
    for key, qty in parsed.items():
        wd = _to_int(key)
        amount = _to_int(qty)
        if wd is None or amount is None or not 0 <= wd <= 6:
            continue
        out[wd] = amount
    return out or None


def to_amount(value: Any, default: int = 0) -> int:
    amount = _to_int(value)
    return default if amount is None else amount


def to_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def to_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        try:
            ts = date_parser.isoparse(str(value))
        except (ValueError, OverflowError):
            try:
                ts = date_parser.parse(str(value))
            except (ValueError, OverflowError):
                return None
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def _get(row: Any, key: str, default: Any = None) -> Any:
    try:
        value = row[key]
    except (KeyError, IndexError):
        return default
    return default if value is None else value


def pattern_from_row(row: Any) -> DeliveryPattern:
    pat = DeliveryPattern(
        customer_id=int(row["customer_id"]),
        product_id=int(row["product_id"]),
        delivery_days=ensure_weekdays(_get(row, "delivery_days")),
        daily_quantities=ensure_quantity_map(_get(row, "daily_quantities")),
        quantity=to_amount(_get(row, "quantity"), default=0),
        unit_price=to_amount(_get(row, "unit_price")),
        start_date=to_date(_get(row, "start_date")),
        end_date=to_date(_get(row, "end_date")),
        is_active=bool(_get(row, "is_active", True)),
        product_name=_get(row, "product_name", ""),
        unit=_get(row, "unit"),
    )
    pat.id = _get(row, "id")
    return pat


def change_from_row(row: Any) -> TemporaryChange:
    product_id = _get(row, "product_id")
    quantity = _get(row, "quantity")
    unit_price = _get(row, "unit_price")
    master_price = _get(row, "product_unit_price")
    tc = TemporaryChange(
        customer_id=int(row["customer_id"]),
        change_date=to_date(row["change_date"]),
        change_type=ChangeType(row["change_type"]),
        product_id=int(product_id) if product_id is not None else None,
        quantity=_to_int(quantity),
        unit_price=_to_int(unit_price),
        reason=_get(row, "reason"),
        created_at=to_timestamp(_get(row, "created_at")),
        product_name=_get(row, "product_name", ""),
        product_unit_price=_to_int(master_price),
        unit=_get(row, "unit"),
    )
    tc.id = _get(row, "id")
    return tc
