"""Operations offered to callers (CLI, embedding applications).

Each function validates identifiers and months, then delegates to the
engine, invoice and undo modules. Results are plain dicts ready for JSON.
"""
from dataclasses import asdict
from datetime import date, datetime
from typing import Any, Optional

from milkround import ar, invoices, temporary_changes
from milkround.calendar_logic import resolve_month
from milkround.data import Database
from milkround.errors import ValidationError
from milkround.statistics import count_deliveries_by_weekday, summarize_products
from milkround.undo import ENTITIES, CustomerScope, MasterScope, undo
from milkround.validation import (
    InvoiceAction, PaymentPayload, parse_customer_id, parse_id, parse_with, parse_year_month,
)


def jsonable(value: Any) -> Any:
    """Dataclasses, dates and containers to JSON-friendly values."""
    if hasattr(value, '__dataclass_fields__'):
        return jsonable(asdict(value))
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value


def get_calendar(db: Database, customer_id, year, month) -> dict:
    customer_id = parse_customer_id(customer_id)
    year, month = parse_year_month(year, month)
    invoices.require_customer(db, customer_id)
    changes = db.load_temporary_changes(customer_id, year, month)
    days = resolve_month(
        year, month,
        db.load_patterns(customer_id),
        changes,
        db.config.get('temporary_label', '(temporary) '),
    )
    return {
        'customer_id': customer_id,
        'year': year,
        'month': month,
        'calendar': jsonable(days),
        'temporary_changes': jsonable(changes),
        'weekday_counts': count_deliveries_by_weekday(days),
    }


def preview_invoice(db: Database, customer_id, year, month, rounding_enabled: Optional[bool] = None) -> dict:
    customer_id = parse_customer_id(customer_id)
    action = parse_with(InvoiceAction, {'year': year, 'month': month, 'rounding_enabled': rounding_enabled})
    invoices.require_customer(db, customer_id)
    preview = invoices.compute_month(db, customer_id, action.year, action.month, action.rounding_enabled)
    days = resolve_month(
        action.year, action.month,
        db.load_patterns(customer_id),
        db.load_temporary_changes(customer_id, action.year, action.month),
        db.config.get('temporary_label', '(temporary) '),
    )
    result = jsonable(preview)
    result['customer_id'] = customer_id
    result['products'] = jsonable(summarize_products(days))
    result['invoice'] = invoices.get_invoice_status(db, customer_id, action.year, action.month)
    return result


def get_ar_summary(db: Database, customer_id, year, month) -> dict:
    customer_id = parse_customer_id(customer_id)
    year, month = parse_year_month(year, month)
    return ar.get_ar_summary(db, customer_id, year, month)


def confirm_invoice(db: Database, customer_id, year, month, rounding_enabled: Optional[bool] = None) -> dict:
    customer_id = parse_customer_id(customer_id)
    action = parse_with(InvoiceAction, {'year': year, 'month': month, 'rounding_enabled': rounding_enabled})
    return invoices.confirm_invoice(db, customer_id, action.year, action.month, action.rounding_enabled)


def unconfirm_invoice(db: Database, customer_id, year, month) -> dict:
    customer_id = parse_customer_id(customer_id)
    year, month = parse_year_month(year, month)
    return invoices.unconfirm_invoice(db, customer_id, year, month)


def record_payment(db: Database, customer_id, **fields) -> dict:
    customer_id = parse_customer_id(customer_id)
    payment = parse_with(PaymentPayload, fields)
    payment_id = ar.record_payment(db, customer_id, payment.year, payment.month,
                                   payment.amount, payment.method, payment.note)
    return {
        'payment_id': payment_id,
        'ledger': db.get_ledger_row(customer_id, payment.year, payment.month),
    }


def mutate_temporary_change(db: Database, operation: str, payload: dict = None, change_id=None) -> dict:
    return temporary_changes.mutate_temporary_change(db, operation, payload, change_id).to_dict()


def undo_customer(db: Database, customer_id) -> dict:
    customer_id = parse_customer_id(customer_id)
    invoices.require_customer(db, customer_id)
    return undo(db, CustomerScope(customer_id)).to_dict()


def undo_master(db: Database, entity_type: str, entity_id=None) -> dict:
    if entity_type not in ENTITIES or entity_type == 'temporary_change':
        raise ValidationError(f"unknown master entity type: {entity_type!r}")
    if entity_id is not None:
        entity_id = parse_id(entity_id, f"{entity_type} id")
    return undo(db, MasterScope(entity_type, entity_id)).to_dict()
