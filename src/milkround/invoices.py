"""Invoice state machine and stored-total resynchronization.

States per (customer, year, month): open (no row, or a row with status
``open``) and confirmed. A confirmed month is read-only for temporary
changes until it is explicitly unconfirmed; the row is kept on unconfirm.
"""
import logging
from datetime import date
from typing import Iterable, List, Optional, Tuple

from dateutil.relativedelta import relativedelta

from .billing import preview_month
from .data import Database, now_iso
from .errors import NotFoundError, ValidationError
from .models import BillingPreview, InvoiceState


def prev_year_month(year: int, month: int) -> Tuple[int, int]:
    prev = date(year, month, 1) - relativedelta(months=1)
    return prev.year, prev.month


def month_of(value) -> Tuple[int, int]:
    d = value if isinstance(value, date) else date.fromisoformat(str(value)[:10])
    return d.year, d.month


def require_customer(db: Database, customer_id: int):
    if not db.customer_exists(customer_id):
        raise NotFoundError(f"customer {customer_id} not found")


def compute_month(db: Database, customer_id: int, year: int, month: int,
                  rounding_enabled: Optional[bool] = None) -> BillingPreview:
    """Run the billing aggregator over the stored schedule of one month."""
    if rounding_enabled is None:
        rounding_enabled = db.get_rounding(customer_id)
    return preview_month(
        year, month,
        db.load_patterns(customer_id),
        db.load_temporary_changes(customer_id, year, month),
        rounding_enabled,
        db.config.get('temporary_label', '(temporary) '),
    )


def get_invoice_status(db: Database, customer_id: int, year: int, month: int) -> dict:
    row = db.get_invoice(customer_id, year, month)
    if row is None:
        return {'status': 'not_found'}
    return {
        'status': row['status'],
        'amount': row['amount'],
        'rounding_enabled': bool(row['rounding_enabled']),
        'confirmed_at': row['confirmed_at'],
    }


def is_month_confirmed(db: Database, customer_id: int, year: int, month: int) -> bool:
    row = db.get_invoice(customer_id, year, month)
    return row is not None and row['status'] == InvoiceState.CONFIRMED.value


def ensure_month_open(db: Database, customer_id: int, year: int, month: int):
    """Guard for schedule mutations; call inside the mutating transaction."""
    if is_month_confirmed(db, customer_id, year, month):
        logging.info(f"Rejected mutation for confirmed month {year}-{month:02d} (customer {customer_id})")
        raise ValidationError(
            f"{year}-{month:02d} is already confirmed for customer {customer_id}; "
            "unconfirm the month first"
        )


def ensure_months_open(db: Database, customer_id: int, months: Iterable[Tuple[int, int]]):
    for year, month in sorted(set(months)):
        ensure_month_open(db, customer_id, year, month)


def confirm_invoice(db: Database, customer_id: int, year: int, month: int,
                    rounding_enabled: Optional[bool] = None) -> dict:
    with db.transaction():
        require_customer(db, customer_id)
        row = db.get_invoice(customer_id, year, month)
        if row is not None and row['status'] == InvoiceState.CONFIRMED.value:
            return row
        preview = compute_month(db, customer_id, year, month, rounding_enabled)
        db.upsert_invoice(customer_id, year, month, preview.amount, preview.rounding_enabled,
                          InvoiceState.CONFIRMED.value, now_iso())
        sync_ledger_months(db, customer_id, [(year, month)])
        row = db.get_invoice(customer_id, year, month)
    logging.info(f"Confirmed invoice {year}-{month:02d} for customer {customer_id}: "
                 f"raw={preview.raw_total} amount={preview.amount}")
    return row


def unconfirm_invoice(db: Database, customer_id: int, year: int, month: int) -> dict:
    with db.transaction():
        require_customer(db, customer_id)
        row = db.get_invoice(customer_id, year, month)
        if row is None:
            return {'customer_id': customer_id, 'year': year, 'month': month,
                    'status': InvoiceState.OPEN.value}
        db.set_invoice_status(customer_id, year, month, InvoiceState.OPEN.value)
        sync_ledger_months(db, customer_id, [(year, month)])
        row = db.get_invoice(customer_id, year, month)
    logging.info(f"Unconfirmed invoice {year}-{month:02d} for customer {customer_id}")
    return row


def _batch_targets(db: Database, course_id: Optional[int], customer_ids: Optional[List[int]]) -> List[int]:
    if customer_ids:
        return list(customer_ids)
    return db.customer_ids(course_id)


def confirm_invoices_batch(db: Database, year: int, month: int, course_id: int = None,
                           customer_ids: List[int] = None) -> dict:
    with db.transaction():
        targets = _batch_targets(db, course_id, customer_ids)
        results = [confirm_invoice(db, cid, year, month) for cid in targets]
    return {'year': year, 'month': month, 'count': len(results), 'results': results}


def unconfirm_invoices_batch(db: Database, year: int, month: int, course_id: int = None,
                             customer_ids: List[int] = None) -> dict:
    with db.transaction():
        targets = _batch_targets(db, course_id, customer_ids)
        results = [unconfirm_invoice(db, cid, year, month) for cid in targets]
    return {'year': year, 'month': month, 'count': len(results), 'results': results}


def invoice_amount(db: Database, customer_id: int, year: int, month: int) -> int:
    """Confirmed amount when there is one, else the recomputed rounded total."""
    row = db.get_invoice(customer_id, year, month)
    if row is not None and row['status'] == InvoiceState.CONFIRMED.value:
        return row['amount']
    return compute_month(db, customer_id, year, month).amount


def sync_ledger_month(db: Database, customer_id: int, year: int, month: int) -> dict:
    """Re-derive the stored ar_ledger totals of one month."""
    prev = db.get_ledger_row(customer_id, *prev_year_month(year, month))
    opening = prev['carryover_amount'] if prev else 0
    invoiced = invoice_amount(db, customer_id, year, month)
    paid = db.sum_payments(customer_id, year, month)
    db.upsert_ledger_row(customer_id, year, month, opening, invoiced, paid, opening + invoiced - paid)
    return db.get_ledger_row(customer_id, year, month)


def sync_ledger_months(db: Database, customer_id: int, months: Iterable[Tuple[int, int]]):
    """Re-derive the affected months, then every later stored month: each
    opening balance is the previous month's carryover."""
    months = sorted(set(months))
    if not months:
        return
    later = db.ledger_months_after(customer_id, *months[0])
    for year, month in sorted(set(months) | set(later)):
        sync_ledger_month(db, customer_id, year, month)
