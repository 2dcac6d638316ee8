"""Accounts receivable: payments and the carryover summary."""
import logging

from .data import Database
from .invoices import compute_month, prev_year_month, require_customer, sync_ledger_months


def record_payment(db: Database, customer_id: int, year: int, month: int, amount: int,
                   method: str = 'collection', note: str = None) -> int:
    with db.transaction():
        require_customer(db, customer_id)
        payment_id = db.insert_payment(customer_id, year, month, amount, method, note)
        sync_ledger_months(db, customer_id, [(year, month)])
    logging.info(f"Recorded {method} payment {amount} for customer {customer_id} ({year}-{month:02d})")
    return payment_id


def get_ar_summary(db: Database, customer_id: int, year: int, month: int) -> dict:
    """
    Carryover = previous month's invoice minus this month's payments.
    The previous invoice is the stored amount when a row exists, otherwise it
    is recomputed from the calendar with the customer's rounding setting.
    """
    require_customer(db, customer_id)
    prev_year, prev_month = prev_year_month(year, month)
    row = db.get_invoice(customer_id, prev_year, prev_month)
    if row is not None and row['amount'] is not None:
        prev_invoice = row['amount']
    else:
        prev_invoice = compute_month(db, customer_id, prev_year, prev_month).amount
    prev_paid = db.sum_payments(customer_id, prev_year, prev_month)
    current_paid = db.sum_payments(customer_id, year, month)
    return {
        'prev_year': prev_year,
        'prev_month': prev_month,
        'prev_invoice_amount': prev_invoice,
        'prev_payment_amount': prev_paid,
        'current_payment_amount': current_paid,
        'carryover_amount': (prev_invoice or 0) - current_paid,
    }
