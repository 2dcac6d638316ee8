import pytest

from conftest import change
from milkround.ar import get_ar_summary, record_payment
from milkround.errors import NotFoundError
from milkround.invoices import confirm_invoice
from milkround.temporary_changes import create_temporary_change


def test_summary_recomputes_previous_month(seeded):
    db, cid = seeded.db, seeded.customer_id
    summary = get_ar_summary(db, cid, 2025, 2)
    assert (summary["prev_year"], summary["prev_month"]) == (2025, 1)
    assert summary["prev_invoice_amount"] == 9 * 300
    assert summary["current_payment_amount"] == 0
    assert summary["carryover_amount"] == 9 * 300


def test_summary_prefers_confirmed_amount(seeded):
    db, cid = seeded.db, seeded.customer_id
    confirm_invoice(db, cid, 2025, 1, rounding_enabled=False)
    # a later modify is not part of the confirmed figure
    db.insert_row("temporary_changes", {
        "customer_id": cid, "change_date": "2025-01-16", "change_type": "modify",
        "product_id": seeded.milk_id, "quantity": 5, "created_at": "2025-02-01 10:00:00",
    })
    record_payment(db, cid, 2025, 2, 2000)
    summary = get_ar_summary(db, cid, 2025, 2)
    assert summary["prev_invoice_amount"] == 9 * 300
    assert summary["current_payment_amount"] == 2000
    assert summary["carryover_amount"] == 700


def test_summary_year_boundary(seeded):
    db, cid = seeded.db, seeded.customer_id
    record_payment(db, cid, 2024, 12, 500, method="debit")
    summary = get_ar_summary(db, cid, 2025, 1)
    assert (summary["prev_year"], summary["prev_month"]) == (2024, 12)
    assert summary["prev_payment_amount"] == 500


def test_payment_resyncs_ledger(seeded):
    db, cid = seeded.db, seeded.customer_id
    create_temporary_change(db, change(cid, "2025-01-13", "skip", seeded.milk_id))
    record_payment(db, cid, 2025, 1, 1000)
    row = db.get_ledger_row(cid, 2025, 1)
    assert row["payment_amount"] == 1000
    assert row["carryover_amount"] == 8 * 300 - 1000


def test_unknown_customer(db):
    with pytest.raises(NotFoundError):
        get_ar_summary(db, 5, 2025, 1)
    with pytest.raises(NotFoundError):
        record_payment(db, 5, 2025, 1, 100)
