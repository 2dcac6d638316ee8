from datetime import date

import pytest

from conftest import change
from milkround import invoices
from milkround.ar import record_payment
from milkround.errors import NotFoundError, ValidationError
from milkround.temporary_changes import create_temporary_change


@pytest.fixture
def priced(db):
    """Customer whose January 2025 raw total is exactly 1234."""
    product = db.save_product("Cheese", 1234, "pack")
    cid = db.save_customer("Yamada")
    db.set_rounding(cid, True)
    create_temporary_change(db, change(cid, "2025-01-20", "add", product, quantity=1))
    return db, cid


def test_status_not_found_without_row(seeded):
    assert invoices.get_invoice_status(seeded.db, seeded.customer_id, 2025, 1) == {"status": "not_found"}


def test_confirm_stores_rounded_amount(priced):
    db, cid = priced
    row = invoices.confirm_invoice(db, cid, 2025, 1)
    assert row["amount"] == 1230
    assert row["status"] == "confirmed"
    assert row["confirmed_at"]
    status = invoices.get_invoice_status(db, cid, 2025, 1)
    assert status["status"] == "confirmed"
    assert status["rounding_enabled"] is True


def test_confirm_with_explicit_rounding_flag(priced):
    db, cid = priced
    row = invoices.confirm_invoice(db, cid, 2025, 1, rounding_enabled=False)
    assert row["amount"] == 1234
    assert row["rounding_enabled"] == 0


def test_confirm_twice_is_a_noop(priced):
    db, cid = priced
    first = invoices.confirm_invoice(db, cid, 2025, 1)
    second = invoices.confirm_invoice(db, cid, 2025, 1, rounding_enabled=False)
    assert second == first


def test_unconfirm_keeps_row_and_reopens(priced):
    db, cid = priced
    invoices.confirm_invoice(db, cid, 2025, 1)
    row = invoices.unconfirm_invoice(db, cid, 2025, 1)
    assert row["status"] == "open"
    assert row["amount"] == 1230
    assert not invoices.is_month_confirmed(db, cid, 2025, 1)
    invoices.ensure_month_open(db, cid, 2025, 1)


def test_unconfirm_without_row_reports_open(seeded):
    row = invoices.unconfirm_invoice(seeded.db, seeded.customer_id, 2025, 3)
    assert row["status"] == "open"
    assert seeded.db.get_invoice(seeded.customer_id, 2025, 3) is None


def test_reconfirm_recomputes(priced):
    db, cid = priced
    invoices.confirm_invoice(db, cid, 2025, 1)
    invoices.unconfirm_invoice(db, cid, 2025, 1)
    product = db.save_product("Butter", 100, "pack")
    create_temporary_change(db, change(cid, "2025-01-21", "add", product, quantity=1))
    assert invoices.confirm_invoice(db, cid, 2025, 1)["amount"] == 1330


def test_ensure_month_open_rejects_confirmed(priced):
    db, cid = priced
    invoices.confirm_invoice(db, cid, 2025, 1)
    with pytest.raises(ValidationError, match="unconfirm"):
        invoices.ensure_month_open(db, cid, 2025, 1)


def test_confirm_unknown_customer(db):
    with pytest.raises(NotFoundError):
        invoices.confirm_invoice(db, 999, 2025, 1)


def test_batch_confirm_by_course(db):
    course = db.insert_row("delivery_courses", {"course_name": "North", "custom_id": "001"})
    product = db.save_product("Milk", 150, "bottle")
    ids = [db.save_customer(name, course_id=course) for name in ("A", "B")]
    other = db.save_customer("C")
    for cid in ids + [other]:
        create_temporary_change(db, change(cid, "2025-01-20", "add", product, quantity=1))
    result = invoices.confirm_invoices_batch(db, 2025, 1, course_id=course)
    assert result["count"] == 2
    assert all(invoices.is_month_confirmed(db, cid, 2025, 1) for cid in ids)
    assert not invoices.is_month_confirmed(db, other, 2025, 1)
    invoices.unconfirm_invoices_batch(db, 2025, 1, customer_ids=ids)
    assert not any(invoices.is_month_confirmed(db, cid, 2025, 1) for cid in ids)


def test_ledger_carries_over(priced):
    db, cid = priced
    invoices.confirm_invoice(db, cid, 2025, 1)
    db.insert_payment(cid, 2025, 1, 1000)
    jan = invoices.sync_ledger_month(db, cid, 2025, 1)
    assert (jan["opening_balance"], jan["invoice_amount"], jan["payment_amount"]) == (0, 1230, 1000)
    assert jan["carryover_amount"] == 230
    feb = invoices.sync_ledger_month(db, cid, 2025, 2)
    assert feb["opening_balance"] == 230
    assert feb["invoice_amount"] == 0
    assert feb["carryover_amount"] == 230


def test_month_helpers():
    assert invoices.prev_year_month(2025, 1) == (2024, 12)
    assert invoices.prev_year_month(2025, 3) == (2025, 2)
    assert invoices.month_of("2025-01-31 10:00:00") == (2025, 1)
    assert invoices.month_of(date(2024, 12, 5)) == (2024, 12)


def test_january_change_carries_into_stored_february(seeded):
    db, cid = seeded.db, seeded.customer_id
    record_payment(db, cid, 2025, 1, 1000)
    record_payment(db, cid, 2025, 2, 500)
    create_temporary_change(db, change(cid, "2025-01-13", "skip", seeded.milk_id))
    jan = db.get_ledger_row(cid, 2025, 1)
    feb = db.get_ledger_row(cid, 2025, 2)
    assert jan["carryover_amount"] == 8 * 300 - 1000
    assert feb["opening_balance"] == jan["carryover_amount"]
    assert feb["carryover_amount"] == jan["carryover_amount"] + 8 * 300 - 500


def test_confirm_and_payment_update_later_openings(seeded):
    db, cid = seeded.db, seeded.customer_id
    record_payment(db, cid, 2025, 2, 0)
    invoices.confirm_invoice(db, cid, 2025, 1)
    assert db.get_ledger_row(cid, 2025, 2)["opening_balance"] == 9 * 300
    record_payment(db, cid, 2025, 1, 700)
    jan = db.get_ledger_row(cid, 2025, 1)
    assert jan["carryover_amount"] == 9 * 300 - 700
    assert db.get_ledger_row(cid, 2025, 2)["opening_balance"] == jan["carryover_amount"]
