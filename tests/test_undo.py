import pytest

from conftest import change
from milkround.errors import IntegrityError, UnsupportedActionError, ValidationError
from milkround.invoices import compute_month, confirm_invoice
from milkround.temporary_changes import (
    create_temporary_change, delete_temporary_change, update_temporary_change,
)
from milkround.undo import (
    ActionOp, CreateAction, CustomerScope, DeleteAction, UndoLedger, UpdateAction,
    customer_ledger, parse_action, push_customer_undo, undo,
)


def test_nothing_to_undo(seeded):
    result = undo(seeded.db, CustomerScope(seeded.customer_id))
    assert result.nothing_to_undo
    assert result.entry is None
    assert result.to_dict()["undo"] is None


def test_undo_create_removes_row(seeded):
    db, cid = seeded.db, seeded.customer_id
    before = db.temporary_change_rows(cid)
    create_temporary_change(db, change(cid, "2025-01-15", "add", seeded.yogurt_id, quantity=2))
    result = undo(db, CustomerScope(cid))
    assert result.entry.action_type == "temporary_change_create"
    assert result.affected_months == [(2025, 1)]
    assert db.temporary_change_rows(cid) == before
    assert db.get_ledger_row(cid, 2025, 1)["invoice_amount"] == 9 * 300


def test_undo_update_restores_every_field(seeded):
    db, cid = seeded.db, seeded.customer_id
    created = create_temporary_change(
        db, change(cid, "2025-01-16", "modify", seeded.milk_id, quantity=1, unit_price=120, reason="trip")).change
    before = db.temporary_change_rows(cid)
    update_temporary_change(db, created["id"], change(cid, "2025-02-06", "modify", seeded.milk_id, quantity=4))
    result = undo(db, CustomerScope(cid))
    assert result.affected_months == [(2025, 1), (2025, 2)]
    assert db.temporary_change_rows(cid) == before


def test_delete_then_undo_restores_original_id_and_total(seeded):
    db, cid = seeded.db, seeded.customer_id
    create_temporary_change(db, change(cid, "2025-01-13", "skip", seeded.milk_id))
    target = create_temporary_change(
        db, change(cid, "2025-01-16", "modify", seeded.milk_id, quantity=5, unit_price=140)).change
    before_rows = db.temporary_change_rows(cid)
    before_total = compute_month(db, cid, 2025, 1).amount

    delete_temporary_change(db, target["id"])
    assert compute_month(db, cid, 2025, 1).amount != before_total

    result = undo(db, CustomerScope(cid))
    assert result.entry.action_type == "temporary_change_delete"
    assert db.fetch_row("temporary_changes", target["id"]) == target
    assert db.temporary_change_rows(cid) == before_rows
    assert compute_month(db, cid, 2025, 1).amount == before_total


def test_single_slot_keeps_only_latest(seeded):
    db, cid = seeded.db, seeded.customer_id
    first = create_temporary_change(db, change(cid, "2025-01-13", "skip", seeded.milk_id)).change
    create_temporary_change(db, change(cid, "2025-01-16", "skip", seeded.milk_id))
    assert customer_ledger(db).pending(CustomerScope(cid)) == 1
    undo(db, CustomerScope(cid))
    assert [r["id"] for r in db.temporary_change_rows(cid)] == [first["id"]]
    assert undo(db, CustomerScope(cid)).nothing_to_undo


def test_deeper_ledger_is_bounded(seeded):
    db, cid = seeded.db, seeded.customer_id
    db.config["undo_depth"] = 2
    for day in ("2025-01-13", "2025-01-16", "2025-01-20"):
        create_temporary_change(db, change(cid, day, "skip", seeded.milk_id))
    assert customer_ledger(db).pending(CustomerScope(cid)) == 2
    undo(db, CustomerScope(cid))
    undo(db, CustomerScope(cid))
    assert [r["change_date"] for r in db.temporary_change_rows(cid)] == ["2025-01-13"]
    assert undo(db, CustomerScope(cid)).nothing_to_undo


def test_scopes_are_independent(seeded):
    db, cid = seeded.db, seeded.customer_id
    other = db.save_customer("Other")
    create_temporary_change(db, change(cid, "2025-01-13", "skip", seeded.milk_id))
    assert undo(db, CustomerScope(other)).nothing_to_undo
    assert not undo(db, CustomerScope(cid)).nothing_to_undo


def test_undo_respects_confirmed_month(seeded):
    db, cid = seeded.db, seeded.customer_id
    create_temporary_change(db, change(cid, "2025-01-13", "skip", seeded.milk_id))
    confirm_invoice(db, cid, 2025, 1)
    with pytest.raises(ValidationError, match="unconfirm"):
        undo(db, CustomerScope(cid))
    # the entry is still pending after the rollback
    assert customer_ledger(db).pending(CustomerScope(cid)) == 1


def test_failed_inverse_rolls_back_and_keeps_entry(seeded):
    db, cid = seeded.db, seeded.customer_id
    product = db.save_product("Seasonal", 300, "bottle")
    created = create_temporary_change(db, change(cid, "2025-01-15", "add", product, quantity=1)).change
    delete_temporary_change(db, created["id"])
    db.delete_product(product)

    with pytest.raises(IntegrityError):
        undo(db, CustomerScope(cid))
    assert db.fetch_row("temporary_changes", created["id"]) is None
    assert customer_ledger(db).pending(CustomerScope(cid)) == 1


def test_parse_action_variants(seeded):
    record = {"id": 1, "change_date": "2025-01-13"}
    assert isinstance(parse_action("temporary_change_create", {"record": record}), CreateAction)
    assert isinstance(parse_action("course_update", {"before": record}), UpdateAction)
    assert isinstance(parse_action("staff_delete", {"deleted": record}), DeleteAction)
    assert parse_action("company_update", {"before": None}).before is None


@pytest.mark.parametrize("kind, payload", [
    ("temporary_change_archive", {"record": {"id": 1}}),
    ("customer_delete", {"deleted": {"id": 1}}),
    ("company_create", {"record": {"id": 1}}),
    ("course_delete", {"before": {"id": 1}}),
    ("staff_update", {"before": {"name": "no id"}}),
    ("", {}),
])
def test_parse_action_rejects_unsupported(kind, payload):
    with pytest.raises(UnsupportedActionError):
        parse_action(kind, payload)


def test_unsupported_entry_fails_loudly(seeded):
    db, cid = seeded.db, seeded.customer_id
    db.insert_row("undo_stack", {
        "customer_id": cid, "action_type": "temporary_change_archive",
        "payload": "{}", "created_at": "2025-01-01 00:00:00",
    })
    with pytest.raises(UnsupportedActionError):
        undo(db, CustomerScope(cid))


def test_push_validates_and_pop_returns_entry(seeded):
    db, cid = seeded.db, seeded.customer_id
    with pytest.raises(UnsupportedActionError):
        customer_ledger(db).push(CustomerScope(cid), "temporary_change_create", {"before": {}})
    entry = push_customer_undo(db, cid, ActionOp.DELETE, {"id": 5, "change_date": "2025-01-13"})
    ledger = UndoLedger(db, "undo_stack", depth=3)
    popped = ledger.pop(CustomerScope(cid))
    assert popped.id == entry.id
    assert popped.payload == {"deleted": {"id": 5, "change_date": "2025-01-13"}}
    assert ledger.pop(CustomerScope(cid)) is None
