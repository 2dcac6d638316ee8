import json

import pytest

from conftest import change
from milkround import masters, service
from milkround.errors import ValidationError
from milkround.main import run


def test_get_calendar(seeded):
    result = service.get_calendar(seeded.db, seeded.customer_id, 2025, 1)
    assert len(result["calendar"]) == 31
    monday = result["calendar"][12]
    assert monday["date"] == "2025-01-13"
    assert monday["products"][0]["amount"] == 300
    assert result["weekday_counts"][1] == 4
    json.dumps(result)


@pytest.mark.parametrize("cid, year, month", [(0, 2025, 1), (1, 1999, 1), (1, 2025, 13)])
def test_get_calendar_validates(seeded, cid, year, month):
    with pytest.raises(ValidationError):
        service.get_calendar(seeded.db, cid, year, month)


def test_preview_invoice(seeded):
    preview = service.preview_invoice(seeded.db, seeded.customer_id, 2025, 1)
    assert preview["raw_total"] == 2700
    assert preview["amount"] == 2700
    assert preview["invoice"] == {"status": "not_found"}
    assert preview["products"][0]["quantity"] == 18


def test_mutate_and_undo_customer(seeded):
    db, cid = seeded.db, seeded.customer_id
    result = service.mutate_temporary_change(db, "create", change(cid, "2025-01-13", "skip", seeded.milk_id))
    assert result["affected_months"] == [[2025, 1]]
    undone = service.undo_customer(db, cid)
    assert undone["undo"]["action_type"] == "temporary_change_create"
    assert undone["affected_months"] == [[2025, 1]]
    assert service.undo_customer(db, cid)["message"] == "Nothing to undo"


def test_undo_master(db):
    course = masters.create_course(db, "A")
    assert service.undo_master(db, "course", course["id"])["undo"]["entity_id"] == course["id"]
    with pytest.raises(ValidationError):
        service.undo_master(db, "temporary_change")
    with pytest.raises(ValidationError):
        service.undo_master(db, "customer")


def test_cli_summary_and_errors(seeded, tmp_path, capsys):
    db_path = seeded.db.db_path
    cfg = str(tmp_path / "cfg.json")
    assert run(["--db", db_path, "--config", cfg, "summary", str(seeded.customer_id), "2025", "2"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["prev_invoice_amount"] == 2700

    assert run(["--db", db_path, "--config", cfg, "confirm", str(seeded.customer_id), "2025", "1"]) == 0
    assert json.loads(capsys.readouterr().out)["status"] == "confirmed"

    assert run(["--db", db_path, "--config", cfg, "preview", "999", "2025", "1"]) == 1
    assert "not found" in capsys.readouterr().err


def test_cli_pay_and_undo(seeded, tmp_path, capsys):
    db_path = seeded.db.db_path
    cfg = str(tmp_path / "cfg.json")
    assert run(["--db", db_path, "--config", cfg, "pay", str(seeded.customer_id), "2025", "1", "500",
                "--method", "debit"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["ledger"]["payment_amount"] == 500
    assert run(["--db", db_path, "--config", cfg, "undo", str(seeded.customer_id)]) == 0
    assert json.loads(capsys.readouterr().out)["message"] == "Nothing to undo"
