"""Shared fixtures: a fresh sqlite store per test plus a small seeded route."""
from dataclasses import dataclass
from datetime import date

import pytest

from milkround.config import default_config
from milkround.data import Database
from milkround.models import DeliveryPattern


@dataclass
class Seeded:
    db: Database
    customer_id: int
    milk_id: int
    yogurt_id: int
    coffee_id: int


def add_pattern(db, customer_id, product_id, days, quantity=1, unit_price=100,
                start=date(2024, 1, 1), end=None, daily_quantities=None):
    pat = DeliveryPattern(
        customer_id=customer_id,
        product_id=product_id,
        delivery_days=days,
        daily_quantities=daily_quantities,
        quantity=quantity,
        unit_price=unit_price,
        start_date=start,
        end_date=end,
    )
    db.save_pattern(pat)
    return pat


@pytest.fixture
def db(tmp_path):
    db = Database(str(tmp_path / "milkround.db"), default_config())
    yield db
    db.close()


@pytest.fixture
def seeded(db):
    milk = db.save_product("Milk", 150, "bottle")
    yogurt = db.save_product("Yogurt", 120, "cup")
    coffee = db.save_product("Coffee milk", 180, "bottle")
    customer = db.save_customer("Sato", custom_id="0001")
    db.set_rounding(customer, True)
    # milk Monday and Thursday, two bottles
    add_pattern(db, customer, milk, [1, 4], quantity=2, unit_price=150)
    return Seeded(db, customer, milk, yogurt, coffee)


def change(customer_id, change_date, change_type, product_id=None, quantity=None, unit_price=None, reason=None):
    return {
        "customer_id": customer_id,
        "change_date": change_date,
        "change_type": change_type,
        "product_id": product_id,
        "quantity": quantity,
        "unit_price": unit_price,
        "reason": reason,
    }
