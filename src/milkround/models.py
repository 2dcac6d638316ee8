# src/milkround/models.py
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional


class ChangeType(str, Enum):
    SKIP = "skip"
    ADD = "add"
    MODIFY = "modify"


class InvoiceState(str, Enum):
    OPEN = "open"
    CONFIRMED = "confirmed"


@dataclass
class DeliveryPattern:
    """A recurring delivery contract line (one product on fixed weekdays)."""
    id: Optional[int] = field(default=None, init=False)    # db primary key
    customer_id: int
    product_id: int
    delivery_days: List[int] = field(default_factory=list)  # 0=Sunday … 6=Saturday
    daily_quantities: Optional[Dict[int, int]] = None        # wins over delivery_days when set
    quantity: int = 1
    unit_price: int = 0
    start_date: Optional[date] = None
    end_date: Optional[date] = None                          # inclusive
    is_active: bool = True
    product_name: str = ""
    unit: Optional[str] = None

    def is_active_on(self, day: date) -> bool:
        if not self.is_active:
            return False
        if self.start_date is not None and day < self.start_date:
            return False
        if self.end_date is not None and day > self.end_date:
            return False
        return True


@dataclass
class TemporaryChange:
    """One-off skip/add/modify for a single date."""
    id: Optional[int] = field(default=None, init=False)
    customer_id: int
    change_date: date
    change_type: ChangeType
    product_id: Optional[int] = None       # None only for whole-day skips
    quantity: Optional[int] = None
    unit_price: Optional[int] = None
    reason: Optional[str] = None
    created_at: Optional[datetime] = None
    product_name: str = ""
    product_unit_price: Optional[int] = None
    unit: Optional[str] = None


@dataclass
class CalendarProduct:
    product_id: Optional[int]
    product_name: str
    quantity: int
    unit_price: int
    unit: Optional[str]
    amount: int
    is_temporary: bool = False


@dataclass
class CalendarDay:
    date: date
    day: int
    day_of_week: int
    products: List[CalendarProduct] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(p.amount for p in self.products)


@dataclass
class BillingPreview:
    year: int
    month: int
    raw_total: int
    amount: int
    rounding_enabled: bool


@dataclass
class ProductSummary:
    product_id: Optional[int]
    product_name: str
    unit: Optional[str]
    quantity: int = 0
    delivery_days: int = 0
    amount: int = 0
