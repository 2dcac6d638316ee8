"""Input schemas for the mutation and invoice operations.

pydantic does the coercion; its errors are translated into our
``ValidationError`` carrying the first issue as a readable reason.
"""
from datetime import date
from typing import Any, Optional, Tuple, Type, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import ValidationError
from .models import ChangeType

M = TypeVar('M', bound=BaseModel)

MIN_YEAR = 2000
MAX_YEAR = 2100


class YearMonth(BaseModel):
    year: int = Field(ge=MIN_YEAR, le=MAX_YEAR)
    month: int = Field(ge=1, le=12)


class PositiveId(BaseModel):
    value: int = Field(gt=0)


class TemporaryChangePayload(BaseModel):
    customer_id: int = Field(gt=0)
    change_date: date
    change_type: ChangeType
    product_id: Optional[int] = Field(default=None, gt=0)
    quantity: Optional[int] = None
    unit_price: Optional[int] = Field(default=None, ge=0)
    reason: Optional[str] = None

    @model_validator(mode='after')
    def _check_type_fields(self):
        if self.change_type == ChangeType.SKIP:
            # a skip carries no quantity or price
            self.quantity = None
            self.unit_price = None
            return self
        if self.product_id is None:
            raise ValueError(f"product_id is required for {self.change_type.value}")
        if self.quantity is None:
            raise ValueError(f"quantity is required for {self.change_type.value}")
        if self.change_type == ChangeType.ADD and self.quantity <= 0:
            raise ValueError("quantity must be positive for add")
        if self.quantity < 0:
            raise ValueError("quantity must not be negative")
        return self

    def to_row(self) -> dict:
        return {
            'customer_id': self.customer_id,
            'change_date': self.change_date.isoformat(),
            'change_type': self.change_type.value,
            'product_id': self.product_id,
            'quantity': self.quantity,
            'unit_price': self.unit_price,
            'reason': self.reason,
        }


class InvoiceAction(BaseModel):
    year: int = Field(ge=MIN_YEAR, le=MAX_YEAR)
    month: int = Field(ge=1, le=12)
    rounding_enabled: Optional[bool] = None


class PaymentPayload(BaseModel):
    year: int = Field(ge=MIN_YEAR, le=MAX_YEAR)
    month: int = Field(ge=1, le=12)
    amount: int
    method: str = Field(default='collection', pattern='^(collection|debit)$')
    note: Optional[str] = None


def _first_issue(exc: pydantic.ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid input"
    first = errors[0]
    where = '.'.join(str(p) for p in first.get('loc', ()) if p != 'value')
    msg = first.get('msg', 'invalid value')
    return f"{where}: {msg}" if where else msg


def parse_with(model: Type[M], data: Any) -> M:
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValidationError(_first_issue(exc)) from exc


def parse_id(value: Any, what: str = 'id') -> int:
    try:
        return PositiveId.model_validate({'value': value}).value
    except pydantic.ValidationError as exc:
        raise ValidationError(f"invalid {what}: {value!r}") from exc


def parse_customer_id(value: Any) -> int:
    return parse_id(value, 'customer id')


def parse_year_month(year: Any, month: Any) -> Tuple[int, int]:
    ym = parse_with(YearMonth, {'year': year, 'month': month})
    return ym.year, ym.month


# Master data

class _MasterModel(BaseModel):
    model_config = ConfigDict(extra='forbid', str_strip_whitespace=True)


class CoursePayload(_MasterModel):
    course_name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None


class StaffPayload(_MasterModel):
    staff_name: str = Field(min_length=1)
    phone: Optional[str] = None
    email: Optional[str] = None
    notes: Optional[str] = None
    course_id: Optional[int] = Field(default=None, gt=0)


class ManufacturerPayload(_MasterModel):
    manufacturer_name: str = Field(min_length=1)
    contact_info: Optional[str] = None
    notes: Optional[str] = None


class CompanyPayload(_MasterModel):
    company_name: Optional[str] = None
    postal_code: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    fax: Optional[str] = None
    email: Optional[str] = None
    representative: Optional[str] = None


class InstitutionPayload(_MasterModel):
    institution_name: Optional[str] = None
    bank_code_7: Optional[str] = Field(default=None, pattern=r'^\d{7}$')
    bank_name: Optional[str] = None
    branch_name: Optional[str] = None
    agent_name_half: Optional[str] = None
    agent_code: Optional[str] = None
    header_leading_digit: Optional[str] = Field(default=None, pattern=r'^\d$')
    notes: Optional[str] = None


def parse_fields(model: Type[M], data: dict, current: Optional[dict] = None) -> dict:
    """Validated column values; `current` supplies the fields an update leaves out."""
    merged = {k: current[k] for k in model.model_fields if k in current} if current else {}
    merged.update(data or {})
    return parse_with(model, merged).model_dump()
