"""Create, update and delete one-off schedule changes.

Each mutation runs in one transaction: guard the affected months against
confirmed invoices, write the row, push the inverse onto the customer's
undo ledger, then resync the stored ledger totals of those months.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from milkround.data import Database, now_iso
from milkround.errors import ConflictError, NotFoundError, ValidationError
from milkround.invoices import ensure_months_open, month_of, require_customer, sync_ledger_months
from milkround.calendar_logic import is_scheduled
from milkround.models import ChangeType
from milkround.undo import ActionOp, push_customer_undo
from milkround.validation import TemporaryChangePayload, parse_id, parse_with

TABLE = 'temporary_changes'


@dataclass
class MutationResult:
    change: Optional[dict]
    affected_months: List[Tuple[int, int]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'change': self.change,
            'affected_months': [list(m) for m in self.affected_months],
        }


def _payload(data) -> TemporaryChangePayload:
    if isinstance(data, TemporaryChangePayload):
        return data
    return parse_with(TemporaryChangePayload, data)


def _check_references(db: Database, payload: TemporaryChangePayload):
    require_customer(db, payload.customer_id)
    if payload.product_id is not None and not db.product_exists(payload.product_id):
        raise NotFoundError(f"product {payload.product_id} not found")


def _check_add_conflict(db: Database, payload: TemporaryChangePayload):
    if payload.change_type != ChangeType.ADD:
        return
    patterns = db.load_patterns(payload.customer_id, payload.product_id)
    if is_scheduled(patterns, payload.product_id, payload.change_date):
        raise ConflictError(
            f"product {payload.product_id} is already scheduled on {payload.change_date}; "
            "use a modify change instead"
        )


def _require_change(db: Database, change_id: int) -> dict:
    row = db.fetch_row(TABLE, change_id)
    if row is None:
        raise NotFoundError(f"temporary change {change_id} not found")
    return row


def create_temporary_change(db: Database, data) -> MutationResult:
    payload = _payload(data)
    months = [month_of(payload.change_date)]
    with db.transaction():
        _check_references(db, payload)
        ensure_months_open(db, payload.customer_id, months)
        _check_add_conflict(db, payload)
        values = payload.to_row()
        values['created_at'] = values['updated_at'] = now_iso()
        change_id = db.insert_row(TABLE, values)
        record = db.fetch_row(TABLE, change_id)
        push_customer_undo(db, payload.customer_id, ActionOp.CREATE, record)
        sync_ledger_months(db, payload.customer_id, months)
    logging.info(f"Created temporary change {change_id} ({payload.change_type.value}) "
                 f"for customer {payload.customer_id} on {payload.change_date}")
    return MutationResult(record, months)


def update_temporary_change(db: Database, change_id, data) -> MutationResult:
    change_id = parse_id(change_id, 'temporary change id')
    payload = _payload(data)
    with db.transaction():
        before = _require_change(db, change_id)
        if before['customer_id'] != payload.customer_id:
            raise ValidationError(
                f"temporary change {change_id} does not belong to customer {payload.customer_id}")
        _check_references(db, payload)
        # moving a change touches both its old and its new month
        months = sorted({month_of(before['change_date']), month_of(payload.change_date)})
        ensure_months_open(db, payload.customer_id, months)
        _check_add_conflict(db, payload)
        values = payload.to_row()
        del values['customer_id']
        values['updated_at'] = now_iso()
        db.update_row(TABLE, change_id, values)
        record = db.fetch_row(TABLE, change_id)
        push_customer_undo(db, payload.customer_id, ActionOp.UPDATE, before)
        sync_ledger_months(db, payload.customer_id, months)
    logging.info(f"Updated temporary change {change_id} for customer {payload.customer_id}")
    return MutationResult(record, months)


def delete_temporary_change(db: Database, change_id) -> MutationResult:
    change_id = parse_id(change_id, 'temporary change id')
    with db.transaction():
        deleted = _require_change(db, change_id)
        customer_id = deleted['customer_id']
        months = [month_of(deleted['change_date'])]
        ensure_months_open(db, customer_id, months)
        db.delete_row(TABLE, change_id)
        push_customer_undo(db, customer_id, ActionOp.DELETE, deleted)
        sync_ledger_months(db, customer_id, months)
    logging.info(f"Deleted temporary change {change_id} for customer {customer_id}")
    return MutationResult(deleted, months)


def mutate_temporary_change(db: Database, operation: str, payload=None, change_id=None) -> MutationResult:
    """Single entry point: operation is create, update or delete."""
    if operation == 'create':
        return create_temporary_change(db, payload)
    if operation == 'update':
        return update_temporary_change(db, change_id, payload)
    if operation == 'delete':
        return delete_temporary_change(db, change_id)
    raise ValidationError(f"unknown operation {operation!r}")
