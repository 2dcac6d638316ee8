"""Master data: delivery courses, staff, manufacturers and the company and
collecting-institution singletons.

Every mutation pushes its inverse onto the master undo ledger inside the
same transaction as the write.
"""
import logging
import sqlite3
from typing import List, Optional

from milkround.data import Database, now_iso
from milkround.errors import ConflictError, IntegrityError, NotFoundError, ValidationError
from milkround.undo import SINGLETON_ID, ActionOp, push_master_undo
from milkround.validation import (
    CompanyPayload, CoursePayload, InstitutionPayload, ManufacturerPayload, StaffPayload,
    parse_fields, parse_id,
)

COURSE_NAME_TEMPLATE = "New course ({code})"


def _require(db: Database, table: str, what: str, row_id) -> dict:
    row_id = parse_id(row_id, f"{what} id")
    row = db.fetch_row(table, row_id)
    if row is None:
        raise NotFoundError(f"{what} {row_id} not found")
    return row


def _write(fn, *args):
    try:
        return fn(*args)
    except sqlite3.IntegrityError as exc:
        raise IntegrityError(str(exc)) from exc


# Courses

def next_course_code(db: Database) -> str:
    used = {r['custom_id'] for r in db.fetch_rows('delivery_courses') if r['custom_id']}
    n = 1
    while f"{n:03d}" in used:
        n += 1
    return f"{n:03d}"


def list_courses(db: Database) -> List[dict]:
    return db.fetch_rows('delivery_courses', order_by='custom_id, id')


def create_course(db: Database, course_name: str = None, description: str = None) -> dict:
    values = parse_fields(CoursePayload, {'course_name': course_name, 'description': description})
    with db.transaction():
        code = next_course_code(db)
        values['course_name'] = values['course_name'] or COURSE_NAME_TEMPLATE.format(code=code)
        values['custom_id'] = code
        values['created_at'] = values['updated_at'] = now_iso()
        course_id = _write(db.insert_row, 'delivery_courses', values)
        record = db.fetch_row('delivery_courses', course_id)
        push_master_undo(db, 'course', course_id, ActionOp.CREATE, record)
    logging.info(f"Created course {course_id} ({code})")
    return record


def update_course(db: Database, course_id, **fields) -> dict:
    with db.transaction():
        before = _require(db, 'delivery_courses', 'course', course_id)
        values = parse_fields(CoursePayload, fields, before)
        if not values['course_name']:
            raise ValidationError("course_name must not be empty")
        values['updated_at'] = now_iso()
        _write(db.update_row, 'delivery_courses', before['id'], values)
        push_master_undo(db, 'course', before['id'], ActionOp.UPDATE, before)
        record = db.fetch_row('delivery_courses', before['id'])
    logging.info(f"Updated course {before['id']}")
    return record


def delete_course(db: Database, course_id) -> dict:
    with db.transaction():
        deleted = _require(db, 'delivery_courses', 'course', course_id)
        refs = db.course_references(deleted['id'])
        if refs['customers'] or refs['staff']:
            raise ConflictError(
                f"course {deleted['id']} is still used by {refs['customers']} customer(s) "
                f"and {refs['staff']} staff member(s)"
            )
        _write(db.delete_row, 'delivery_courses', deleted['id'])
        push_master_undo(db, 'course', deleted['id'], ActionOp.DELETE, deleted)
        db.renumber_courses()
    logging.info(f"Deleted course {deleted['id']} ({deleted['custom_id']})")
    return deleted


def renumber_courses(db: Database) -> List[dict]:
    db.renumber_courses()
    return list_courses(db)


# Staff

def create_staff(db: Database, **fields) -> dict:
    values = parse_fields(StaffPayload, fields)
    with db.transaction():
        if values['course_id'] is not None:
            _require(db, 'delivery_courses', 'course', values['course_id'])
        values['created_at'] = values['updated_at'] = now_iso()
        staff_id = _write(db.insert_row, 'delivery_staff', values)
        record = db.fetch_row('delivery_staff', staff_id)
        push_master_undo(db, 'staff', staff_id, ActionOp.CREATE, record)
    logging.info(f"Created staff {staff_id}")
    return record


def update_staff(db: Database, staff_id, **fields) -> dict:
    with db.transaction():
        before = _require(db, 'delivery_staff', 'staff', staff_id)
        values = parse_fields(StaffPayload, fields, before)
        if values['course_id'] is not None:
            _require(db, 'delivery_courses', 'course', values['course_id'])
        values['updated_at'] = now_iso()
        _write(db.update_row, 'delivery_staff', before['id'], values)
        push_master_undo(db, 'staff', before['id'], ActionOp.UPDATE, before)
        record = db.fetch_row('delivery_staff', before['id'])
    logging.info(f"Updated staff {before['id']}")
    return record


def delete_staff(db: Database, staff_id) -> dict:
    with db.transaction():
        deleted = _require(db, 'delivery_staff', 'staff', staff_id)
        used = db.conn.execute(
            "SELECT COUNT(*) AS n FROM customers WHERE staff_id=?", (deleted['id'],)
        ).fetchone()['n']
        if used:
            raise ConflictError(f"staff {deleted['id']} is still assigned to {used} customer(s)")
        _write(db.delete_row, 'delivery_staff', deleted['id'])
        push_master_undo(db, 'staff', deleted['id'], ActionOp.DELETE, deleted)
    logging.info(f"Deleted staff {deleted['id']}")
    return deleted


# Manufacturers

def create_manufacturer(db: Database, **fields) -> dict:
    values = parse_fields(ManufacturerPayload, fields)
    with db.transaction():
        values['created_at'] = values['updated_at'] = now_iso()
        manufacturer_id = _write(db.insert_row, 'manufacturers', values)
        record = db.fetch_row('manufacturers', manufacturer_id)
        push_master_undo(db, 'manufacturer', manufacturer_id, ActionOp.CREATE, record)
    logging.info(f"Created manufacturer {manufacturer_id}")
    return record


def update_manufacturer(db: Database, manufacturer_id, **fields) -> dict:
    with db.transaction():
        before = _require(db, 'manufacturers', 'manufacturer', manufacturer_id)
        values = parse_fields(ManufacturerPayload, fields, before)
        values['updated_at'] = now_iso()
        _write(db.update_row, 'manufacturers', before['id'], values)
        push_master_undo(db, 'manufacturer', before['id'], ActionOp.UPDATE, before)
        record = db.fetch_row('manufacturers', before['id'])
    logging.info(f"Updated manufacturer {before['id']}")
    return record


def delete_manufacturer(db: Database, manufacturer_id) -> dict:
    with db.transaction():
        deleted = _require(db, 'manufacturers', 'manufacturer', manufacturer_id)
        used = db.conn.execute(
            "SELECT COUNT(*) AS n FROM products WHERE manufacturer_id=?", (deleted['id'],)
        ).fetchone()['n']
        if used:
            raise ConflictError(f"manufacturer {deleted['id']} still supplies {used} product(s)")
        _write(db.delete_row, 'manufacturers', deleted['id'])
        push_master_undo(db, 'manufacturer', deleted['id'], ActionOp.DELETE, deleted)
    logging.info(f"Deleted manufacturer {deleted['id']}")
    return deleted


# Singletons

def _save_singleton(db: Database, entity: str, table: str, model, fields: dict) -> dict:
    with db.transaction():
        before = db.fetch_row(table, SINGLETON_ID)
        values = parse_fields(model, fields, before)
        values['updated_at'] = now_iso()
        if before is None:
            _write(db.insert_row, table, {'id': SINGLETON_ID, **values})
        else:
            _write(db.update_row, table, SINGLETON_ID, values)
        push_master_undo(db, entity, None, ActionOp.UPDATE, before)
        record = db.fetch_row(table, SINGLETON_ID)
    logging.info(f"Saved {entity} info")
    return record


def _clear_singleton(db: Database, entity: str, table: str) -> Optional[dict]:
    with db.transaction():
        deleted = db.fetch_row(table, SINGLETON_ID)
        if deleted is None:
            raise NotFoundError(f"no {entity} info stored")
        db.delete_row(table, SINGLETON_ID)
        push_master_undo(db, entity, None, ActionOp.DELETE, deleted)
    logging.info(f"Cleared {entity} info")
    return deleted


def get_company(db: Database) -> Optional[dict]:
    return db.fetch_row('company_info', SINGLETON_ID)


def save_company(db: Database, **fields) -> dict:
    return _save_singleton(db, 'company', 'company_info', CompanyPayload, fields)


def clear_company(db: Database) -> dict:
    return _clear_singleton(db, 'company', 'company_info')


def get_institution(db: Database) -> Optional[dict]:
    return db.fetch_row('institution_info', SINGLETON_ID)


def save_institution(db: Database, **fields) -> dict:
    return _save_singleton(db, 'institution', 'institution_info', InstitutionPayload, fields)


def clear_institution(db: Database) -> dict:
    return _clear_singleton(db, 'institution', 'institution_info')
