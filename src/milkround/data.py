import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from milkround.calendar_logic import month_bounds
from milkround.config import default_config, default_db_path
from milkround.models import DeliveryPattern, TemporaryChange
from milkround.schedule import change_from_row, pattern_from_row, to_date

# tables the generic row helpers may touch
TABLES = (
    'manufacturers', 'products', 'delivery_courses', 'delivery_staff', 'customers',
    'customer_settings', 'delivery_patterns', 'temporary_changes', 'ar_invoices',
    'ar_payments', 'ar_ledger', 'company_info', 'institution_info',
    'undo_stack', 'master_undo_stack',
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS manufacturers (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  manufacturer_name TEXT NOT NULL,
  contact_info TEXT,
  notes TEXT,
  created_at TEXT,
  updated_at TEXT
);
CREATE TABLE IF NOT EXISTS products (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  custom_id TEXT UNIQUE,
  product_name TEXT NOT NULL,
  manufacturer_id INTEGER REFERENCES manufacturers(id),
  unit_price INTEGER NOT NULL,
  unit TEXT,
  created_at TEXT
);
CREATE TABLE IF NOT EXISTS delivery_courses (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  custom_id TEXT UNIQUE,
  course_name TEXT NOT NULL,
  description TEXT,
  created_at TEXT,
  updated_at TEXT
);
CREATE TABLE IF NOT EXISTS delivery_staff (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  staff_name TEXT NOT NULL,
  phone TEXT,
  email TEXT,
  notes TEXT,
  course_id INTEGER REFERENCES delivery_courses(id),
  created_at TEXT,
  updated_at TEXT
);
CREATE TABLE IF NOT EXISTS customers (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  custom_id TEXT UNIQUE,
  customer_name TEXT NOT NULL,
  course_id INTEGER REFERENCES delivery_courses(id),
  staff_id INTEGER REFERENCES delivery_staff(id),
  created_at TEXT
);
CREATE TABLE IF NOT EXISTS customer_settings (
  customer_id INTEGER PRIMARY KEY REFERENCES customers(id),
  rounding_enabled INTEGER NOT NULL DEFAULT 1,
  billing_method TEXT DEFAULT 'collection'
);
CREATE TABLE IF NOT EXISTS delivery_patterns (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  customer_id INTEGER NOT NULL REFERENCES customers(id),
  product_id INTEGER NOT NULL REFERENCES products(id),
  delivery_days TEXT,
  quantity INTEGER DEFAULT 1,
  daily_quantities TEXT,
  unit_price INTEGER NOT NULL,
  start_date TEXT,
  end_date TEXT,
  is_active INTEGER NOT NULL DEFAULT 1,
  created_at TEXT,
  updated_at TEXT
);
CREATE TABLE IF NOT EXISTS temporary_changes (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  customer_id INTEGER NOT NULL REFERENCES customers(id),
  change_date TEXT NOT NULL,
  change_type TEXT NOT NULL CHECK(change_type IN ('skip', 'add', 'modify')),
  product_id INTEGER REFERENCES products(id),
  quantity INTEGER,
  unit_price INTEGER,
  reason TEXT,
  created_at TEXT,
  updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_temporary_changes_customer_date
  ON temporary_changes(customer_id, change_date);
CREATE TABLE IF NOT EXISTS ar_invoices (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  customer_id INTEGER NOT NULL REFERENCES customers(id),
  year INTEGER NOT NULL,
  month INTEGER NOT NULL,
  amount INTEGER NOT NULL,
  rounding_enabled INTEGER NOT NULL,
  status TEXT NOT NULL DEFAULT 'confirmed' CHECK(status IN ('open', 'confirmed')),
  confirmed_at TEXT,
  UNIQUE(customer_id, year, month)
);
CREATE TABLE IF NOT EXISTS ar_payments (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  customer_id INTEGER NOT NULL REFERENCES customers(id),
  year INTEGER NOT NULL,
  month INTEGER NOT NULL,
  amount INTEGER NOT NULL,
  method TEXT CHECK(method IN ('collection', 'debit')),
  note TEXT,
  created_at TEXT
);
CREATE TABLE IF NOT EXISTS ar_ledger (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  customer_id INTEGER NOT NULL REFERENCES customers(id),
  year INTEGER NOT NULL,
  month INTEGER NOT NULL,
  opening_balance INTEGER NOT NULL DEFAULT 0,
  invoice_amount INTEGER NOT NULL DEFAULT 0,
  payment_amount INTEGER NOT NULL DEFAULT 0,
  carryover_amount INTEGER NOT NULL DEFAULT 0,
  updated_at TEXT,
  UNIQUE(customer_id, year, month)
);
CREATE TABLE IF NOT EXISTS company_info (
  id INTEGER PRIMARY KEY CHECK(id = 1),
  company_name TEXT,
  postal_code TEXT,
  address TEXT,
  phone TEXT,
  fax TEXT,
  email TEXT,
  representative TEXT,
  updated_at TEXT
);
CREATE TABLE IF NOT EXISTS institution_info (
  id INTEGER PRIMARY KEY CHECK(id = 1),
  institution_name TEXT,
  bank_code_7 TEXT,
  bank_name TEXT,
  branch_name TEXT,
  agent_name_half TEXT,
  agent_code TEXT,
  header_leading_digit TEXT,
  notes TEXT,
  updated_at TEXT
);
CREATE TABLE IF NOT EXISTS undo_stack (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  customer_id INTEGER NOT NULL,
  action_type TEXT NOT NULL,
  payload TEXT NOT NULL,
  metadata TEXT,
  created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS master_undo_stack (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  entity_type TEXT NOT NULL,
  entity_id INTEGER,
  action_type TEXT NOT NULL,
  payload TEXT NOT NULL,
  metadata TEXT,
  created_at TEXT NOT NULL
);
"""


def now_iso() -> str:
    return datetime.now().isoformat(sep=' ', timespec='microseconds')


def _check_table(table: str):
    if table not in TABLES:
        raise ValueError(f"Unknown table {table!r}")


class Database:
    def __init__(self, db_path: str = None, config: dict = None):
        try:
            self.config = config if config is not None else default_config()
            self.db_path = db_path or self.config.get('db_path') or default_db_path()
            if self.db_path != ':memory:':
                os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
            # autocommit; multi-statement units go through transaction()
            self.conn = sqlite3.connect(self.db_path, isolation_level=None)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys = ON;")
            self._tx_depth = 0
            self._ensure_tables()
        except (sqlite3.Error, OSError) as e:
            logging.error(f"Database connection error: {e}")
            raise

    def _ensure_tables(self):
        self.conn.executescript(SCHEMA)

    @contextmanager
    def transaction(self):
        """One store-level unit: BEGIN IMMEDIATE … COMMIT, ROLLBACK on any error.
        Nested calls join the outer transaction."""
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self.conn
            finally:
                self._tx_depth -= 1
            return
        self.conn.execute("BEGIN IMMEDIATE")
        self._tx_depth = 1
        try:
            yield self.conn
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")
        finally:
            self._tx_depth = 0

    # Generic row helpers
    def fetch_row(self, table: str, row_id: int) -> Optional[dict]:
        _check_table(table)
        row = self.conn.execute(f"SELECT * FROM {table} WHERE id=?", (row_id,)).fetchone()
        return dict(row) if row else None

    def fetch_rows(self, table: str, order_by: str = 'id') -> List[dict]:
        _check_table(table)
        return [dict(r) for r in self.conn.execute(f"SELECT * FROM {table} ORDER BY {order_by}")]

    def table_columns(self, table: str) -> List[str]:
        _check_table(table)
        return [row['name'] for row in self.conn.execute(f"PRAGMA table_info({table})")]

    def insert_row(self, table: str, values: Dict[str, Any]) -> int:
        _check_table(table)
        cols = list(values)
        marks = ','.join('?' for _ in cols)
        cur = self.conn.execute(
            f"INSERT INTO {table} ({','.join(cols)}) VALUES ({marks})",
            [values[c] for c in cols],
        )
        return cur.lastrowid

    def update_row(self, table: str, row_id: int, values: Dict[str, Any]) -> int:
        _check_table(table)
        if not values:
            return 0
        assignments = ','.join(f"{c}=?" for c in values)
        cur = self.conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id=?",
            [*values.values(), row_id],
        )
        return cur.rowcount

    def delete_row(self, table: str, row_id: int) -> int:
        _check_table(table)
        cur = self.conn.execute(f"DELETE FROM {table} WHERE id=?", (row_id,))
        return cur.rowcount

    # Customers and products
    def save_customer(self, customer_name: str, custom_id: str = None,
                      course_id: int = None, staff_id: int = None) -> int:
        return self.insert_row('customers', {
            'custom_id': custom_id,
            'customer_name': customer_name,
            'course_id': course_id,
            'staff_id': staff_id,
            'created_at': now_iso(),
        })

    def customer_exists(self, customer_id: int) -> bool:
        row = self.conn.execute("SELECT 1 FROM customers WHERE id=?", (customer_id,)).fetchone()
        return row is not None

    def customer_ids(self, course_id: int = None) -> List[int]:
        if course_id is None:
            rows = self.conn.execute("SELECT id FROM customers ORDER BY id")
        else:
            rows = self.conn.execute("SELECT id FROM customers WHERE course_id=? ORDER BY id", (course_id,))
        return [r['id'] for r in rows]

    def set_rounding(self, customer_id: int, enabled: bool):
        self.conn.execute(
            "INSERT INTO customer_settings (customer_id, rounding_enabled) VALUES (?, ?) "
            "ON CONFLICT(customer_id) DO UPDATE SET rounding_enabled=excluded.rounding_enabled",
            (customer_id, int(bool(enabled))),
        )

    def get_rounding(self, customer_id: int) -> bool:
        row = self.conn.execute(
            "SELECT rounding_enabled FROM customer_settings WHERE customer_id=?", (customer_id,)
        ).fetchone()
        if row is None or row['rounding_enabled'] is None:
            return bool(self.config.get('default_rounding_enabled', True))
        return bool(row['rounding_enabled'])

    def save_product(self, product_name: str, unit_price: int, unit: str = None,
                     manufacturer_id: int = None, custom_id: str = None) -> int:
        return self.insert_row('products', {
            'custom_id': custom_id,
            'product_name': product_name,
            'manufacturer_id': manufacturer_id,
            'unit_price': unit_price,
            'unit': unit,
            'created_at': now_iso(),
        })

    def product_exists(self, product_id: int) -> bool:
        row = self.conn.execute("SELECT 1 FROM products WHERE id=?", (product_id,)).fetchone()
        return row is not None

    def delete_product(self, product_id: int):
        self.delete_row('products', product_id)

    # Courses
    def renumber_courses(self) -> int:
        """Reassign display codes 001, 002, ... in id order. Returns the course count."""
        with self.transaction():
            ids = [r['id'] for r in self.conn.execute("SELECT id FROM delivery_courses ORDER BY id")]
            # custom_id is UNIQUE: clear first, then assign
            self.conn.execute("UPDATE delivery_courses SET custom_id=NULL")
            for n, course_id in enumerate(ids, start=1):
                self.conn.execute(
                    "UPDATE delivery_courses SET custom_id=? WHERE id=?", (f"{n:03d}", course_id)
                )
        logging.info(f"Renumbered {len(ids)} delivery courses")
        return len(ids)

    def course_references(self, course_id: int) -> Dict[str, int]:
        customers = self.conn.execute(
            "SELECT COUNT(*) AS n FROM customers WHERE course_id=?", (course_id,)
        ).fetchone()['n']
        staff = self.conn.execute(
            "SELECT COUNT(*) AS n FROM delivery_staff WHERE course_id=?", (course_id,)
        ).fetchone()['n']
        return {'customers': customers, 'staff': staff}

    # Patterns
    def save_pattern(self, pat: DeliveryPattern) -> int:
        values = {
            'customer_id': pat.customer_id,
            'product_id': pat.product_id,
            'delivery_days': json.dumps(list(pat.delivery_days)),
            'quantity': pat.quantity,
            'daily_quantities': json.dumps({str(k): v for k, v in pat.daily_quantities.items()})
            if pat.daily_quantities else None,
            'unit_price': pat.unit_price,
            'start_date': pat.start_date.isoformat() if pat.start_date else None,
            'end_date': pat.end_date.isoformat() if pat.end_date else None,
            'is_active': int(pat.is_active),
            'updated_at': now_iso(),
        }
        if pat.id is not None:
            self.update_row('delivery_patterns', pat.id, values)
            logging.info(f"Updated pattern id={pat.id}")
        else:
            values['created_at'] = values['updated_at']
            pat.id = self.insert_row('delivery_patterns', values)
            logging.info(f"Inserted new pattern with id={pat.id}")
        return pat.id

    def load_patterns(self, customer_id: int, product_id: int = None,
                      active_only: bool = True) -> List[DeliveryPattern]:
        query = (
            "SELECT dp.*, p.product_name, p.unit FROM delivery_patterns dp "
            "JOIN products p ON p.id = dp.product_id WHERE dp.customer_id=?"
        )
        params: list = [customer_id]
        if product_id is not None:
            query += " AND dp.product_id=?"
            params.append(product_id)
        if active_only:
            query += " AND dp.is_active=1"
        query += " ORDER BY dp.id"
        return [pattern_from_row(row) for row in self.conn.execute(query, params)]

    def end_pattern(self, pattern_id: int, end_date: date):
        """Cancellation end-dates a pattern instead of deleting it."""
        self.update_row('delivery_patterns', pattern_id, {
            'end_date': end_date.isoformat(),
            'updated_at': now_iso(),
        })

    def split_pattern(self, pattern_id: int, split_date: date, **changes) -> int:
        """
        Supersede a pattern from `split_date` on: the old row ends the day
        before, a new row with `changes` applied starts on `split_date` and
        inherits the old end date. A split at or before the old start date
        rewrites the pattern instead. Returns the id of the pattern in force
        from `split_date`.
        """
        with self.transaction():
            row = self.fetch_row('delivery_patterns', pattern_id)
            if row is None:
                raise KeyError(pattern_id)
            old = pattern_from_row(row)
            start = to_date(row['start_date'])
            new = pattern_from_row(row)
            for key, value in changes.items():
                if value is not None:
                    setattr(new, key, value)
            new.start_date = split_date
            if start is not None and split_date <= start:
                return self.save_pattern(new)
            new.id = None
            old.end_date = split_date - timedelta(days=1)
            self.save_pattern(old)
            return self.save_pattern(new)

    # Temporary changes
    def load_temporary_changes(self, customer_id: int, year: int = None,
                               month: int = None) -> List[TemporaryChange]:
        query = (
            "SELECT tc.*, p.product_name, p.unit_price AS product_unit_price, p.unit "
            "FROM temporary_changes tc LEFT JOIN products p ON p.id = tc.product_id "
            "WHERE tc.customer_id=?"
        )
        params: list = [customer_id]
        if year is not None and month is not None:
            first, last = month_bounds(year, month)
            query += " AND tc.change_date BETWEEN ? AND ?"
            params += [first.isoformat(), last.isoformat()]
        query += " ORDER BY tc.change_date, tc.id"
        return [change_from_row(row) for row in self.conn.execute(query, params)]

    def temporary_change_rows(self, customer_id: int) -> List[dict]:
        """Raw rows, used for snapshots and comparisons."""
        rows = self.conn.execute(
            "SELECT * FROM temporary_changes WHERE customer_id=? ORDER BY id", (customer_id,)
        )
        return [dict(r) for r in rows]

    # Invoices, payments, ledger
    def get_invoice(self, customer_id: int, year: int, month: int) -> Optional[dict]:
        row = self.conn.execute(
            "SELECT * FROM ar_invoices WHERE customer_id=? AND year=? AND month=?",
            (customer_id, year, month),
        ).fetchone()
        return dict(row) if row else None

    def upsert_invoice(self, customer_id: int, year: int, month: int, amount: int,
                       rounding_enabled: bool, status: str, confirmed_at: Optional[str]):
        self.conn.execute(
            "INSERT INTO ar_invoices (customer_id, year, month, amount, rounding_enabled, status, confirmed_at) "
            "VALUES (?,?,?,?,?,?,?) ON CONFLICT(customer_id, year, month) DO UPDATE SET "
            "amount=excluded.amount, rounding_enabled=excluded.rounding_enabled, "
            "status=excluded.status, confirmed_at=excluded.confirmed_at",
            (customer_id, year, month, amount, int(bool(rounding_enabled)), status, confirmed_at),
        )

    def set_invoice_status(self, customer_id: int, year: int, month: int, status: str):
        self.conn.execute(
            "UPDATE ar_invoices SET status=? WHERE customer_id=? AND year=? AND month=?",
            (status, customer_id, year, month),
        )

    def insert_payment(self, customer_id: int, year: int, month: int, amount: int,
                       method: str = 'collection', note: str = None) -> int:
        return self.insert_row('ar_payments', {
            'customer_id': customer_id,
            'year': year,
            'month': month,
            'amount': amount,
            'method': method,
            'note': note,
            'created_at': now_iso(),
        })

    def sum_payments(self, customer_id: int, year: int, month: int) -> int:
        row = self.conn.execute(
            "SELECT COALESCE(SUM(amount), 0) AS total FROM ar_payments "
            "WHERE customer_id=? AND year=? AND month=?",
            (customer_id, year, month),
        ).fetchone()
        return int(row['total'] or 0)

    def get_ledger_row(self, customer_id: int, year: int, month: int) -> Optional[dict]:
        row = self.conn.execute(
            "SELECT * FROM ar_ledger WHERE customer_id=? AND year=? AND month=?",
            (customer_id, year, month),
        ).fetchone()
        return dict(row) if row else None

    def ledger_months_after(self, customer_id: int, year: int, month: int) -> List[tuple]:
        """(year, month) of the stored ledger rows later than the given month, oldest first."""
        rows = self.conn.execute(
            "SELECT year, month FROM ar_ledger WHERE customer_id=? AND (year > ? OR (year = ? AND month > ?)) "
            "ORDER BY year, month",
            (customer_id, year, year, month),
        )
        return [(r['year'], r['month']) for r in rows]

    def upsert_ledger_row(self, customer_id: int, year: int, month: int, opening_balance: int,
                          invoice_amount: int, payment_amount: int, carryover_amount: int):
        self.conn.execute(
            "INSERT INTO ar_ledger (customer_id, year, month, opening_balance, invoice_amount, "
            "payment_amount, carryover_amount, updated_at) VALUES (?,?,?,?,?,?,?,?) "
            "ON CONFLICT(customer_id, year, month) DO UPDATE SET "
            "opening_balance=excluded.opening_balance, invoice_amount=excluded.invoice_amount, "
            "payment_amount=excluded.payment_amount, carryover_amount=excluded.carryover_amount, "
            "updated_at=excluded.updated_at",
            (customer_id, year, month, opening_balance, invoice_amount,
             payment_amount, carryover_amount, now_iso()),
        )

    def close(self):
        """Close the connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
