"""Mutation undo ledger.

Every structural mutation records its inverse here: the created record, or
the snapshot taken before an update or delete. ``undo`` pops the newest
entry of a scope and replays the inverse inside one transaction, together
with its second-order effects (ledger totals for temporary changes, course
display-code renumbering). Two instances share this code: a per-customer
ledger for temporary changes (``undo_stack``) and a per-entity-type ledger
for master data (``master_undo_stack``).

Action types are ``<entity>_<create|update|delete>``. They are parsed into
a small tagged union (``CreateAction``, ``UpdateAction``, ``DeleteAction``)
and dispatched in ``apply_action``; anything else fails loudly.
"""
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

from .data import Database, now_iso
from .errors import IntegrityError, UnsupportedActionError
from .invoices import ensure_months_open, month_of, sync_ledger_months


class ActionOp(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class EntitySpec:
    name: str
    table: str
    columns: Tuple[str, ...]   # restored by an update undo
    singleton: bool = False


SINGLETON_ID = 1

ENTITIES: Dict[str, EntitySpec] = {spec.name: spec for spec in (
    EntitySpec('temporary_change', 'temporary_changes', (
        'change_date', 'change_type', 'product_id', 'quantity', 'unit_price',
        'reason', 'created_at', 'updated_at')),
    EntitySpec('course', 'delivery_courses', ('course_name', 'description', 'updated_at')),
    EntitySpec('staff', 'delivery_staff', (
        'staff_name', 'phone', 'email', 'notes', 'course_id', 'updated_at')),
    EntitySpec('manufacturer', 'manufacturers', (
        'manufacturer_name', 'contact_info', 'notes', 'updated_at')),
    EntitySpec('company', 'company_info', (
        'company_name', 'postal_code', 'address', 'phone', 'fax', 'email',
        'representative', 'updated_at'), singleton=True),
    EntitySpec('institution', 'institution_info', (
        'institution_name', 'bank_code_7', 'bank_name', 'branch_name', 'agent_name_half',
        'agent_code', 'header_leading_digit', 'notes', 'updated_at'), singleton=True),
)}

PAYLOAD_KEYS = {
    ActionOp.CREATE: 'record',
    ActionOp.UPDATE: 'before',
    ActionOp.DELETE: 'deleted',
}


def action_type(entity: str, op: ActionOp) -> str:
    return f"{entity}_{op.value}"


@dataclass(frozen=True)
class CreateAction:
    entity: EntitySpec
    record: dict


@dataclass(frozen=True)
class UpdateAction:
    entity: EntitySpec
    before: Optional[dict]     # None: singleton did not exist yet


@dataclass(frozen=True)
class DeleteAction:
    entity: EntitySpec
    deleted: dict


UndoAction = Union[CreateAction, UpdateAction, DeleteAction]


def parse_action(kind: str, payload: Any) -> UndoAction:
    entity_name, _, op_name = (kind or '').rpartition('_')
    spec = ENTITIES.get(entity_name)
    try:
        op = ActionOp(op_name)
    except ValueError:
        op = None
    if spec is None or op is None or (spec.singleton and op == ActionOp.CREATE):
        raise UnsupportedActionError(f"unsupported undo action: {kind!r}")
    if not isinstance(payload, dict) or PAYLOAD_KEYS[op] not in payload:
        raise UnsupportedActionError(f"malformed payload for {kind!r}")
    snapshot = payload[PAYLOAD_KEYS[op]]

    if op == ActionOp.UPDATE and spec.singleton and snapshot is None:
        return UpdateAction(spec, None)
    if not isinstance(snapshot, dict):
        raise UnsupportedActionError(f"malformed payload for {kind!r}")
    if not spec.singleton and snapshot.get('id') is None:
        raise UnsupportedActionError(f"payload for {kind!r} carries no record id")

    if op == ActionOp.CREATE:
        return CreateAction(spec, snapshot)
    if op == ActionOp.UPDATE:
        return UpdateAction(spec, snapshot)
    return DeleteAction(spec, snapshot)


# Scopes

@dataclass(frozen=True)
class CustomerScope:
    customer_id: int
    table: ClassVar[str] = 'undo_stack'

    def exact(self):
        return "customer_id=?", (self.customer_id,)

    def match(self):
        return self.exact()

    def columns(self) -> dict:
        return {'customer_id': self.customer_id}


@dataclass(frozen=True)
class MasterScope:
    entity_type: str
    entity_id: Optional[int] = None
    table: ClassVar[str] = 'master_undo_stack'

    def exact(self):
        return "entity_type=? AND entity_id IS ?", (self.entity_type, self.entity_id)

    def match(self):
        # without an id: newest entry of the entity type
        if self.entity_id is None:
            return "entity_type=?", (self.entity_type,)
        return self.exact()

    def columns(self) -> dict:
        return {'entity_type': self.entity_type, 'entity_id': self.entity_id}


Scope = Union[CustomerScope, MasterScope]


@dataclass
class UndoEntry:
    id: int
    scope: Scope
    action_type: str
    payload: dict
    metadata: Optional[dict]
    created_at: str

    def to_dict(self) -> dict:
        out = {
            'id': self.id,
            'action_type': self.action_type,
            'payload': self.payload,
            'metadata': self.metadata,
            'created_at': self.created_at,
        }
        out.update(self.scope.columns())
        return out


class UndoLedger:
    """Bounded stack per exact scope; depth 1 means pushing replaces."""

    def __init__(self, db: Database, table: str, depth: int = None):
        self.db = db
        self.table = table
        self.depth = max(1, int(depth or db.config.get('undo_depth', 1)))

    def _check(self, scope: Scope):
        if scope.table != self.table:
            raise TypeError(f"{type(scope).__name__} does not belong to {self.table}")

    def push(self, scope: Scope, kind: str, payload: dict, metadata: dict = None) -> UndoEntry:
        self._check(scope)
        parse_action(kind, payload)
        created_at = now_iso()
        values = dict(scope.columns())
        values.update({
            'action_type': kind,
            'payload': json.dumps(payload, ensure_ascii=False, default=str),
            'metadata': json.dumps(metadata, ensure_ascii=False) if metadata is not None else None,
            'created_at': created_at,
        })
        with self.db.transaction():
            entry_id = self.db.insert_row(self.table, values)
            where, params = scope.exact()
            self.db.conn.execute(
                f"DELETE FROM {self.table} WHERE {where} AND id NOT IN "
                f"(SELECT id FROM {self.table} WHERE {where} ORDER BY id DESC LIMIT ?)",
                (*params, *params, self.depth),
            )
        logging.info(f"Undo push {kind} for {scope}")
        return UndoEntry(entry_id, scope, kind, payload, metadata, created_at)

    def _newest(self, scope: Scope) -> Optional[sqlite3.Row]:
        where, params = scope.match()
        return self.db.conn.execute(
            f"SELECT * FROM {self.table} WHERE {where} ORDER BY id DESC LIMIT 1", params
        ).fetchone()

    def _entry(self, scope: Scope, row: sqlite3.Row) -> UndoEntry:
        if isinstance(scope, MasterScope):
            scope = MasterScope(row['entity_type'], row['entity_id'])
        return UndoEntry(
            id=row['id'],
            scope=scope,
            action_type=row['action_type'],
            payload=json.loads(row['payload']),
            metadata=json.loads(row['metadata']) if row['metadata'] else None,
            created_at=row['created_at'],
        )

    def peek(self, scope: Scope) -> Optional[UndoEntry]:
        self._check(scope)
        row = self._newest(scope)
        return self._entry(scope, row) if row else None

    def pop(self, scope: Scope) -> Optional[UndoEntry]:
        self._check(scope)
        with self.db.transaction():
            row = self._newest(scope)
            if row is None:
                return None
            self.db.delete_row(self.table, row['id'])
        logging.info(f"Undo pop {row['action_type']} for {scope}")
        return self._entry(scope, row)

    def pending(self, scope: Scope) -> int:
        self._check(scope)
        where, params = scope.match()
        row = self.db.conn.execute(f"SELECT COUNT(*) AS n FROM {self.table} WHERE {where}", params).fetchone()
        return row['n']


def customer_ledger(db: Database) -> UndoLedger:
    return UndoLedger(db, CustomerScope.table)


def master_ledger(db: Database) -> UndoLedger:
    return UndoLedger(db, MasterScope.table)


def ledger_for(db: Database, scope: Scope) -> UndoLedger:
    return UndoLedger(db, scope.table)


def push_customer_undo(db: Database, customer_id: int, op: ActionOp, snapshot: dict) -> UndoEntry:
    return customer_ledger(db).push(
        CustomerScope(customer_id), action_type('temporary_change', op), {PAYLOAD_KEYS[op]: snapshot}
    )


def push_master_undo(db: Database, entity: str, entity_id: Optional[int], op: ActionOp,
                     snapshot: Optional[dict]) -> UndoEntry:
    return master_ledger(db).push(
        MasterScope(entity, entity_id), action_type(entity, op), {PAYLOAD_KEYS[op]: snapshot}
    )


# Inverse application

def _require_row(db: Database, spec: EntitySpec, row_id: int) -> dict:
    row = db.fetch_row(spec.table, row_id)
    if row is None:
        raise IntegrityError(f"{spec.name} {row_id} no longer exists")
    return row


def affected_months(db: Database, action: UndoAction) -> List[Tuple[int, int]]:
    """Months whose billing an undo of a temporary change touches."""
    if action.entity.name != 'temporary_change':
        return []
    if isinstance(action, DeleteAction):
        return [month_of(action.deleted['change_date'])]
    snapshot = action.record if isinstance(action, CreateAction) else action.before
    months = [month_of(snapshot['change_date'])]
    current = db.fetch_row(action.entity.table, snapshot['id'])
    if current is not None:
        months.append(month_of(current['change_date']))
    return sorted(set(months))


def _undo_create(db: Database, action: CreateAction):
    spec = action.entity
    _require_row(db, spec, action.record['id'])
    db.delete_row(spec.table, action.record['id'])


def _undo_update(db: Database, action: UpdateAction):
    spec = action.entity
    if spec.singleton:
        exists = db.fetch_row(spec.table, SINGLETON_ID) is not None
        if action.before is None:
            db.delete_row(spec.table, SINGLETON_ID)
            return
        values = {c: action.before.get(c) for c in spec.columns}
        if exists:
            db.update_row(spec.table, SINGLETON_ID, values)
        else:
            db.insert_row(spec.table, {'id': SINGLETON_ID, **values})
        return
    _require_row(db, spec, action.before['id'])
    values = {c: action.before[c] for c in spec.columns if c in action.before}
    db.update_row(spec.table, action.before['id'], values)


def _undo_delete(db: Database, action: DeleteAction):
    spec = action.entity
    known = set(db.table_columns(spec.table))
    values = {k: v for k, v in action.deleted.items() if k in known}
    if spec.singleton:
        values['id'] = SINGLETON_ID
    if spec.name == 'course':
        # codes are reassigned by renumber_courses below
        values['custom_id'] = None
    db.insert_row(spec.table, values)


def apply_action(db: Database, action: UndoAction):
    if isinstance(action, CreateAction):
        _undo_create(db, action)
    elif isinstance(action, UpdateAction):
        _undo_update(db, action)
    elif isinstance(action, DeleteAction):
        _undo_delete(db, action)
    else:
        raise UnsupportedActionError(f"unsupported undo action: {action!r}")
    if action.entity.name == 'course' and not isinstance(action, UpdateAction):
        db.renumber_courses()


_MESSAGES = {
    ActionOp.CREATE: "Undid creation of {entity}",
    ActionOp.UPDATE: "Undid update of {entity}",
    ActionOp.DELETE: "Undid deletion of {entity}",
}

_OPS = {CreateAction: ActionOp.CREATE, UpdateAction: ActionOp.UPDATE, DeleteAction: ActionOp.DELETE}


@dataclass
class UndoResult:
    entry: Optional[UndoEntry]
    message: str
    affected_months: List[Tuple[int, int]] = field(default_factory=list)

    @property
    def nothing_to_undo(self) -> bool:
        return self.entry is None

    @classmethod
    def nothing(cls) -> 'UndoResult':
        return cls(None, "Nothing to undo")

    def to_dict(self) -> dict:
        return {
            'undo': self.entry.to_dict() if self.entry else None,
            'message': self.message,
            'affected_months': [list(m) for m in self.affected_months],
        }


def undo(db: Database, scope: Scope) -> UndoResult:
    """Pop the newest entry of `scope` and replay its inverse atomically."""
    ledger = ledger_for(db, scope)
    try:
        with db.transaction():
            entry = ledger.pop(scope)
            if entry is None:
                logging.info(f"Nothing to undo for {scope}")
                return UndoResult.nothing()
            action = parse_action(entry.action_type, entry.payload)
            if isinstance(scope, CustomerScope):
                if action.entity.name != 'temporary_change':
                    raise UnsupportedActionError(f"{entry.action_type!r} is not a customer action")
            elif action.entity.name != entry.scope.entity_type:
                raise UnsupportedActionError(
                    f"{entry.action_type!r} does not belong to {entry.scope.entity_type!r}")
            months = affected_months(db, action)
            if months:
                ensure_months_open(db, scope.customer_id, months)
            apply_action(db, action)
            if months:
                sync_ledger_months(db, scope.customer_id, months)
    except sqlite3.IntegrityError as exc:
        logging.error(f"Undo for {scope} rolled back: {exc}")
        raise IntegrityError(f"undo could not be applied: {exc}") from exc
    except IntegrityError as exc:
        logging.error(f"Undo for {scope} rolled back: {exc}")
        raise

    message = _MESSAGES[_OPS[type(action)]].format(entity=action.entity.name.replace('_', ' '))
    logging.info(f"{message} ({scope})")
    return UndoResult(entry, message, months)
