"""
Document store client
Flat document collections on top of the SQLAlchemy ``documents`` table, with
the get/query/set/update/batch surface the dashboard and the bot share.
"""
import copy
import operator
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from flask import current_app
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from .errors import NotFoundError, StoreUnavailableError
from .models import Document

logger = get_logger(__name__)

# Tagged encoding keeps datetimes distinguishable from plain strings inside JSON.
# Keys of stored maps that begin with the tag prefix are escaped by doubling it.
_TAG_PREFIX = '$'
_TIMESTAMP_TAG = _TAG_PREFIX + 'ts'


class _Sentinel:
    """Marker value replaced or acted on at write time; identity is preserved through copies"""

    def __init__(self, name: str):
        self.name = name

    def __repr__(self):
        return self.name

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


SERVER_TIMESTAMP = _Sentinel('SERVER_TIMESTAMP')
DELETE_FIELD = _Sentinel('DELETE_FIELD')

Filter = Tuple[str, str, Any]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _escape_key(key: str) -> str:
    return _TAG_PREFIX + key if key.startswith(_TAG_PREFIX) else key


def _unescape_key(key: str) -> str:
    return key[1:] if key.startswith(_TAG_PREFIX * 2) else key


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return {_TIMESTAMP_TAG: value.astimezone(timezone.utc).isoformat()}
    if isinstance(value, dict):
        return {_escape_key(str(k)): _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if len(value) == 1 and _TIMESTAMP_TAG in value:
            return _decode_timestamp(value[_TIMESTAMP_TAG])
        return {_unescape_key(k): _decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v) for v in value]
    return value


def _decode_timestamp(raw: Any) -> Any:
    try:
        return datetime.fromisoformat(raw)
    except (TypeError, ValueError):
        logger.warning("Unreadable stored timestamp", value=repr(raw))
        return raw


_MISSING = object()


def get_path(data: Dict[str, Any], path: str, default: Any = None) -> Any:
    """Read a dotted field path (``renewalReminders.sevenDays``) from a document"""
    current: Any = data
    for part in path.split('.'):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def _set_path(data: Dict[str, Any], path: str, value: Any):
    parts = path.split('.')
    current = data
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    if value is DELETE_FIELD:
        current.pop(parts[-1], None)
    elif isinstance(value, dict):
        current[parts[-1]] = _strip_deletes(value)
    else:
        current[parts[-1]] = value


def _deep_merge(target: Dict[str, Any], fields: Dict[str, Any]):
    for key, value in fields.items():
        if value is DELETE_FIELD:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        elif isinstance(value, dict):
            target[key] = _strip_deletes(value)
        else:
            target[key] = value


def _strip_deletes(fields: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = {}
    for key, value in fields.items():
        if value is DELETE_FIELD:
            continue
        cleaned[key] = _strip_deletes(value) if isinstance(value, dict) else value
    return cleaned


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(left, right):
        if left is _MISSING or left is None:
            return False
        try:
            return op(left, right)
        except TypeError:
            return False
    return compare


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    '==': lambda left, right: left is not _MISSING and left == right,
    '!=': lambda left, right: left is not _MISSING and left != right,
    '<': _compare(operator.lt),
    '<=': _compare(operator.le),
    '>': _compare(operator.gt),
    '>=': _compare(operator.ge),
    'in': lambda left, right: left is not _MISSING and left in right,
    'array-contains': lambda left, right: isinstance(left, list) and right in left,
}


@dataclass
class DocumentSnapshot:
    """A read-only view of one document at the time it was read"""
    collection: str
    id: str
    data: Dict[str, Any] = field(default_factory=dict)

    def get(self, path: str, default: Any = None) -> Any:
        return get_path(self.data, path, default)

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, **self.data}


class WriteBatch:
    """
    Queue of writes committed in a single transaction

    Used as a context manager, the batch commits on a clean exit and discards
    every queued write when the block raises.
    """

    def __init__(self, store: 'DocumentStore'):
        self._store = store
        self._writes: List[Tuple[str, str, str, Dict[str, Any], bool]] = []

    def set(self, collection: str, key: str, fields: Dict[str, Any], merge: bool = False) -> 'WriteBatch':
        self._writes.append(('set', collection, key, fields, merge))
        return self

    def update(self, collection: str, key: str, fields: Dict[str, Any]) -> 'WriteBatch':
        self._writes.append(('update', collection, key, fields, False))
        return self

    def __len__(self):
        return len(self._writes)

    def commit(self):
        if not self._writes:
            return
        writes, self._writes = self._writes, []
        self._store._run_writes(writes)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.commit()
        else:
            self._writes = []
        return False


class DocumentStore:
    """
    Collections of JSON documents keyed by string ids

    Args:
        database: Flask-SQLAlchemy extension bound to the application
        clock: Callable returning the current aware UTC datetime; its value is
            written wherever ``SERVER_TIMESTAMP`` appears in a write
    """

    def __init__(self, database, clock: Callable[[], datetime] = utcnow):
        self.db = database
        self.clock = clock

    @property
    def session(self):
        return self.db.session

    # Reads
    def get(self, collection: str, key: str) -> Optional[DocumentSnapshot]:
        try:
            row = self._find(collection, key)
        except SQLAlchemyError as e:
            raise self._unavailable('get', collection, e)
        if row is None:
            return None
        return DocumentSnapshot(collection, row.key, _decode(row.data or {}))

    def query(self, collection: str, filters: Iterable[Filter] = (), order_by: Optional[str] = None,
              descending: bool = False, limit: Optional[int] = None) -> List[DocumentSnapshot]:
        """
        Return documents of a collection matching every filter

        Range filters never match a document lacking the field. Documents
        lacking the ``order_by`` field sort after all others.
        """
        filters = list(filters)
        for _, op, _ in filters:
            if op not in _OPERATORS:
                raise ValueError(f"Unsupported filter operator: {op}")
        try:
            rows = self.session.execute(
                select(Document).where(Document.collection == collection).order_by(Document.id)
                .execution_options(populate_existing=True)
            ).scalars().all()
        except SQLAlchemyError as e:
            raise self._unavailable('query', collection, e)

        snapshots = []
        for row in rows:
            data = _decode(row.data or {})
            if all(_OPERATORS[op](get_path(data, path, _MISSING), value) for path, op, value in filters):
                snapshots.append(DocumentSnapshot(collection, row.key, data))

        if order_by:
            present = [s for s in snapshots if s.get(order_by) is not None]
            absent = [s for s in snapshots if s.get(order_by) is None]
            try:
                present.sort(key=lambda s: s.get(order_by), reverse=descending)
            except TypeError:
                present.sort(key=lambda s: str(s.get(order_by)), reverse=descending)
            snapshots = present + absent
        if limit is not None:
            snapshots = snapshots[:limit]
        return snapshots

    def count(self, collection: str, filters: Iterable[Filter] = ()) -> int:
        return len(self.query(collection, filters))

    # Writes
    def new_id(self) -> str:
        return uuid.uuid4().hex

    def add(self, collection: str, fields: Dict[str, Any]) -> str:
        key = self.new_id()
        self.set(collection, key, fields)
        return key

    def set(self, collection: str, key: str, fields: Dict[str, Any], merge: bool = False):
        self._run_writes([('set', collection, key, fields, merge)])

    def update(self, collection: str, key: str, fields: Dict[str, Any]):
        self._run_writes([('update', collection, key, fields, False)])

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def ping(self) -> bool:
        try:
            self.session.execute(text('SELECT 1'))
            return True
        except SQLAlchemyError as e:
            logger.error("Document store ping failed", error=str(e))
            return False

    # Internals
    def _find(self, collection: str, key: str) -> Optional[Document]:
        return self.session.execute(
            select(Document)
            .where(Document.collection == collection, Document.key == key)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _resolve(self, fields: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        resolved = {}
        for key, value in fields.items():
            if value is SERVER_TIMESTAMP:
                resolved[key] = now
            elif isinstance(value, dict):
                resolved[key] = self._resolve(value, now)
            else:
                resolved[key] = value
        return resolved

    def _apply(self, kind: str, collection: str, key: str, fields: Dict[str, Any], merge: bool,
               now: datetime, pending: Dict[Tuple[str, str], Document]):
        fields = self._resolve(copy.deepcopy(fields), now)
        row = pending.get((collection, key)) or self._find(collection, key)

        if kind == 'update':
            if row is None:
                raise NotFoundError(f"Document {collection}/{key} not found")
            data = _decode(copy.deepcopy(row.data or {}))
            for path, value in fields.items():
                _set_path(data, path, value)
        elif merge and row is not None:
            data = _decode(copy.deepcopy(row.data or {}))
            _deep_merge(data, fields)
        else:
            data = _strip_deletes(fields)

        if row is None:
            row = Document(collection=collection, key=key, data=_encode(data))
            self.session.add(row)
        else:
            # Reassign so the JSON column is flagged dirty
            row.data = _encode(data)
        pending[(collection, key)] = row

    def _run_writes(self, writes: Sequence[Tuple[str, str, str, Dict[str, Any], bool]]):
        now = self.clock()
        pending: Dict[Tuple[str, str], Document] = {}
        try:
            for kind, collection, key, fields, merge in writes:
                self._apply(kind, collection, key, fields, merge, now, pending)
            self.session.commit()
        except NotFoundError:
            self.session.rollback()
            raise
        except SQLAlchemyError as e:
            self.session.rollback()
            raise self._unavailable('write', writes[0][1], e)
        logger.debug("Documents written", count=len(writes), collections=sorted({w[1] for w in writes}))

    def _unavailable(self, operation: str, collection: str, error: Exception) -> StoreUnavailableError:
        logger.error("Document store operation failed", operation=operation, collection=collection, error=str(error))
        return StoreUnavailableError("Document store unavailable")


def get_store() -> DocumentStore:
    """Document store constructed by the application factory for this app"""
    return current_app.extensions['document_store']
