"""
DataSourceAdapter: read/update capabilities over named collections.

Adapters carry no business logic. Documents are opaque mappings; filters are
mappings of dotted field paths to a literal (equality) or an operator dict
($eq $ne $lt $lte $gt $gte $exists $size $in). Patches use ``$set``/``$unset``.

Implementations:
- InMemoryDataSource: collections held in process (tests, fixtures)
- SQLDocumentDataSource: JSON documents in the ``documents`` table
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from datetime import UTC, date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from governance_engine.db import Database, DocumentModel
from governance_engine.errors import DataSourceUnavailableError, InvalidInputError
from governance_engine.schemas import UpdateResult

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Filter = Mapping[str, Any]

_MISSING = object()

OPERATORS = frozenset({"$eq", "$ne", "$lt", "$lte", "$gt", "$gte", "$exists", "$size", "$in"})


class DataSourceAdapter(Protocol):
    """Capability set the engine and connectors depend on."""

    async def query(
        self,
        collection: str,
        filter: Filter,
        projection: Optional[Sequence[str]] = None,
    ) -> List[Document]:
        ...

    async def count(self, collection: str, filter: Filter) -> int:
        ...

    async def update(self, collection: str, filter: Filter, patch: Mapping[str, Any]) -> UpdateResult:
        ...

    async def close(self) -> None:
        ...


# ==================== Filter evaluation ====================

def get_path(document: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path; returns the ``_MISSING`` sentinel when absent."""
    current: Any = document
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def field_exists(document: Mapping[str, Any], path: str) -> bool:
    return get_path(document, path) is not _MISSING


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    return value


def _coerce_pair(left: Any, right: Any) -> Tuple[Any, Any]:
    """Dates stored as ISO strings (JSON documents) compare against date operands."""
    if isinstance(right, (date, datetime)) and isinstance(left, str):
        try:
            left = datetime.fromisoformat(left)
        except ValueError:
            return left, right
    return _comparable(left), _comparable(right)


def _equal(left: Any, right: Any) -> bool:
    """Equality where booleans only equal booleans (False != 0, True != 1)."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    return left == right


def _compare(op: str, value: Any, operand: Any) -> bool:
    if op not in OPERATORS:
        raise InvalidInputError(f"Unsupported filter operator: {op}")
    if value is _MISSING:
        return op in ("$ne",) or (op == "$exists" and not operand)
    if op == "$exists":
        return bool(operand)
    if op == "$size":
        return isinstance(value, list) and len(value) == operand
    if op == "$in":
        return any(_equal(value, candidate) for candidate in operand)
    left, right = _coerce_pair(value, operand)
    try:
        if op == "$eq":
            return _equal(left, right)
        if op == "$ne":
            return not _equal(left, right)
        if op == "$lt":
            return left < right
        if op == "$lte":
            return left <= right
        if op == "$gt":
            return left > right
        if op == "$gte":
            return left >= right
    except TypeError:
        # Mismatched types never match
        return False
    return False


def matches(document: Mapping[str, Any], filter: Filter) -> bool:
    """Return True when ``document`` satisfies every clause of ``filter``."""
    for path, condition in filter.items():
        value = get_path(document, path)
        if isinstance(condition, Mapping) and condition and all(str(k).startswith("$") for k in condition):
            for op, operand in condition.items():
                if not _compare(op, value, operand):
                    return False
        elif not _compare("$eq", value, condition):
            return False
    return True


def project(document: Mapping[str, Any], projection: Optional[Sequence[str]]) -> Document:
    """Keep only projected fields (dotted paths); ``_id`` is always kept."""
    if not projection:
        return copy.deepcopy(dict(document))
    result: Document = {}
    for path in ["_id", *projection]:
        value = get_path(document, path)
        if value is _MISSING:
            continue
        target = result
        parts = path.split(".")
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        target[parts[-1]] = copy.deepcopy(value)
    return result


def apply_patch(document: Document, patch: Mapping[str, Any]) -> bool:
    """Apply ``$set``/``$unset`` in place. Returns True when anything changed."""
    unknown = set(patch) - {"$set", "$unset"}
    if unknown:
        raise InvalidInputError(f"Unsupported patch operators: {sorted(unknown)}")

    changed = False
    for path, value in (patch.get("$set") or {}).items():
        parts = path.split(".")
        target = document
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        if target.get(parts[-1], _MISSING) != value:
            target[parts[-1]] = value
            changed = True
    for path in (patch.get("$unset") or {}):
        parts = path.split(".")
        target = document
        for part in parts[:-1]:
            target = target.get(part) if isinstance(target, dict) else None
            if target is None:
                break
        if isinstance(target, dict) and parts[-1] in target:
            del target[parts[-1]]
            changed = True
    return changed


# ==================== In-memory adapter ====================

class InMemoryDataSource:
    """Collections held in process; documents are copied on the way in and out."""

    def __init__(self, collections: Optional[Mapping[str, Iterable[Document]]] = None):
        self._collections: Dict[str, List[Document]] = {}
        self._closed = False
        for name, documents in (collections or {}).items():
            self.insert_many(name, documents)

    def insert_many(self, collection: str, documents: Iterable[Document]) -> int:
        bucket = self._collections.setdefault(collection, [])
        before = len(bucket)
        bucket.extend(copy.deepcopy(dict(doc)) for doc in documents)
        return len(bucket) - before

    def _bucket(self, collection: str) -> List[Document]:
        if self._closed:
            raise DataSourceUnavailableError("data source is closed")
        return self._collections.get(collection, [])

    async def query(
        self,
        collection: str,
        filter: Filter,
        projection: Optional[Sequence[str]] = None,
    ) -> List[Document]:
        return [project(doc, projection) for doc in self._bucket(collection) if matches(doc, filter)]

    async def count(self, collection: str, filter: Filter) -> int:
        return sum(1 for doc in self._bucket(collection) if matches(doc, filter))

    async def update(self, collection: str, filter: Filter, patch: Mapping[str, Any]) -> UpdateResult:
        matched = modified = 0
        for doc in self._bucket(collection):
            if matches(doc, filter):
                matched += 1
                if apply_patch(doc, patch):
                    modified += 1
        return UpdateResult(matched_count=matched, modified_count=modified)

    async def close(self) -> None:
        self._closed = True


# ==================== SQL document adapter ====================

class SQLDocumentDataSource:
    """
    Documents stored as JSON rows in the ``documents`` table.

    Filtering happens in Python with ``matches``; blocking database calls run
    in a worker thread so callers can bound them with a timeout.
    """

    def __init__(self, database: Database, key_field: str = "_id"):
        self.database = database
        self.key_field = key_field

    def insert_many(self, collection: str, documents: Iterable[Document]) -> int:
        inserted = 0
        with self.database.transaction() as db:
            for doc in documents:
                key = doc.get(self.key_field)
                if key is None:
                    raise InvalidInputError(f"Document in {collection} has no {self.key_field}")
                db.add(DocumentModel(collection=collection, doc_key=json.dumps(key, default=str), body=dict(doc)))
                inserted += 1
        return inserted

    def _load(self, collection: str) -> List[Document]:
        with self.database.transaction() as db:
            rows = (
                db.query(DocumentModel)
                .filter(DocumentModel.collection == collection)
                .order_by(DocumentModel.id.asc())
                .all()
            )
            return [dict(row.body) for row in rows]

    def _update(self, collection: str, filter: Filter, patch: Mapping[str, Any]) -> UpdateResult:
        matched = modified = 0
        with self.database.transaction() as db:
            rows = db.query(DocumentModel).filter(DocumentModel.collection == collection).all()
            for row in rows:
                body = copy.deepcopy(row.body)
                if not matches(body, filter):
                    continue
                matched += 1
                if apply_patch(body, patch):
                    row.body = body
                    modified += 1
        return UpdateResult(matched_count=matched, modified_count=modified)

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except SQLAlchemyError as e:
            logger.error("Document store error: %s", e)
            raise DataSourceUnavailableError(f"document store error: {e}") from e

    async def query(
        self,
        collection: str,
        filter: Filter,
        projection: Optional[Sequence[str]] = None,
    ) -> List[Document]:
        documents = await self._run(self._load, collection)
        return [project(doc, projection) for doc in documents if matches(doc, filter)]

    async def count(self, collection: str, filter: Filter) -> int:
        documents = await self._run(self._load, collection)
        return sum(1 for doc in documents if matches(doc, filter))

    async def update(self, collection: str, filter: Filter, patch: Mapping[str, Any]) -> UpdateResult:
        return await self._run(self._update, collection, filter, patch)

    async def close(self) -> None:
        self.database.dispose()
