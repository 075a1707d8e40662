"""
Atomic document storage
Provides the "list of operations -> commit" write primitive, read-your-writes
transactions and filtered, in-memory-sorted queries over JSON documents.

Two backends share this module's Transaction and query logic:
MemoryStorage (below) and SQLiteStorage (core/db.py).
"""

import copy
from dataclasses import dataclass
from datetime import datetime
from threading import RLock
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from medsync.core.errors import ConflictError, NotFoundError
from medsync.core.timeutils import looks_like_datetime, parse_datetime

T = TypeVar("T")

OPERATION_TYPES = ("set", "create", "update", "delete")
FILTER_OPERATORS = ("==", "!=", "<", "<=", ">", ">=", "in", "not_in", "array_contains")

Document = Dict[str, Any]
Filter = Tuple[str, str, Any]


@dataclass
class WriteOp:
    """One document write inside an atomic unit

    operation:
        set     - create or replace the document
        create  - like set, but the document must not exist yet
        update  - merge dotted keys into an existing document
        delete  - remove an existing document
    """

    collection: str
    document_id: str
    operation: str
    data: Optional[Document] = None
    must_exist: bool = True

    def __post_init__(self):
        if self.operation not in OPERATION_TYPES:
            raise ValueError(f"Unknown write operation: {self.operation}")

    def to_dict(self) -> Dict[str, Any]:
        """Log-friendly representation (data keys only)"""
        return {
            "collection": self.collection,
            "documentId": self.document_id,
            "operation": self.operation,
            "dataKeys": sorted((self.data or {}).keys()),
        }


# ==================== Document helpers ====================


def get_field(doc: Document, path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def set_field(doc: Document, path: str, value: Any) -> None:
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        child = target.get(part)
        if not isinstance(child, dict):
            child = {}
            target[part] = child
        target = child
    target[parts[-1]] = value


def apply_update(doc: Document, changes: Document) -> Document:
    """Firestore-style update: dotted keys set nested fields, plain keys replace"""
    updated = copy.deepcopy(doc)
    for key, value in changes.items():
        set_field(updated, key, copy.deepcopy(value))
    return updated


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        return parse_datetime(value)
    if looks_like_datetime(value):
        return parse_datetime(value)
    return value


def matches(doc: Document, filters: Iterable[Filter]) -> bool:
    for path, op, expected in filters:
        actual = get_field(doc, path)
        if op == "==":
            if _comparable(actual) != _comparable(expected):
                return False
        elif op == "!=":
            if _comparable(actual) == _comparable(expected):
                return False
        elif op == "in":
            if _comparable(actual) not in [_comparable(v) for v in expected]:
                return False
        elif op == "not_in":
            if _comparable(actual) in [_comparable(v) for v in expected]:
                return False
        elif op == "array_contains":
            if not isinstance(actual, list) or expected not in actual:
                return False
        elif op in ("<", "<=", ">", ">="):
            if actual is None:
                return False
            left, right = _comparable(actual), _comparable(expected)
            try:
                if op == "<" and not left < right:
                    return False
                if op == "<=" and not left <= right:
                    return False
                if op == ">" and not left > right:
                    return False
                if op == ">=" and not left >= right:
                    return False
            except TypeError:
                return False
        else:
            raise ValueError(f"Unknown filter operator: {op}")
    return True


def sort_documents(
    docs: List[Document], order_by: Optional[str], descending: bool = False
) -> List[Document]:
    """In-memory ordering; missing values sort last regardless of direction"""
    if not order_by:
        return docs
    present = [d for d in docs if get_field(d, order_by) is not None]
    missing = [d for d in docs if get_field(d, order_by) is None]
    present.sort(key=lambda d: _comparable(get_field(d, order_by)), reverse=descending)
    return present + missing


# ==================== Transactions ====================


class Transaction:
    """Buffered writes with read-your-writes reads

    Nothing is visible outside until the owning storage commits the buffer.
    """

    def __init__(
        self,
        reader: Callable[[str, str], Optional[Document]],
        scanner: Callable[[str, Sequence[Filter]], List[Document]],
    ):
        self._reader = reader
        self._scanner = scanner
        self._writes: Dict[Tuple[str, str], Optional[Document]] = {}
        self.operations: List[WriteOp] = []

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        key = (collection, doc_id)
        if key in self._writes:
            doc = self._writes[key]
            return copy.deepcopy(doc) if doc is not None else None
        return self._reader(collection, doc_id)

    def exists(self, collection: str, doc_id: str) -> bool:
        return self.get(collection, doc_id) is not None

    def query(self, collection: str, filters: Sequence[Filter] = ()) -> List[Document]:
        """Filtered read inside the transaction, including this transaction's own writes

        Documents are keyed by their "id" field; unsorted.
        """
        filters = list(filters)
        found: Dict[str, Document] = {}
        for doc in self._scanner(collection, filters):
            if matches(doc, filters):
                found[doc.get("id")] = doc
        for (written_collection, doc_id), doc in self._writes.items():
            if written_collection != collection:
                continue
            found.pop(doc_id, None)
            if doc is not None and matches(doc, filters):
                found[doc_id] = copy.deepcopy(doc)
        return list(found.values())

    def set(self, collection: str, doc_id: str, data: Document) -> None:
        self._writes[(collection, doc_id)] = copy.deepcopy(data)
        self.operations.append(WriteOp(collection, doc_id, "set", data))

    def create(self, collection: str, doc_id: str, data: Document) -> None:
        if self.exists(collection, doc_id):
            raise ConflictError(
                f"Document already exists: {collection}/{doc_id}",
                {"collection": collection, "id": doc_id},
            )
        self._writes[(collection, doc_id)] = copy.deepcopy(data)
        self.operations.append(WriteOp(collection, doc_id, "create", data))

    def update(self, collection: str, doc_id: str, changes: Document) -> Document:
        current = self.get(collection, doc_id)
        if current is None:
            raise NotFoundError(collection, doc_id)
        updated = apply_update(current, changes)
        self._writes[(collection, doc_id)] = updated
        self.operations.append(WriteOp(collection, doc_id, "update", changes))
        return copy.deepcopy(updated)

    def delete(self, collection: str, doc_id: str, must_exist: bool = True) -> None:
        if must_exist and not self.exists(collection, doc_id):
            raise NotFoundError(collection, doc_id)
        self._writes[(collection, doc_id)] = None
        self.operations.append(WriteOp(collection, doc_id, "delete", must_exist=must_exist))

    def apply(self, op: WriteOp) -> None:
        if op.operation == "set":
            self.set(op.collection, op.document_id, op.data or {})
        elif op.operation == "create":
            self.create(op.collection, op.document_id, op.data or {})
        elif op.operation == "update":
            self.update(op.collection, op.document_id, op.data or {})
        else:
            self.delete(op.collection, op.document_id, must_exist=op.must_exist)

    def pending_writes(self) -> Dict[Tuple[str, str], Optional[Document]]:
        return self._writes


class AtomicStorage:
    """Base class for storage backends

    Subclasses implement get, _scan and run_transaction.
    """

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        raise NotImplementedError

    def _scan(self, collection: str, filters: Sequence[Filter]) -> List[Document]:
        """Return candidate documents; may pre-filter, must not drop matches"""
        raise NotImplementedError

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        raise NotImplementedError

    def count(self, collection: str) -> int:
        return len(self._scan(collection, []))

    def close(self) -> None:
        pass

    def query(
        self,
        collection: str,
        filters: Optional[Sequence[Filter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Document]:
        """Filter then sort in memory; never requires a composite index"""
        filters = list(filters or [])
        for _, op, _ in filters:
            if op not in FILTER_OPERATORS:
                raise ValueError(f"Unknown filter operator: {op}")
        docs = [doc for doc in self._scan(collection, filters) if matches(doc, filters)]
        docs = sort_documents(docs, order_by, descending)
        if limit is not None:
            docs = docs[:limit]
        return docs

    def commit(self, operations: Sequence[WriteOp]) -> int:
        """Apply all operations as one atomic unit, returns the count applied"""

        def _apply(txn: Transaction) -> int:
            for op in operations:
                txn.apply(op)
            return len(operations)

        return self.run_transaction(_apply)


class MemoryStorage(AtomicStorage):
    """In-process storage for tests and dry runs"""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Document]] = {}
        self.lock = RLock()

    def _read(self, collection: str, doc_id: str) -> Optional[Document]:
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self.lock:
            return self._read(collection, doc_id)

    def _scan(self, collection: str, filters: Sequence[Filter]) -> List[Document]:
        with self.lock:
            return [copy.deepcopy(doc) for doc in self._collections.get(collection, {}).values()]

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        # The lock is held for the whole transaction so concurrent
        # read-check-write sequences serialize.
        with self.lock:
            txn = Transaction(self._read, self._scan)
            result = fn(txn)
            for (collection, doc_id), doc in txn.pending_writes().items():
                bucket = self._collections.setdefault(collection, {})
                if doc is None:
                    bucket.pop(doc_id, None)
                else:
                    bucket[doc_id] = copy.deepcopy(doc)
            return result

    def clear(self) -> None:
        with self.lock:
            self._collections.clear()
