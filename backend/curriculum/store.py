"""Document store port and the in-memory implementation.

Why:
    The curriculum core is written against an abstract document store that
    offers atomic per-document read-modify-write and query-by-filter. Keeping
    the port small lets tests supply simple fakes and lets deployments plug in
    the Postgres-backed store (`store_db.DBDocumentStore`).

Documents:
    Plain dicts with a string ``id``. Stores manage an integer ``version``
    (1 on insert, +1 on each write) used for compare-and-set.

Filters:
    ``{"field": value}`` for equality, or an operator dict per field:
    ``$in`` (membership), ``$gt`` (greater than), ``$ne`` (not equal) and
    ``$contains_ci`` (case-insensitive substring).

Sibling ordering:
    `append`, `rerank` and `delete_unreferenced` are atomic per parent scope.
    A store serialises them against each other so that an append can never
    observe a half-compacted sibling set and a parent can never lose its last
    guard check to a concurrent child insert.
"""
from __future__ import annotations

import copy
import threading
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .errors import DuplicateKey, ParentMissing, ReferenceExists, VersionConflict


Filter = Mapping[str, Any]
Sort = Sequence[Tuple[str, int]]


class DocumentStoreProtocol(Protocol):
    def insert(self, collection: str, doc: Mapping[str, Any], *, unique_on: Sequence[str] = ()) -> dict:
        ...

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        ...

    def find(
        self,
        collection: str,
        filter: Optional[Filter] = None,
        *,
        sort: Optional[Sort] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[dict]:
        ...

    def count(self, collection: str, filter: Optional[Filter] = None) -> int:
        ...

    def update(
        self,
        collection: str,
        doc_id: str,
        changes: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> Optional[dict]:
        ...

    def apply_batch(self, collection: str, updates: Sequence[Tuple[str, Mapping[str, Any]]]) -> int:
        ...

    def delete(self, collection: str, doc_id: str) -> bool:
        ...

    def delete_many(self, collection: str, filter: Filter) -> int:
        ...

    def append(
        self,
        collection: str,
        parent_field: str,
        parent_id: str,
        doc: Mapping[str, Any],
        *,
        index_field: str = "order_index",
        parent_collection: Optional[str] = None,
    ) -> dict:
        ...

    def rerank(
        self,
        collection: str,
        parent_field: str,
        parent_id: str,
        *,
        index_field: str = "order_index",
        changes: Optional[Mapping[str, Any]] = None,
    ) -> int:
        ...

    def delete_unreferenced(self, collection: str, doc_id: str, child_collection: str, child_field: str) -> bool:
        ...


def matches(doc: Mapping[str, Any], filter: Optional[Filter]) -> bool:
    """Return True when `doc` satisfies every clause of `filter`."""
    for key, cond in (filter or {}).items():
        value = doc.get(key)
        if isinstance(cond, Mapping):
            for op, arg in cond.items():
                if op == "$in":
                    if value not in arg:
                        return False
                elif op == "$gt":
                    if value is None or not value > arg:
                        return False
                elif op == "$ne":
                    if value == arg:
                        return False
                elif op == "$contains_ci":
                    if not isinstance(value, str) or str(arg).lower() not in value.lower():
                        return False
                else:
                    raise ValueError(f"unsupported filter operator: {op}")
        elif value != cond:
            return False
    return True


def _sort_key(sort: Sort):
    def key(doc: Mapping[str, Any]):
        return tuple((doc.get(f) is None, doc.get(f)) for f, _ in sort)

    return key


def sort_docs(docs: List[dict], sort: Optional[Sort]) -> List[dict]:
    """Sort in place by `(field, direction)` pairs.

    Missing and None values order after every present value ascending and
    before them descending, the same placement Postgres gives NULLs.
    """
    if not sort:
        return docs
    # Stable multi-key sort: apply keys from least to most significant.
    for field_name, direction in reversed(list(sort)):
        docs.sort(key=_sort_key([(field_name, direction)]), reverse=direction < 0)
    return docs


class InMemoryDocumentStore:
    """Thread-safe dict-backed store for local development and tests.

    Every call runs under one re-entrant lock, which makes single-document
    writes and batches atomic. Documents are deep-copied on the way in and
    out so callers never alias stored state.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, dict]] = {}
        self._lock = threading.RLock()

    def _docs(self, collection: str) -> Dict[str, dict]:
        return self._collections.setdefault(collection, {})

    def insert(self, collection: str, doc: Mapping[str, Any], *, unique_on: Sequence[str] = ()) -> dict:
        with self._lock:
            docs = self._docs(collection)
            doc_id = doc["id"]
            if doc_id in docs:
                raise DuplicateKey(f"{collection}:{doc_id}")
            if unique_on:
                key = tuple(doc.get(f) for f in unique_on)
                for other in docs.values():
                    if tuple(other.get(f) for f in unique_on) == key:
                        raise DuplicateKey(f"{collection}:{','.join(unique_on)}={key!r}")
            stored = copy.deepcopy(dict(doc))
            stored["version"] = 1
            docs[doc_id] = stored
            return copy.deepcopy(stored)

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        with self._lock:
            doc = self._docs(collection).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def find(
        self,
        collection: str,
        filter: Optional[Filter] = None,
        *,
        sort: Optional[Sort] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[dict]:
        with self._lock:
            found = [copy.deepcopy(d) for d in self._docs(collection).values() if matches(d, filter)]
        found = sort_docs(found, sort)
        end = None if limit is None else skip + limit
        return found[skip:end]

    def count(self, collection: str, filter: Optional[Filter] = None) -> int:
        with self._lock:
            return sum(1 for d in self._docs(collection).values() if matches(d, filter))

    def update(
        self,
        collection: str,
        doc_id: str,
        changes: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> Optional[dict]:
        with self._lock:
            doc = self._docs(collection).get(doc_id)
            if doc is None:
                return None
            if expected_version is not None and doc.get("version") != expected_version:
                raise VersionConflict(f"{collection}:{doc_id}")
            for key, value in changes.items():
                if key in ("id", "version"):
                    continue
                doc[key] = copy.deepcopy(value)
            doc["version"] = int(doc.get("version", 1)) + 1
            return copy.deepcopy(doc)

    def apply_batch(self, collection: str, updates: Sequence[Tuple[str, Mapping[str, Any]]]) -> int:
        """Apply all updates or none; a vanished document aborts the whole batch."""
        with self._lock:
            docs = self._docs(collection)
            missing = [doc_id for doc_id, _ in updates if doc_id not in docs]
            if missing:
                raise VersionConflict(f"{collection}: missing {missing}")
            for doc_id, changes in updates:
                self.update(collection, doc_id, changes)
            return len(updates)

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            return self._docs(collection).pop(doc_id, None) is not None

    def delete_many(self, collection: str, filter: Filter) -> int:
        with self._lock:
            docs = self._docs(collection)
            doomed = [doc_id for doc_id, d in docs.items() if matches(d, filter)]
            for doc_id in doomed:
                docs.pop(doc_id, None)
            return len(doomed)

    def append(
        self,
        collection: str,
        parent_field: str,
        parent_id: str,
        doc: Mapping[str, Any],
        *,
        index_field: str = "order_index",
        parent_collection: Optional[str] = None,
    ) -> dict:
        """Insert `doc` at the end of its parent's sibling list.

        The next index is computed and written under the store lock, so two
        appends to the same parent can never collide and an append can never
        interleave with `rerank`. Raises ParentMissing when `parent_collection`
        is given and the parent is gone.
        """
        with self._lock:
            if parent_collection is not None and parent_id not in self._docs(parent_collection):
                raise ParentMissing(f"{parent_collection}:{parent_id}")
            indices = [
                int(d.get(index_field) or 0)
                for d in self._docs(collection).values()
                if d.get(parent_field) == parent_id
            ]
            placed = dict(doc)
            placed[parent_field] = parent_id
            placed[index_field] = max(indices) + 1 if indices else 0
            return self.insert(collection, placed)

    def rerank(
        self,
        collection: str,
        parent_field: str,
        parent_id: str,
        *,
        index_field: str = "order_index",
        changes: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """Rewrite sibling indices to 0..n-1 in (index, id) order; return moved count."""
        with self._lock:
            siblings = sort_docs(
                [d for d in self._docs(collection).values() if d.get(parent_field) == parent_id],
                [(index_field, 1), ("id", 1)],
            )
            moved = 0
            for rank, doc in enumerate(siblings):
                if doc.get(index_field) == rank:
                    continue
                patch = dict(changes or {})
                patch[index_field] = rank
                self.update(collection, doc["id"], patch)
                moved += 1
            return moved

    def delete_unreferenced(self, collection: str, doc_id: str, child_collection: str, child_field: str) -> bool:
        """Delete `doc_id` only while no child references it.

        Returns False when the document does not exist and raises
        ReferenceExists when children remain.
        """
        with self._lock:
            if doc_id not in self._docs(collection):
                return False
            children = sum(1 for d in self._docs(child_collection).values() if d.get(child_field) == doc_id)
            if children:
                raise ReferenceExists(children)
            return self.delete(collection, doc_id)


__all__ = [
    "DocumentStoreProtocol",
    "InMemoryDocumentStore",
    "Filter",
    "Sort",
    "matches",
    "sort_docs",
]
