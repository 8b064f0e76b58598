"""Contiguous zero-based ordering among sibling records.

Why:
    Sections, lessons and exercises are ordered within their parent by a
    persisted `order_index` field. Siblings of one parent always carry exactly
    the indices 0..n-1, so single-record moves stay O(1) writes and readers can
    sort without gaps.

Concurrency:
    Appends and compaction are single store operations scoped to one parent
    (`append`, `rerank`). Explicit reorders are written as one atomic batch
    (`apply_batch`); a half-applied reorder would break contiguity.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable, List, Optional, Sequence

from .errors import Conflict, InvalidReorderSet, NotFound, ParentMissing, VersionConflict
from .models import to_iso, utcnow
from .store import DocumentStoreProtocol


logger = logging.getLogger("silveredge.curriculum.ordering")

SIBLING_SORT = [("order_index", 1), ("id", 1)]


@dataclass
class OrderedCollection:
    store: DocumentStoreProtocol
    collection: str
    parent_field: str
    clock: Callable = utcnow
    parent_collection: Optional[str] = None

    def siblings(self, parent_id: str) -> List[dict]:
        return self.store.find(self.collection, {self.parent_field: parent_id}, sort=SIBLING_SORT)

    def append_index(self, parent_id: str) -> int:
        """Return the index a new last child receives (0 for the first child)."""
        last = self.store.find(
            self.collection,
            {self.parent_field: parent_id},
            sort=[("order_index", -1)],
            limit=1,
        )
        return int(last[0]["order_index"]) + 1 if last else 0

    def insert_last(self, parent_id: str, doc: dict) -> dict:
        """Persist `doc` as the new last child of `parent_id` at `append_index`.

        Concurrency:
            The store computes the index and inserts in one step under the
            parent's sibling scope, so concurrent appends and compactions of
            the same parent never observe each other half-done. With
            `parent_collection` set, a parent deleted in the meantime raises
            NotFound instead of leaving an orphan.
        """
        try:
            return self.store.append(
                self.collection,
                self.parent_field,
                parent_id,
                doc,
                parent_collection=self.parent_collection,
            )
        except ParentMissing as exc:
            raise NotFound(f"{self.parent_field[:-3]}_not_found") from exc

    def compact_after_removal(self, parent_id: str, removed_index: int) -> int:
        """Close the gap left by a removed child; returns the number of records rewritten.

        Must run after the removal is durable. The store re-ranks siblings by
        (order_index, id) under the parent's sibling scope and writes only
        records whose index differs from their rank, so after a single removal
        exactly the siblings above `removed_index` move down by one. Re-running
        after a crash, after a completed run or after a concurrent removal of
        another sibling is safe.
        """
        moved = self.store.rerank(
            self.collection,
            self.parent_field,
            parent_id,
            changes={"updated_at": to_iso(self.clock())},
        )
        logger.debug(
            "compacted %s under %s=%s after index %s (%d moved)",
            self.collection,
            self.parent_field,
            parent_id,
            removed_index,
            moved,
        )
        return moved

    def apply_explicit_order(self, parent_id: str, ordered_ids: Sequence[str]) -> List[dict]:
        """Assign `order_index = position` for the full sibling set in `ordered_ids`.

        Raises:
            InvalidReorderSet: duplicate ids, or the ids are not exactly the
                current children of `parent_id` (missing or foreign ids).
            Conflict: a sibling vanished between validation and the write.
        """
        ordered = list(ordered_ids)
        if len(set(ordered)) != len(ordered):
            raise InvalidReorderSet("duplicate ids in reorder request")
        current = self.siblings(parent_id)
        existing = {doc["id"] for doc in current}
        submitted = set(ordered)
        if submitted != existing:
            missing = sorted(existing - submitted)
            foreign = sorted(submitted - existing)
            raise InvalidReorderSet(f"reorder set mismatch (missing={missing}, foreign={foreign})")
        index_by_id = {doc["id"]: doc.get("order_index") for doc in current}
        now = to_iso(self.clock())
        updates = [
            (doc_id, {"order_index": position, "updated_at": now})
            for position, doc_id in enumerate(ordered)
            if index_by_id.get(doc_id) != position
        ]
        if updates:
            self._write(updates)
        logger.info("reordered %s under %s=%s", self.collection, self.parent_field, parent_id)
        return self.siblings(parent_id)

    def _write(self, updates) -> None:
        try:
            self.store.apply_batch(self.collection, updates)
        except VersionConflict as exc:
            raise Conflict("concurrent_modification", str(exc)) from exc


__all__ = ["OrderedCollection", "SIBLING_SORT"]
