"""
Postgres-backed document store for the curriculum core.

Security:
- Application traffic uses a login role that is IN ROLE `silveredge_limited`.
- The superuser DSN is rejected unless ALLOW_SERVICE_DSN_FOR_TESTING=true.

Design:
- One JSONB table keyed by (collection, id) with an integer `version` column
  for compare-and-set writes.
- Minimal psycopg3 usage; each call opens a short-lived connection and runs in
  a single transaction, so batches are all-or-nothing.
- Returns plain dicts so services stay independent of the driver.
- Sibling scopes (collection, parent field, parent id) serialize on a
  transaction-scoped advisory lock for append, rerank and guarded deletes.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple
import os
import re
from urllib.parse import urlparse

import psycopg
from psycopg.types.json import Jsonb

from .config import is_prod_like
from .errors import DuplicateKey, ParentMissing, ReferenceExists, StoreUnavailable, VersionConflict
from .store import Filter, Sort


TABLE = "public.curriculum_documents"

_FIELD_RE = re.compile(r"^[a-z_][a-z0-9_]*$")

_SCHEMA_SQL = f"""
create table if not exists {TABLE} (
  collection text not null,
  id text not null,
  version integer not null default 1,
  data jsonb not null,
  created_at timestamptz not null default now(),
  primary key (collection, id)
);
create index if not exists curriculum_documents_data_gin on {TABLE} using gin (data jsonb_path_ops);
"""


def _default_limited_dsn() -> str:
    host = os.getenv("TEST_DB_HOST", "127.0.0.1")
    port = os.getenv("TEST_DB_PORT", "54322")
    return f"postgresql://silveredge_app:silveredge-app@{host}:{port}/postgres"


def _dsn() -> str:
    """Resolve the DSN for DB access; prod-like environments require an explicit one."""
    candidates = [
        os.getenv("CURRICULUM_DATABASE_URL"),
        os.getenv("DATABASE_URL"),
    ]
    for dsn in candidates:
        if dsn:
            return dsn
    if is_prod_like():
        raise RuntimeError("CURRICULUM_DATABASE_URL must be set in production/staging environments")
    return _default_limited_dsn()


def _field(name: str) -> str:
    if not _FIELD_RE.match(name or ""):
        raise ValueError(f"invalid field name: {name!r}")
    return name


def _where(filter: Optional[Filter]) -> Tuple[str, List[Any]]:
    """Translate a store filter into a SQL predicate over the `data` column."""
    clauses: List[str] = []
    params: List[Any] = []
    for key, cond in (filter or {}).items():
        col = f"data->'{_field(key)}'"
        if isinstance(cond, Mapping):
            for op, arg in cond.items():
                if op == "$in":
                    clauses.append(f"{col} in (select jsonb_array_elements(%s::jsonb))")
                    params.append(Jsonb(list(arg)))
                elif op == "$gt":
                    clauses.append(f"{col} > %s::jsonb")
                    params.append(Jsonb(arg))
                elif op == "$ne":
                    clauses.append(f"{col} is distinct from %s::jsonb")
                    params.append(Jsonb(arg))
                elif op == "$contains_ci":
                    escaped = str(arg).replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
                    clauses.append(f"data->>'{_field(key)}' ilike %s")
                    params.append(f"%{escaped}%")
                else:
                    raise ValueError(f"unsupported filter operator: {op}")
        elif cond is None:
            clauses.append(f"({col} is null or {col} = 'null'::jsonb)")
        else:
            clauses.append(f"{col} = %s::jsonb")
            params.append(Jsonb(cond))
    return (" and ".join(clauses) or "true"), params


def _order_by(sort: Optional[Sort]) -> str:
    if not sort:
        return ""
    parts = []
    for f, d in sort:
        col = f"nullif(data->'{_field(f)}', 'null'::jsonb)"
        parts.append(f"{col} desc nulls first" if d < 0 else f"{col} asc nulls last")
    return " order by " + ", ".join(parts)


def _scope_key(collection: str, parent_field: str, parent_id: str) -> str:
    return f"{collection}:{parent_field}:{parent_id}"


def _row_to_doc(row: Tuple) -> dict:
    version, data = row[0], row[1]
    doc = dict(data or {})
    doc["version"] = int(version)
    return doc


class DBDocumentStore:
    def __init__(self, dsn: Optional[str] = None) -> None:
        """Initialize a Postgres-backed store with limited-role safety.

        Behavior:
            - Rejects the `postgres` superuser DSN unless
              ALLOW_SERVICE_DSN_FOR_TESTING=true is set (dev/testing only).
            - Does not open a connection eagerly; connections are per-call.
        """
        self._dsn = dsn or _dsn()
        user = self._dsn_username(self._dsn)
        allow_override = str(os.getenv("ALLOW_SERVICE_DSN_FOR_TESTING", "")).lower() == "true"
        if user == "postgres" and not allow_override:
            raise RuntimeError(
                "DBDocumentStore refuses the superuser DSN. Set CURRICULUM_DATABASE_URL to an "
                "application login role or export ALLOW_SERVICE_DSN_FOR_TESTING=true in dev."
            )

    @staticmethod
    def _dsn_username(dsn: str) -> str:
        try:
            p = urlparse(dsn)
            if p.username:
                return p.username
        except ValueError:
            pass
        m = re.match(r"^[a-z]+:\/\/(?P<u>[^:]+):?[^@]*@", dsn or "")
        return m.group("u") if m else ""

    @contextmanager
    def _connect(self) -> Iterator["psycopg.Connection"]:
        try:
            with psycopg.connect(self._dsn) as conn:
                yield conn
        except psycopg.OperationalError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(_SCHEMA_SQL)
                conn.commit()

    # --- Reads --------------------------------------------------------------------
    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"select version, data from {TABLE} where collection = %s and id = %s",
                    (collection, doc_id),
                )
                row = cur.fetchone()
        return _row_to_doc(row) if row else None

    def find(
        self,
        collection: str,
        filter: Optional[Filter] = None,
        *,
        sort: Optional[Sort] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[dict]:
        predicate, params = _where(filter)
        sql = f"select version, data from {TABLE} where collection = %s and {predicate}{_order_by(sort)}"
        args: List[Any] = [collection, *params]
        if limit is not None:
            sql += " limit %s"
            args.append(int(limit))
        if skip:
            sql += " offset %s"
            args.append(int(skip))
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, args)
                rows = cur.fetchall() or []
        return [_row_to_doc(r) for r in rows]

    def count(self, collection: str, filter: Optional[Filter] = None) -> int:
        predicate, params = _where(filter)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"select count(*) from {TABLE} where collection = %s and {predicate}",
                    [collection, *params],
                )
                row = cur.fetchone()
        return int(row[0]) if row else 0

    # --- Writes -------------------------------------------------------------------
    def insert(self, collection: str, doc: Mapping[str, Any], *, unique_on: Sequence[str] = ()) -> dict:
        """Insert a document; `unique_on` fields are checked under an advisory lock.

        Concurrency:
            Concurrent inserts with the same unique key serialize on a
            transaction-scoped advisory lock, so the existence check and the
            insert cannot interleave.
        """
        data = {k: v for k, v in doc.items() if k != "version"}
        with self._connect() as conn:
            with conn.cursor() as cur:
                if unique_on:
                    key_filter = {f: doc.get(f) for f in unique_on}
                    lock_key = collection + ":" + "|".join(str(doc.get(f)) for f in unique_on)
                    cur.execute("select pg_advisory_xact_lock(hashtext(%s))", (lock_key,))
                    predicate, params = _where(key_filter)
                    cur.execute(
                        f"select 1 from {TABLE} where collection = %s and {predicate} limit 1",
                        [collection, *params],
                    )
                    if cur.fetchone():
                        conn.rollback()
                        raise DuplicateKey(f"{collection}:{','.join(unique_on)}")
                try:
                    cur.execute(
                        f"""
                        insert into {TABLE} (collection, id, version, data)
                        values (%s, %s, 1, %s)
                        returning version, data
                        """,
                        (collection, doc["id"], Jsonb(data)),
                    )
                except psycopg.errors.UniqueViolation as exc:
                    conn.rollback()
                    raise DuplicateKey(f"{collection}:{doc['id']}") from exc
                row = cur.fetchone()
                conn.commit()
        return _row_to_doc(row)

    def update(
        self,
        collection: str,
        doc_id: str,
        changes: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> Optional[dict]:
        patch = {k: v for k, v in changes.items() if k not in ("id", "version")}
        with self._connect() as conn:
            with conn.cursor() as cur:
                row = self._update_one(cur, collection, doc_id, patch, expected_version)
                if row is None:
                    if expected_version is not None:
                        cur.execute(
                            f"select 1 from {TABLE} where collection = %s and id = %s",
                            (collection, doc_id),
                        )
                        if cur.fetchone():
                            conn.rollback()
                            raise VersionConflict(f"{collection}:{doc_id}")
                    return None
                conn.commit()
        return _row_to_doc(row)

    @staticmethod
    def _update_one(cur, collection: str, doc_id: str, patch: Mapping[str, Any], expected_version: Optional[int]):
        sql = f"""
            update {TABLE}
            set data = data || %s, version = version + 1
            where collection = %s and id = %s
        """
        params: List[Any] = [Jsonb(dict(patch)), collection, doc_id]
        if expected_version is not None:
            sql += " and version = %s"
            params.append(int(expected_version))
        cur.execute(sql + " returning version, data", params)
        return cur.fetchone()

    def apply_batch(self, collection: str, updates: Sequence[Tuple[str, Mapping[str, Any]]]) -> int:
        """Apply all updates in one transaction; a vanished document aborts the batch."""
        if not updates:
            return 0
        ids = [doc_id for doc_id, _ in updates]
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"select id from {TABLE} where collection = %s and id = any(%s) for update",
                    (collection, ids),
                )
                locked = {r[0] for r in (cur.fetchall() or [])}
                missing = [i for i in ids if i not in locked]
                if missing:
                    conn.rollback()
                    raise VersionConflict(f"{collection}: missing {missing}")
                for doc_id, changes in updates:
                    patch: Dict[str, Any] = {k: v for k, v in changes.items() if k not in ("id", "version")}
                    self._update_one(cur, collection, doc_id, patch, None)
                conn.commit()
        return len(updates)

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"delete from {TABLE} where collection = %s and id = %s returning id",
                    (collection, doc_id),
                )
                row = cur.fetchone()
                conn.commit()
        return row is not None

    def delete_many(self, collection: str, filter: Filter) -> int:
        predicate, params = _where(filter)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"delete from {TABLE} where collection = %s and {predicate}",
                    [collection, *params],
                )
                deleted = cur.rowcount or 0
                conn.commit()
        return int(deleted)

    # --- Sibling scopes -----------------------------------------------------------
    @staticmethod
    def _lock_scope(cur, collection: str, parent_field: str, parent_id: str) -> None:
        cur.execute("select pg_advisory_xact_lock(hashtext(%s))", (_scope_key(collection, parent_field, parent_id),))

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
        """Insert `doc` at the end of its parent's sibling list in one transaction.

        Concurrency:
            Appends, reranks and guarded parent deletes of the same scope
            serialize on one transaction-scoped advisory lock. The parent row
            is held `for share` so it cannot disappear before the child lands.
        """
        index_col = _field(index_field)
        _field(parent_field)
        data = {k: v for k, v in doc.items() if k != "version"}
        with self._connect() as conn:
            with conn.cursor() as cur:
                self._lock_scope(cur, collection, parent_field, parent_id)
                if parent_collection is not None:
                    cur.execute(
                        f"select 1 from {TABLE} where collection = %s and id = %s for share",
                        (parent_collection, parent_id),
                    )
                    if not cur.fetchone():
                        conn.rollback()
                        raise ParentMissing(f"{parent_collection}:{parent_id}")
                cur.execute(
                    f"""
                    select coalesce(max((data->>'{index_col}')::int), -1) + 1
                    from {TABLE}
                    where collection = %s and data->>'{parent_field}' = %s
                    """,
                    (collection, parent_id),
                )
                data[parent_field] = parent_id
                data[index_field] = int(cur.fetchone()[0])
                try:
                    cur.execute(
                        f"""
                        insert into {TABLE} (collection, id, version, data)
                        values (%s, %s, 1, %s)
                        returning version, data
                        """,
                        (collection, doc["id"], Jsonb(data)),
                    )
                except psycopg.errors.UniqueViolation as exc:
                    conn.rollback()
                    raise DuplicateKey(f"{collection}:{doc['id']}") from exc
                row = cur.fetchone()
                conn.commit()
        return _row_to_doc(row)

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
        index_col = _field(index_field)
        _field(parent_field)
        with self._connect() as conn:
            with conn.cursor() as cur:
                self._lock_scope(cur, collection, parent_field, parent_id)
                cur.execute(
                    f"""
                    select id, (data->>'{index_col}')::int
                    from {TABLE}
                    where collection = %s and data->>'{parent_field}' = %s
                    order by (data->>'{index_col}')::int asc nulls last, id asc
                    for update
                    """,
                    (collection, parent_id),
                )
                rows = cur.fetchall() or []
                moved = 0
                for rank, (doc_id, current) in enumerate(rows):
                    if current == rank:
                        continue
                    patch: Dict[str, Any] = {k: v for k, v in (changes or {}).items() if k not in ("id", "version")}
                    patch[index_field] = rank
                    self._update_one(cur, collection, doc_id, patch, None)
                    moved += 1
                conn.commit()
        return moved

    def delete_unreferenced(self, collection: str, doc_id: str, child_collection: str, child_field: str) -> bool:
        """Delete `doc_id` only while no `child_collection` row points at it.

        Takes the same scope lock as `append` on the children, so a child
        insert either lands before the count (and the delete is refused) or
        finds the parent gone.
        """
        child_col = _field(child_field)
        with self._connect() as conn:
            with conn.cursor() as cur:
                self._lock_scope(cur, child_collection, child_field, doc_id)
                cur.execute(
                    f"select 1 from {TABLE} where collection = %s and id = %s for update",
                    (collection, doc_id),
                )
                if not cur.fetchone():
                    conn.rollback()
                    return False
                cur.execute(
                    f"select count(*) from {TABLE} where collection = %s and data->>'{child_col}' = %s",
                    (child_collection, doc_id),
                )
                children = int(cur.fetchone()[0])
                if children:
                    conn.rollback()
                    raise ReferenceExists(children)
                cur.execute(
                    f"delete from {TABLE} where collection = %s and id = %s",
                    (collection, doc_id),
                )
                conn.commit()
        return True


__all__ = ["DBDocumentStore", "TABLE"]
