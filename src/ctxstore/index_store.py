"""IndexStore: relational mirror of record metadata (never content).

Tables:
    contexts              one row per record (scalar fields + content_size)
    hierarchy_levels      (context_id, level, name)
    context_tags          (context_id, tag)
    context_dependencies  (context_id, dependency_id)
    context_references    (context_id, reference_id)
    access_log            every create/read/update/delete/list/search with duration

Each logical write is a single transaction. The set-valued tables are
rewritten delete-then-insert on update. Children are not stored; they are
reconstructed from contexts.parent_id.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from typing import TYPE_CHECKING, Any

from ctxstore.db import connect
from ctxstore.errors import ConflictError, NotFoundError, StorageError
from ctxstore.models import ContextRecord, ListQuery, Metadata, Relationships, now_iso
from ctxstore.schema import parse_hierarchy_path

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

logger = logging.getLogger("ctxstore.index")

_COLUMNS = (
    "c.id, c.type, c.hierarchy_path, c.importance, c.created, c.updated, "
    "c.agent_id, c.retention_policy, c.parent_id"
)


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS contexts (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL,
            hierarchy_path TEXT NOT NULL,
            importance INTEGER NOT NULL DEFAULT 50,
            created TEXT NOT NULL,
            updated TEXT NOT NULL,
            content_size INTEGER DEFAULT 0,
            agent_id TEXT,
            retention_policy TEXT DEFAULT 'default',
            parent_id TEXT      -- no FK: parents may be indexed after their children
        );

        CREATE TABLE IF NOT EXISTS hierarchy_levels (
            context_id TEXT NOT NULL REFERENCES contexts(id) ON DELETE CASCADE,
            level INTEGER NOT NULL,
            name TEXT NOT NULL,
            PRIMARY KEY (context_id, level)
        );

        CREATE TABLE IF NOT EXISTS context_tags (
            context_id TEXT NOT NULL REFERENCES contexts(id) ON DELETE CASCADE,
            tag TEXT NOT NULL,
            PRIMARY KEY (context_id, tag)
        );

        CREATE TABLE IF NOT EXISTS context_dependencies (
            context_id TEXT NOT NULL REFERENCES contexts(id) ON DELETE CASCADE,
            dependency_id TEXT NOT NULL,
            PRIMARY KEY (context_id, dependency_id)
        );

        CREATE TABLE IF NOT EXISTS context_references (
            context_id TEXT NOT NULL REFERENCES contexts(id) ON DELETE CASCADE,
            reference_id TEXT NOT NULL,
            PRIMARY KEY (context_id, reference_id)
        );

        -- Outlives the records it mentions, so no FK
        CREATE TABLE IF NOT EXISTS access_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            context_id TEXT,
            operation TEXT NOT NULL,
            agent_id TEXT,
            timestamp TEXT NOT NULL,
            duration_ms REAL
        );

        CREATE INDEX IF NOT EXISTS idx_contexts_type ON contexts(type);
        CREATE INDEX IF NOT EXISTS idx_contexts_hierarchy ON contexts(hierarchy_path);
        CREATE INDEX IF NOT EXISTS idx_contexts_importance ON contexts(importance);
        CREATE INDEX IF NOT EXISTS idx_contexts_updated ON contexts(updated);
        CREATE INDEX IF NOT EXISTS idx_contexts_agent ON contexts(agent_id);
        CREATE INDEX IF NOT EXISTS idx_contexts_parent ON contexts(parent_id);
        CREATE INDEX IF NOT EXISTS idx_levels_name ON hierarchy_levels(level, name);
        CREATE INDEX IF NOT EXISTS idx_tags_tag ON context_tags(tag);
        CREATE INDEX IF NOT EXISTS idx_access_context ON access_log(context_id);
        CREATE INDEX IF NOT EXISTS idx_access_timestamp ON access_log(timestamp);
    """)


def _drop_schema(conn: sqlite3.Connection) -> None:
    conn.executescript("""
        DROP TABLE IF EXISTS hierarchy_levels;
        DROP TABLE IF EXISTS context_tags;
        DROP TABLE IF EXISTS context_dependencies;
        DROP TABLE IF EXISTS context_references;
        DROP TABLE IF EXISTS access_log;
        DROP TABLE IF EXISTS contexts;
    """)


def _like_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class IndexStore:
    """SQLite-backed secondary index. All failures surface as recoverable StorageError."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    @contextlib.contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = connect(self.db_path)
        except sqlite3.Error as exc:
            msg = f"Cannot open index database {self.db_path}: {exc}"
            raise StorageError(msg, backend="index", recoverable=True) from exc
        try:
            yield conn
        except sqlite3.IntegrityError as exc:
            msg = f"Index conflict: {exc}"
            raise ConflictError(msg) from exc
        except sqlite3.Error as exc:
            msg = f"Index operation failed: {exc}"
            raise StorageError(msg, backend="index", recoverable=True) from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        with self._conn() as conn:
            _ensure_schema(conn)

    def rebuild_schema(self) -> None:
        """Drop every table (access log included) and recreate them empty."""
        with self._conn() as conn:
            _drop_schema(conn)
            _ensure_schema(conn)

    # ------------------------------------------------------------------
    # Access log
    # ------------------------------------------------------------------

    def _log_access(
        self, conn: sqlite3.Connection, operation: str, context_id: str | None,
        agent_id: str | None, started: float,
    ) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        try:
            with conn:
                conn.execute(
                    "INSERT INTO access_log (context_id, operation, agent_id, timestamp, duration_ms)"
                    " VALUES (?, ?, ?, ?, ?)",
                    (context_id, operation, agent_id, now_iso(), duration_ms),
                )
        except sqlite3.Error as exc:
            logger.warning("access log write failed (%s %s): %s", operation, context_id, exc)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _insert_sets(self, conn: sqlite3.Connection, record: ContextRecord) -> None:
        rid = record.id
        conn.executemany(
            "INSERT INTO hierarchy_levels (context_id, level, name) VALUES (?, ?, ?)",
            [(rid, i, name) for i, name in enumerate(record.hierarchy)],
        )
        conn.executemany(
            "INSERT INTO context_tags (context_id, tag) VALUES (?, ?)",
            [(rid, t) for t in sorted(record.metadata.tags)],
        )
        conn.executemany(
            "INSERT INTO context_dependencies (context_id, dependency_id) VALUES (?, ?)",
            [(rid, d) for d in sorted(record.metadata.dependencies)],
        )
        conn.executemany(
            "INSERT INTO context_references (context_id, reference_id) VALUES (?, ?)",
            [(rid, r) for r in sorted(record.relationships.references)],
        )

    @staticmethod
    def _row_values(record: ContextRecord) -> tuple[Any, ...]:
        return (
            record.type, record.hierarchy_path, record.importance, record.created,
            record.updated, len(record.content), record.metadata.agent_id,
            record.metadata.retention_policy, record.relationships.parent,
        )

    def create(self, record: ContextRecord) -> None:
        started = time.perf_counter()
        with self._conn() as conn:
            with conn:
                conn.execute(
                    "INSERT INTO contexts (type, hierarchy_path, importance, created, updated,"
                    " content_size, agent_id, retention_policy, parent_id, id)"
                    " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (*self._row_values(record), record.id),
                )
                self._insert_sets(conn, record)
            self._log_access(conn, "create", record.id, record.metadata.agent_id, started)

    def update(self, record: ContextRecord) -> None:
        """Replace the indexed row for record.id. Raises NotFoundError if absent."""
        started = time.perf_counter()
        with self._conn() as conn:
            with conn:
                cur = conn.execute(
                    "UPDATE contexts SET type = ?, hierarchy_path = ?, importance = ?, created = ?,"
                    " updated = ?, content_size = ?, agent_id = ?, retention_policy = ?, parent_id = ?"
                    " WHERE id = ?",
                    (*self._row_values(record), record.id),
                )
                if cur.rowcount == 0:
                    raise NotFoundError(record.id)
                for table in ("hierarchy_levels", "context_tags", "context_dependencies", "context_references"):
                    conn.execute(f"DELETE FROM {table} WHERE context_id = ?", (record.id,))  # noqa: S608
                self._insert_sets(conn, record)
            self._log_access(conn, "update", record.id, record.metadata.agent_id, started)

    def upsert(self, record: ContextRecord) -> None:
        try:
            self.update(record)
        except NotFoundError:
            self.create(record)

    def delete(self, record_id: str) -> bool:
        started = time.perf_counter()
        with self._conn() as conn:
            with conn:
                cur = conn.execute("DELETE FROM contexts WHERE id = ?", (record_id,))
            self._log_access(conn, "delete", record_id, None, started)
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _hydrate(self, conn: sqlite3.Connection, row: tuple[Any, ...]) -> ContextRecord:
        rid, rtype, path, importance, created, updated, agent_id, retention, parent_id = row
        tags = {t for (t,) in conn.execute("SELECT tag FROM context_tags WHERE context_id = ?", (rid,))}
        deps = {d for (d,) in conn.execute(
            "SELECT dependency_id FROM context_dependencies WHERE context_id = ?", (rid,))}
        refs = {r for (r,) in conn.execute(
            "SELECT reference_id FROM context_references WHERE context_id = ?", (rid,))}
        children = {c for (c,) in conn.execute("SELECT id FROM contexts WHERE parent_id = ?", (rid,))}
        return ContextRecord(
            id=rid,
            type=rtype,
            hierarchy=parse_hierarchy_path(path),
            importance=importance,
            created=created,
            updated=updated,
            metadata=Metadata(agent_id=agent_id, tags=tags, dependencies=deps,
                              retention_policy=retention or "default"),
            relationships=Relationships(parent=parent_id, children=children, references=refs),
        )

    def read(self, record_id: str) -> ContextRecord | None:
        started = time.perf_counter()
        with self._conn() as conn:
            row = conn.execute(f"SELECT {_COLUMNS} FROM contexts c WHERE c.id = ?", (record_id,)).fetchone()  # noqa: S608
            record = self._hydrate(conn, row) if row else None
            self._log_access(conn, "read", record_id, record.metadata.agent_id if record else None, started)
        return record

    def list(self, query: ListQuery | None = None) -> list[ContextRecord]:
        query = query or ListQuery()
        where: list[str] = []
        params: list[Any] = []
        if query.type:
            where.append("c.type = ?")
            params.append(query.type)
        prefix = query.hierarchy_prefix
        if prefix:
            where.append("(c.hierarchy_path = ? OR c.hierarchy_path LIKE ? ESCAPE '\\')")
            params += [prefix, _like_escape(prefix) + "/%"]
        if query.importance_min is not None:
            where.append("c.importance >= ?")
            params.append(query.importance_min)
        if query.importance_max is not None:
            where.append("c.importance <= ?")
            params.append(query.importance_max)
        if query.agent_id:
            where.append("c.agent_id = ?")
            params.append(query.agent_id)
        tags = sorted(set(query.tags))
        if tags:
            marks = ", ".join("?" for _ in tags)
            where.append(
                f"c.id IN (SELECT context_id FROM context_tags WHERE tag IN ({marks})"
                " GROUP BY context_id HAVING COUNT(DISTINCT tag) = ?)"
            )
            params += [*tags, len(tags)]

        sql = f"SELECT {_COLUMNS} FROM contexts c"  # noqa: S608
        if where:
            sql += " WHERE " + " AND ".join(where)
        direction = "DESC" if query.descending else "ASC"
        sql += f" ORDER BY c.{query.sort_field} {direction}, c.id LIMIT ? OFFSET ?"
        params += [query.limit if query.limit > 0 else -1, query.offset]

        started = time.perf_counter()
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
            records = [self._hydrate(conn, row) for row in rows]
            self._log_access(conn, "list", None, query.agent_id, started)
        return records

    def search(self, text: str, *, limit: int = 50, offset: int = 0) -> list[ContextRecord]:
        """Substring match across type, path, agent, tags and hierarchy segment names."""
        pattern = f"%{_like_escape(text.lower())}%"
        sql = (
            f"SELECT DISTINCT {_COLUMNS} FROM contexts c"  # noqa: S608
            " LEFT JOIN context_tags t ON t.context_id = c.id"
            " LEFT JOIN hierarchy_levels h ON h.context_id = c.id"
            " WHERE LOWER(c.type) LIKE ?1 ESCAPE '\\'"
            " OR LOWER(c.hierarchy_path) LIKE ?1 ESCAPE '\\'"
            " OR LOWER(COALESCE(c.agent_id, '')) LIKE ?1 ESCAPE '\\'"
            " OR LOWER(t.tag) LIKE ?1 ESCAPE '\\'"
            " OR LOWER(h.name) LIKE ?1 ESCAPE '\\'"
            " ORDER BY c.importance DESC, c.updated DESC LIMIT ?2 OFFSET ?3"
        )
        started = time.perf_counter()
        with self._conn() as conn:
            rows = conn.execute(sql, (pattern, limit, offset)).fetchall()
            records = [self._hydrate(conn, row) for row in rows]
            self._log_access(conn, "search", None, None, started)
        return records

    def get_by_hierarchy(self, hierarchy: list[str], *, include_children: bool = False) -> list[ContextRecord]:
        path = "/".join(hierarchy)
        query = ListQuery(limit=0, sort_by="hierarchy_path", sort_order="asc")
        if include_children:
            query.hierarchy = path
            return self.list(query)
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM contexts c WHERE c.hierarchy_path = ? ORDER BY c.type, c.id",  # noqa: S608
                (path,),
            ).fetchall()
            return [self._hydrate(conn, row) for row in rows]

    def updated_map(self) -> dict[str, str]:
        """id -> updated timestamp for every indexed record."""
        with self._conn() as conn:
            return dict(conn.execute("SELECT id, updated FROM contexts").fetchall())

    def count(self) -> int:
        with self._conn() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM contexts").fetchone()[0])

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    def analytics(self, since: str | None = None) -> dict[str, Any]:
        """Counts by type plus per-agent and per-operation access stats."""
        time_filter = " WHERE timestamp >= ?" if since else ""
        params: tuple[Any, ...] = (since,) if since else ()
        with self._conn() as conn:
            by_type = dict(conn.execute(
                "SELECT type, COUNT(*) FROM contexts GROUP BY type ORDER BY type"
            ).fetchall())
            agent_filter = " AND timestamp >= ?" if since else ""
            top_agents = [
                {"agent_id": agent, "count": n}
                for agent, n in conn.execute(
                    "SELECT agent_id, COUNT(*) AS n FROM access_log WHERE agent_id IS NOT NULL"
                    f"{agent_filter} GROUP BY agent_id ORDER BY n DESC, agent_id LIMIT 10",
                    params,
                )
            ]
            op_stats = {
                op: {"count": n, "avg_ms": round(avg or 0.0, 3), "max_ms": round(mx or 0.0, 3)}
                for op, n, avg, mx in conn.execute(
                    "SELECT operation, COUNT(*), AVG(duration_ms), MAX(duration_ms) FROM access_log"
                    f"{time_filter} GROUP BY operation ORDER BY operation",
                    params,
                )
            }
        return {"contexts_by_type": by_type, "top_agents": top_agents, "operation_stats": op_stats}

    def health_check(self) -> dict[str, Any]:
        try:
            with self._conn() as conn:
                conn.execute("SELECT 1").fetchone()
                n = int(conn.execute("SELECT COUNT(*) FROM contexts").fetchone()[0])
        except StorageError as exc:
            return {"healthy": False, "error": str(exc)}
        return {"healthy": True, "records": n}
