"""PrimaryStore: the authoritative content tree.

Layout under base_dir:

    contexts/<hierarchy path>/<type>/<id>.json   full record, one file each
    indexes/contexts.json                        path index: id -> summary + path

The path index is a cache of the tree. When it is missing or unreadable the
store answers from a raw tree walk and rewrites it, so every lookup resolves
"indexed or not" once, in _catalog(), rather than per operation.
"""

from __future__ import annotations

import contextlib
import json
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ctxstore.errors import ConflictError, NotFoundError, StorageError
from ctxstore.locks import LockRegistry
from ctxstore.models import (
    ContextRecord,
    ListQuery,
    by_relevance,
    metadata_matches,
    now_iso,
    paginate,
    path_has_prefix,
    sort_records,
)
from ctxstore.schema import apply_patch, is_valid_id

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger("ctxstore.primary")

_PATH_INDEX_LOCK = "__path_index__"


@dataclass
class Catalog:
    """Summaries of every record, and whether they came from the path index."""

    entries: dict[str, dict[str, Any]]
    indexed: bool

    def records(self) -> list[ContextRecord]:
        return [ContextRecord.from_dict(s) for s in self.entries.values()]


class PrimaryStore:
    """File-per-record JSON store."""

    def __init__(self, base_dir: Path | str, locks: LockRegistry | None = None) -> None:
        self.base_dir = Path(base_dir)
        self.contexts_dir = self.base_dir / "contexts"
        self.index_path = self.base_dir / "indexes" / "contexts.json"
        self.locks = locks or LockRegistry(self.base_dir / "locks")

    def initialize(self) -> None:
        self.contexts_dir.mkdir(parents=True, exist_ok=True)
        self.index_path.parent.mkdir(parents=True, exist_ok=True)
        if self._read_path_index() is None:
            count = self.rebuild_path_index()
            logger.info("path index rebuilt: %d records", count)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def record_path(self, record: ContextRecord) -> Path:
        return self.contexts_dir.joinpath(*record.hierarchy, record.type, f"{record.id}.json")

    def _rel(self, path: Path) -> str:
        return path.relative_to(self.contexts_dir).as_posix()

    def _prune_empty_dirs(self, start: Path) -> None:
        d = start
        while d != self.contexts_dir and self.contexts_dir in d.parents:
            try:
                d.rmdir()
            except OSError:
                break
            d = d.parent

    # ------------------------------------------------------------------
    # File I/O
    # ------------------------------------------------------------------

    def _load(self, path: Path) -> ContextRecord:
        try:
            with path.open() as f:
                return ContextRecord.from_dict(json.load(f))
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            msg = f"Failed to read context file {path}: {exc}"
            raise StorageError(msg) from exc

    def _write(self, path: Path, record: ContextRecord) -> None:
        """Write the record atomically (tmp file then rename)."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".json.tmp")
            with tmp.open("w") as f:
                json.dump(record.to_dict(), f, indent=2)
            tmp.replace(path)
        except OSError as exc:
            msg = f"Failed to write context file {path}: {exc}"
            raise StorageError(msg) from exc

    def iter_records(self) -> Iterator[tuple[Path, ContextRecord]]:
        """Raw tree walk. Unreadable files are logged and skipped."""
        if not self.contexts_dir.exists():
            return
        for path in sorted(self.contexts_dir.rglob("*.json")):
            try:
                yield path, self._load(path)
            except StorageError:
                logger.warning("skipping unreadable context file: %s", path)

    # ------------------------------------------------------------------
    # Path index
    # ------------------------------------------------------------------

    def _read_path_index(self) -> dict[str, dict[str, Any]] | None:
        """Return the id -> summary map, or None if missing or corrupt."""
        if not self.index_path.exists():
            return None
        try:
            data = json.loads(self.index_path.read_text())
        except (OSError, json.JSONDecodeError):
            logger.warning("path index unreadable: %s", self.index_path)
            return None
        contexts = data.get("contexts") if isinstance(data, dict) else None
        if not isinstance(contexts, dict):
            logger.warning("path index malformed: %s", self.index_path)
            return None
        return contexts

    def _write_path_index(self, entries: dict[str, dict[str, Any]]) -> None:
        self.index_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.index_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps({"updated": now_iso(), "contexts": entries}, indent=2))
        tmp.replace(self.index_path)

    def _entry(self, path: Path, record: ContextRecord) -> dict[str, Any]:
        return {**record.summary(), "path": self._rel(path)}

    def _index_put(self, path: Path, record: ContextRecord) -> None:
        with self.locks.hold(_PATH_INDEX_LOCK):
            entries = self._read_path_index() or self._scan_entries()
            entries[record.id] = self._entry(path, record)
            self._write_path_index(entries)

    def _index_remove(self, record_id: str) -> None:
        with self.locks.hold(_PATH_INDEX_LOCK):
            entries = self._read_path_index()
            if entries is None:
                self._write_path_index(self._scan_entries())
            elif entries.pop(record_id, None) is not None:
                self._write_path_index(entries)

    def _scan_entries(self) -> dict[str, dict[str, Any]]:
        return {rec.id: self._entry(path, rec) for path, rec in self.iter_records()}

    def rebuild_path_index(self) -> int:
        with self.locks.hold(_PATH_INDEX_LOCK):
            entries = self._scan_entries()
            self._write_path_index(entries)
        return len(entries)

    def _catalog(self) -> Catalog:
        entries = self._read_path_index()
        if entries is not None:
            return Catalog(entries, indexed=True)
        logger.warning("path index unavailable, falling back to tree walk")
        entries = self._scan_entries()
        with contextlib.suppress(OSError, StorageError):
            with self.locks.hold(_PATH_INDEX_LOCK):
                self._write_path_index(entries)
        return Catalog(entries, indexed=False)

    def _locate(self, record_id: str) -> Path | None:
        """Find a record file: path index first, then a full recursive scan.

        Ids that could never have been stored resolve to nothing; the id is
        compared against file stems, never used as a glob pattern.
        """
        if not is_valid_id(record_id):
            return None
        entries = self._read_path_index() or {}
        entry = entries.get(record_id)
        if entry is not None:
            path = self.contexts_dir / entry["path"]
            if path.stem == record_id and path.exists():
                return path
        if not self.contexts_dir.exists():
            return None
        for path in sorted(self.contexts_dir.rglob("*.json")):
            if path.stem == record_id:
                return path
        return None

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, record: ContextRecord) -> ContextRecord:
        """Persist a new record. Raises ConflictError if the id or path is taken."""
        path = self.record_path(record)
        with self.locks.hold(record.id):
            if path.exists():
                msg = f"Context already exists at {self._rel(path)}"
                raise ConflictError(msg)
            entries = self._read_path_index() or {}
            if record.id in entries and (self.contexts_dir / entries[record.id]["path"]).exists():
                msg = f"Context id already in use: {record.id}"
                raise ConflictError(msg)
            self._write(path, record)
            self._index_put(path, record)
        return record

    def read(self, record_id: str) -> ContextRecord | None:
        path = self._locate(record_id)
        if path is None:
            return None
        record = self._load(path)
        if record.id != record_id:
            logger.warning("context file %s holds id %s, not %s", path, record.id, record_id)
            return None
        entries = self._read_path_index()
        if entries is None or entries.get(record_id, {}).get("path") != self._rel(path):
            self._index_put(path, record)
        return record

    def update(self, record_id: str, patch: dict[str, Any]) -> ContextRecord:
        """Merge patch into the stored record; moves the file if its path changes."""
        if not is_valid_id(record_id):
            raise NotFoundError(record_id)
        with self.locks.hold(record_id):
            old_path = self._locate(record_id)
            if old_path is None:
                raise NotFoundError(record_id)
            updated = apply_patch(self._load(old_path), patch)
            new_path = self.record_path(updated)
            if new_path != old_path:
                if new_path.exists():
                    msg = f"Context already exists at {self._rel(new_path)}"
                    raise ConflictError(msg)
                self._write(new_path, updated)
                old_path.unlink(missing_ok=True)
                self._prune_empty_dirs(old_path.parent)
            else:
                self._write(old_path, updated)
            self._index_put(new_path, updated)
        return updated

    def delete(self, record_id: str) -> bool:
        """Remove the record. A missing file counts as already deleted."""
        if not is_valid_id(record_id):
            return False
        with self.locks.hold(record_id, discard=True):
            path = self._locate(record_id)
            if path is not None:
                try:
                    path.unlink(missing_ok=True)
                except OSError as exc:
                    msg = f"Failed to delete context file {path}: {exc}"
                    raise StorageError(msg) from exc
                self._prune_empty_dirs(path.parent)
            self._index_remove(record_id)
        return path is not None

    def exists(self, record_id: str) -> bool:
        return self._locate(record_id) is not None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(self, query: ListQuery | None = None) -> list[ContextRecord]:
        query = query or ListQuery()
        matched = [r for r in self._catalog().records() if query.matches(r)]
        page = paginate(sort_records(matched, query), query)
        if query.include_content:
            return [self.read(r.id) or r for r in page]
        return page

    def search(self, text: str, *, limit: int = 50, offset: int = 0) -> list[ContextRecord]:
        """Match indexed fields first; fall back to scanning content."""
        hits: list[ContextRecord] = []
        for summary in self._catalog().records():
            if metadata_matches(summary, text):
                hits.append(self.read(summary.id) or summary)
                continue
            full = self.read(summary.id)
            if full is not None and text.lower() in full.content.lower():
                hits.append(full)
        ranked = by_relevance(hits)
        return ranked[offset:offset + limit]

    def get_by_hierarchy(self, hierarchy: list[str], *, include_children: bool = False) -> list[ContextRecord]:
        target = "/".join(hierarchy)
        out: list[ContextRecord] = []
        for summary in self._catalog().records():
            path = summary.hierarchy_path
            if path == target or (include_children and path_has_prefix(path, target)):
                full = self.read(summary.id)
                if full is not None:
                    out.append(full)
        return sorted(out, key=lambda r: (r.hierarchy_path, r.type, r.id))

    def count(self) -> int:
        return len(self._catalog().entries)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health_check(self) -> dict[str, Any]:
        """Write/read/delete round-trip outside the content tree."""
        probe = self.base_dir / ".health" / f"probe-{uuid.uuid4().hex[:8]}.json"
        payload = {"probe": True, "timestamp": now_iso()}
        try:
            probe.parent.mkdir(parents=True, exist_ok=True)
            probe.write_text(json.dumps(payload))
            ok = json.loads(probe.read_text()) == payload
            probe.unlink()
        except (OSError, json.JSONDecodeError) as exc:
            return {"healthy": False, "error": str(exc)}
        return {"healthy": ok, "records": self.count(), "indexed": self._read_path_index() is not None}
