"""StorageCoordinator: one write path over PrimaryStore + IndexStore.

Consistency contract:
    - PrimaryStore is authoritative. Its failures abort the operation.
    - IndexStore is a best-effort mirror. A failed mirror write is logged,
      the id is remembered in ``diverged``, and the operation still
      succeeds. sync_storages() is the repair operation; it reconciles
      every primary record into the index and clears ``diverged``.
    - Parent/children links are maintained after the record write and are
      eventually consistent: a missing parent is logged, not fatal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ctxstore.errors import CtxStoreError, NotFoundError
from ctxstore.models import ContextRecord, ListQuery

if TYPE_CHECKING:
    from ctxstore.index_store import IndexStore
    from ctxstore.primary import PrimaryStore

logger = logging.getLogger("ctxstore.coordinator")


@dataclass
class SyncReport:
    created: int = 0
    updated: int = 0
    removed: int = 0
    unchanged: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def synced(self) -> int:
        return self.created + self.updated

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "removed": self.removed,
            "unchanged": self.unchanged,
            "synced": self.synced,
            "errors": list(self.errors),
        }


class StorageCoordinator:
    def __init__(self, primary: PrimaryStore, index: IndexStore) -> None:
        self.primary = primary
        self.index = index
        self.index_available = False
        self.diverged: set[str] = set()

    def initialize(self, *, sync: bool = True) -> SyncReport | None:
        self.primary.initialize()
        try:
            self.index.initialize()
            self.index_available = True
        except CtxStoreError as exc:
            logger.warning("index unavailable, running primary-only: %s", exc)
            self.index_available = False
            return None
        return self.sync_storages() if sync else None

    # ------------------------------------------------------------------
    # Index mirroring
    # ------------------------------------------------------------------

    def _mirror(self, op: str, record_id: str, fn: Any, *args: Any) -> None:
        if not self.index_available:
            self.diverged.add(record_id)
            return
        try:
            fn(*args)
        except CtxStoreError as exc:
            self.diverged.add(record_id)
            logger.warning("index %s failed for %s (repair with sync): %s", op, record_id, exc)

    def _mirror_upsert(self, record: ContextRecord) -> None:
        self._mirror("upsert", record.id, self.index.upsert, record)

    # ------------------------------------------------------------------
    # Parent links
    # ------------------------------------------------------------------

    def _relink(self, child_id: str, old_parent: str | None, new_parent: str | None) -> None:
        if old_parent == new_parent:
            return
        if old_parent:
            self._edit_children(old_parent, child_id, add=False)
        if new_parent:
            self._edit_children(new_parent, child_id, add=True)

    def _edit_children(self, parent_id: str, child_id: str, *, add: bool) -> None:
        parent = self.primary.read(parent_id)
        if parent is None:
            logger.warning("parent %s of %s not found; link left unresolved", parent_id, child_id)
            return
        children = set(parent.relationships.children)
        if (child_id in children) == add:
            return
        if add:
            children.add(child_id)
        else:
            children.discard(child_id)
        updated = self.primary.update(parent_id, {"relationships": {"children": sorted(children)}})
        self._mirror_upsert(updated)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, record: ContextRecord) -> ContextRecord:
        created = self.primary.create(record)
        self._mirror("create", created.id, self.index.upsert, created)
        self._relink(created.id, None, created.relationships.parent)
        return self.primary.read(created.id) or created

    def read(self, record_id: str) -> ContextRecord:
        record = self.primary.read(record_id)
        if record is None:
            raise NotFoundError(record_id)
        if self.index_available:
            try:
                if self.index.read(record_id) is None:
                    self.index.create(record)
                    logger.info("index backfilled: %s", record_id)
            except CtxStoreError as exc:
                self.diverged.add(record_id)
                logger.warning("index backfill failed for %s: %s", record_id, exc)
        return record

    def update(self, record_id: str, patch: dict[str, Any]) -> ContextRecord:
        before = self.primary.read(record_id)
        if before is None:
            raise NotFoundError(record_id)
        updated = self.primary.update(record_id, patch)
        self._mirror_upsert(updated)
        self._relink(record_id, before.relationships.parent, updated.relationships.parent)
        return updated

    def delete(self, record_id: str) -> bool:
        existing = self.primary.read(record_id)
        removed = self.primary.delete(record_id)
        self._mirror("delete", record_id, self.index.delete, record_id)
        if existing is not None and existing.relationships.parent:
            self._edit_children(existing.relationships.parent, record_id, add=False)
        return removed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _hydrate(self, records: list[ContextRecord]) -> list[ContextRecord]:
        return [self.primary.read(r.id) or r for r in records]

    def list(self, query: ListQuery | None = None) -> list[ContextRecord]:
        query = query or ListQuery()
        if self.index_available:
            try:
                records = self.index.list(query)
                return self._hydrate(records) if query.include_content else records
            except CtxStoreError as exc:
                logger.warning("index list failed, using primary store: %s", exc)
        return self.primary.list(query)

    def search(self, text: str, *, limit: int = 50, offset: int = 0, include_content: bool = False) -> list[ContextRecord]:
        if self.index_available:
            try:
                records = self.index.search(text, limit=limit, offset=offset)
                return self._hydrate(records) if include_content else records
            except CtxStoreError as exc:
                logger.warning("index search failed, using primary store: %s", exc)
        return self.primary.search(text, limit=limit, offset=offset)

    def get_by_hierarchy(
        self, hierarchy: list[str], *, include_children: bool = False, include_content: bool = False,
    ) -> list[ContextRecord]:
        if self.index_available:
            try:
                records = self.index.get_by_hierarchy(hierarchy, include_children=include_children)
                return self._hydrate(records) if include_content else records
            except CtxStoreError as exc:
                logger.warning("index hierarchy lookup failed, using primary store: %s", exc)
        return self.primary.get_by_hierarchy(hierarchy, include_children=include_children)

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    def sync_storages(self) -> SyncReport:
        """Bring the index in line with the primary store.

        Creates missing rows, rewrites rows whose primary ``updated`` is
        newer, and drops rows for records the primary store no longer has.
        """
        report = SyncReport()
        try:
            indexed = self.index.updated_map()
        except CtxStoreError as exc:
            report.errors.append(f"index unavailable: {exc}")
            logger.warning("sync skipped, index unavailable: %s", exc)
            return report
        self.index_available = True

        seen: set[str] = set()
        for _path, record in self.primary.iter_records():
            seen.add(record.id)
            try:
                if record.id not in indexed:
                    self.index.create(record)
                    report.created += 1
                elif record.updated > indexed[record.id] or record.id in self.diverged:
                    self.index.update(record)
                    report.updated += 1
                else:
                    report.unchanged += 1
                self.diverged.discard(record.id)
            except CtxStoreError as exc:
                report.errors.append(f"{record.id}: {exc}")
        for stale_id in set(indexed) - seen:
            try:
                self.index.delete(stale_id)
                report.removed += 1
                self.diverged.discard(stale_id)
            except CtxStoreError as exc:
                report.errors.append(f"{stale_id}: {exc}")
        logger.info(
            "sync: created=%d updated=%d removed=%d errors=%d",
            report.created, report.updated, report.removed, len(report.errors),
        )
        return report

    def rebuild_index(self) -> SyncReport:
        """Drop and recreate the index schema, then resync from primary."""
        self.index.rebuild_schema()
        self.diverged.clear()
        self.primary.rebuild_path_index()
        return self.sync_storages()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def health_check(self) -> dict[str, Any]:
        primary = self.primary.health_check()
        index = self.index.health_check()
        if not primary.get("healthy"):
            overall = "unhealthy"
        elif not index.get("healthy") or self.diverged:
            overall = "degraded"
        else:
            overall = "healthy"
        return {"overall": overall, "primary": primary, "index": index}

    def stats(self) -> dict[str, Any]:
        primary_count = self.primary.count()
        try:
            index_count: int | None = self.index.count()
        except CtxStoreError:
            index_count = None
        return {
            "primary_records": primary_count,
            "index_records": index_count,
            "index_available": self.index_available,
            "diverged": len(self.diverged),
            "in_sync": index_count == primary_count and not self.diverged,
        }

    def analytics(self, since: str | None = None) -> dict[str, Any]:
        return self.index.analytics(since)
