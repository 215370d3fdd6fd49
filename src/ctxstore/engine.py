"""ContextEngine: the single entry point used by the CLI and API layers.

An engine owns its stores, cache (with background sweepers) and lock
registry; nothing is module-global. Every public operation returns a
Result envelope instead of raising:

    engine = ContextEngine(load_config())
    with engine:
        res = engine.create({"type": "task", "hierarchy": ["app"], "content": "..."})
        if res.success:
            print(res.data["id"])
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ctxstore.cache import CacheLayer
from ctxstore.coordinator import StorageCoordinator
from ctxstore.errors import CtxStoreError, NotFoundError, ValidationError
from ctxstore.index_store import IndexStore
from ctxstore.legacy import LegacyReader
from ctxstore.locks import LockRegistry
from ctxstore.models import ContextRecord, ListQuery
from ctxstore.pipeline import MigrationPipeline
from ctxstore.primary import PrimaryStore
from ctxstore.schema import prepare_new
from ctxstore.transform import STEPS, TransformOptions, Transformer
from ctxstore.validator import Validator

if TYPE_CHECKING:
    from collections.abc import Callable

    from ctxstore.config import CtxStoreConfig

logger = logging.getLogger("ctxstore.engine")

_MB = 1024 * 1024


@dataclass
class Result:
    """Uniform success/failure envelope."""

    success: bool
    message: str = ""
    errors: list[str] = field(default_factory=list)
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "message": self.message, "errors": list(self.errors), "data": self.data}


def _fail(exc: Exception) -> Result:
    if isinstance(exc, ValidationError):
        return Result(False, str(exc), list(exc.errors))
    return Result(False, str(exc), [str(exc)])


def complexity(file_count: int, total_size: int, conflicts: int) -> dict[str, Any]:
    """Rough migration cost estimate."""
    score = 0
    score += 2 if file_count > 50 else 1 if file_count > 10 else 0
    score += 2 if total_size > 5 * _MB else 1 if total_size > _MB else 0
    score += 1 if conflicts else 0
    level = "low" if score == 0 else "medium" if score <= 2 else "high"
    return {
        "level": level,
        "score": score,
        "estimated_seconds": round(file_count * 0.05 + total_size / _MB * 0.5, 2),
    }


class ContextEngine:
    def __init__(
        self, config: CtxStoreConfig, *,
        memory_probe: Callable[[], float] | None = None,
        transform_options: TransformOptions | None = None,
    ) -> None:
        self.config = config
        self.locks = LockRegistry(config.locks_dir, timeout=config.store.lock_timeout)
        self.primary = PrimaryStore(config.base_dir, self.locks)
        self.index = IndexStore(config.db_path)
        self.coordinator = StorageCoordinator(self.primary, self.index)
        self.cache = CacheLayer.from_config(config.cache, memory_probe=memory_probe)
        self.validator = Validator(
            max_content_difference=config.validation.max_content_difference,
            strict=config.validation.strict,
        )
        mig = config.migration
        self.transform_options = transform_options or TransformOptions(
            compress_content=mig.compress_content,
            max_content_size=mig.max_content_size,
            preserve_timestamps=mig.preserve_timestamps,
            generate_ids=mig.generate_ids,
        )
        self.last_migration: MigrationPipeline | None = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _ready(self) -> None:
        if not self._initialized:
            self.config.ensure_dirs()
            self.coordinator.initialize(sync=self.config.store.sync_on_start)
            self._initialized = True

    def start(self) -> None:
        """Initialize storage (syncing the index if configured) and start cache sweepers."""
        self._ready()
        self.cache.start()
        logger.info("engine started: %s", self.config.base_dir)

    def stop(self) -> None:
        self.cache.stop()
        logger.info("engine stopped")

    def __enter__(self) -> ContextEngine:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    def _guard(self, fn: Callable[[], Result]) -> Result:
        try:
            self._ready()
            return fn()
        except CtxStoreError as exc:
            return _fail(exc)
        except Exception as exc:
            logger.exception("unexpected engine failure")
            return _fail(exc)

    def _invalidate(self, *ids: str | None) -> None:
        for rid in ids:
            if rid:
                self.cache.delete(rid)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, data: dict[str, Any]) -> Result:
        def op() -> Result:
            record = self.coordinator.create(prepare_new(data))
            self.cache.set(record.id, record.to_dict())
            self._invalidate(record.relationships.parent)
            return Result(True, f"Created {record.id}", data=record.to_dict())
        return self._guard(op)

    def read(self, record_id: str) -> Result:
        def op() -> Result:
            cached = self.cache.get(record_id)
            if cached is not None:
                return Result(True, f"Read {record_id} (cached)", data=cached)
            record = self.coordinator.read(record_id)
            self.cache.set(record_id, record.to_dict())
            return Result(True, f"Read {record_id}", data=record.to_dict())
        return self._guard(op)

    def update(self, record_id: str, patch: dict[str, Any]) -> Result:
        def op() -> Result:
            before = self.primary.read(record_id)
            if before is None:
                raise NotFoundError(record_id)
            record = self.coordinator.update(record_id, patch)
            self._invalidate(record_id, before.relationships.parent, record.relationships.parent)
            return Result(True, f"Updated {record_id}", data=record.to_dict())
        return self._guard(op)

    def delete(self, record_id: str) -> Result:
        def op() -> Result:
            before = self.primary.read(record_id)
            removed = self.coordinator.delete(record_id)
            self._invalidate(record_id, before.relationships.parent if before else None)
            msg = f"Deleted {record_id}" if removed else f"{record_id} was already deleted"
            return Result(True, msg, data={"id": record_id, "deleted": removed})
        return self._guard(op)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def _dicts(records: list[ContextRecord]) -> list[dict[str, Any]]:
        return [r.to_dict() for r in records]

    def list(self, query: ListQuery | None = None, **filters: Any) -> Result:
        def op() -> Result:
            q = query or ListQuery(**filters)
            records = self.coordinator.list(q)
            return Result(True, f"{len(records)} contexts", data=self._dicts(records))
        return self._guard(op)

    def search(self, text: str, *, limit: int = 50, offset: int = 0, include_content: bool = False) -> Result:
        def op() -> Result:
            records = self.coordinator.search(text, limit=limit, offset=offset, include_content=include_content)
            return Result(True, f"{len(records)} matches for {text!r}", data=self._dicts(records))
        return self._guard(op)

    def get_by_hierarchy(
        self, hierarchy: list[str], *, include_children: bool = False, include_content: bool = False,
    ) -> Result:
        def op() -> Result:
            records = self.coordinator.get_by_hierarchy(
                hierarchy, include_children=include_children, include_content=include_content)
            return Result(True, f"{len(records)} contexts under {'/'.join(hierarchy)}", data=self._dicts(records))
        return self._guard(op)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sync_storages(self) -> Result:
        def op() -> Result:
            report = self.coordinator.sync_storages()
            return Result(not report.errors, f"Synced {report.synced} contexts", list(report.errors), report.to_dict())
        return self._guard(op)

    def rebuild_index(self) -> Result:
        def op() -> Result:
            report = self.coordinator.rebuild_index()
            self.cache.clear()
            return Result(not report.errors, f"Rebuilt index with {report.synced} contexts",
                          list(report.errors), report.to_dict())
        return self._guard(op)

    def health_check(self) -> Result:
        def op() -> Result:
            health = self.coordinator.health_check()
            health["cache"] = {"running": self.cache.running, "entries": self.cache.size()}
            return Result(health["overall"] != "unhealthy", f"Storage is {health['overall']}", data=health)
        return self._guard(op)

    def stats(self) -> Result:
        def op() -> Result:
            return Result(True, "stats", data={"storage": self.coordinator.stats(), "cache": self.cache.stats()})
        return self._guard(op)

    def analytics(self, since: str | None = None) -> Result:
        return self._guard(lambda: Result(True, "analytics", data=self.coordinator.analytics(since)))

    def cache_metrics(self) -> Result:
        return self._guard(lambda: Result(True, "cache metrics", data=self.cache.get_performance_metrics()))

    def optimize_cache(self) -> Result:
        return self._guard(lambda: Result(True, "cache optimized", data=self.cache.optimize_cache()))

    def force_cleanup(self) -> Result:
        return self._guard(lambda: Result(True, "cache cleanup", data=self.cache.force_cleanup()))

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------

    def legacy_reader(self) -> LegacyReader:
        return LegacyReader(self.config.migration.legacy_root, project=self.config.name, known_steps=STEPS)

    def transformer(self) -> Transformer:
        return Transformer(self.transform_options, batch_pause=self.config.migration.batch_pause)

    def analyze(self) -> Result:
        """Dry run: manifest, manifest validation, complexity and recommendations."""
        def op() -> Result:
            reader = self.legacy_reader()
            manifest = reader.generate_manifest()
            parsed = reader.parse_all()
            check = self.validator.validate_manifest(manifest)
            cx = complexity(len(manifest.files), parsed["structure"]["total_size"], len(manifest.conflicts))
            recommendations = [r["message"] for r in manifest.recommendations]
            if cx["level"] == "high":
                recommendations.append("High complexity: run with backup enabled and review checkpoints")
            data = {
                "manifest": manifest.to_dict(),
                "manifest_validation": check.to_dict(),
                "structure": parsed["structure"],
                "parse_errors": parsed["errors"],
                "complexity": cx,
                "recommendations": recommendations,
            }
            if not parsed["success"]:
                return Result(True, manifest.warnings[0] if manifest.warnings else "No legacy data", data=data)
            return Result(True, f"{len(manifest.files)} legacy files analyzed", list(check.errors), data)
        return self._guard(op)

    def migrate(self, on_progress: Callable[[dict[str, Any]], None] | None = None) -> Result:
        def op() -> Result:
            pipeline = MigrationPipeline(
                self.coordinator, self.legacy_reader(), self.transformer(), self.config.migration,
                on_progress=on_progress,
            )
            self.last_migration = pipeline
            outcome = pipeline.run()
            self.cache.clear()
            data = outcome.to_dict()
            if not outcome.success:
                return Result(False, outcome.error or "migration failed", list(outcome.errors), data)

            persisted = []
            for rid in outcome.persisted:
                try:
                    persisted.append(self.coordinator.read(rid))
                except NotFoundError:
                    logger.warning("migrated record vanished before validation: %s", rid)
            results = pipeline.batch.results if pipeline.batch else []
            validation = self.validator.validate_migration(results, persisted)
            data["validation"] = validation.to_dict()
            if not validation.success and self.config.validation.strict:
                data["rollback"] = pipeline.rollback().to_dict()
                data["state"] = pipeline.state.value
                return Result(False, "Migration failed validation and was rolled back", validation.errors, data)
            msg = f"Migrated {len(outcome.persisted)} contexts ({outcome.migration_id}), grade {validation.grade}"
            return Result(True, msg, data=data)
        return self._guard(op)

    def rollback(self, migration_id: str | None = None) -> Result:
        def op() -> Result:
            pipeline = self.last_migration
            if migration_id and (pipeline is None or pipeline.migration_id != migration_id):
                pipeline = MigrationPipeline.load(
                    migration_id, self.coordinator, self.legacy_reader(), self.transformer(), self.config.migration)
            if pipeline is None:
                return Result(False, "No migration to roll back", ["no migration id given"])
            outcome = pipeline.rollback()
            self.cache.clear()
            msg = f"Rolled back {pipeline.migration_id}: {outcome.deleted} deleted, {outcome.restored} restored"
            return Result(outcome.success, msg, list(outcome.warnings), outcome.to_dict())
        return self._guard(op)

    def migration_status(self) -> Result:
        if self.last_migration is None:
            return Result(False, "No migration has run", ["no migration"])
        return Result(True, self.last_migration.state.value, data=self.last_migration.status())
