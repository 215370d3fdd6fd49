"""MigrationPipeline: one-shot, phased import of legacy context.

    idle -> setup -> planning -> [backup] -> transformation -> storage
         -> verification -> cleanup -> completed

Any exception after setup moves the run to ``failed`` and, when rollback is
enabled, triggers rollback() which lands in ``rolled_back``. A completed
run can also be rolled back later, from this process or (via load()) from
the files it left under ``<backup_dir>/<migration_id>/``:

    manifest.json            migration manifest from planning
    backup-manifest.json     original <-> backup path pairs
    files/                   verbatim copies of the legacy files
    checkpoint-NNNN/checkpoint.json
    ledger.json              ids created by this run (the rollback ledger)

Legacy source files are never modified or deleted.
"""

from __future__ import annotations

import filecmp
import json
import logging
import shutil
import time
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ctxstore.errors import CtxStoreError, MigrationPhaseError, RollbackError, StorageError
from ctxstore.models import now_iso

if TYPE_CHECKING:
    from collections.abc import Callable

    from ctxstore.config import MigrationConfig
    from ctxstore.coordinator import StorageCoordinator
    from ctxstore.legacy import LegacyReader, Manifest
    from ctxstore.transform import BatchResult, Transformer

logger = logging.getLogger("ctxstore.pipeline")

ITEM_WEIGHT = 80.0
LEDGER_FILE = "ledger.json"
MANIFEST_FILE = "manifest.json"
BACKUP_MANIFEST_FILE = "backup-manifest.json"


class MigrationState(StrEnum):
    IDLE = "idle"
    SETUP = "setup"
    PLANNING = "planning"
    BACKUP = "backup"
    TRANSFORMATION = "transformation"
    STORAGE = "storage"
    VERIFICATION = "verification"
    CLEANUP = "cleanup"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


S = MigrationState

PHASE_FLOORS = {
    S.IDLE: 0.0,
    S.SETUP: 5.0,
    S.PLANNING: 10.0,
    S.BACKUP: 15.0,
    S.TRANSFORMATION: 50.0,
    S.STORAGE: 70.0,
    S.VERIFICATION: 85.0,
    S.CLEANUP: 95.0,
    S.COMPLETED: 100.0,
}

TRANSITIONS: dict[MigrationState, frozenset[MigrationState]] = {
    S.IDLE: frozenset({S.SETUP}),
    S.SETUP: frozenset({S.PLANNING, S.FAILED}),
    S.PLANNING: frozenset({S.BACKUP, S.TRANSFORMATION, S.FAILED}),
    S.BACKUP: frozenset({S.TRANSFORMATION, S.FAILED}),
    S.TRANSFORMATION: frozenset({S.STORAGE, S.FAILED}),
    S.STORAGE: frozenset({S.VERIFICATION, S.FAILED}),
    S.VERIFICATION: frozenset({S.CLEANUP, S.FAILED}),
    S.CLEANUP: frozenset({S.COMPLETED, S.FAILED}),
    S.COMPLETED: frozenset({S.ROLLED_BACK}),
    S.FAILED: frozenset({S.ROLLED_BACK}),
    S.ROLLED_BACK: frozenset(),
}


def new_migration_id() -> str:
    return "migration-" + time.strftime("%Y%m%d-%H%M%S") + "-" + uuid.uuid4().hex[:6]


@dataclass
class Checkpoint:
    id: str
    name: str
    timestamp: str
    phase: str
    progress: int         # records persisted when the checkpoint was taken
    state: dict[str, Any]
    path: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "timestamp": self.timestamp,
            "phase": self.phase,
            "progress": self.progress,
            "state": self.state,
        }


@dataclass
class RollbackOutcome:
    success: bool
    deleted: int = 0
    restored: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "deleted": self.deleted, "restored": self.restored,
                "warnings": list(self.warnings)}


@dataclass
class MigrationOutcome:
    success: bool
    migration_id: str
    state: str
    error: str | None = None
    failed_phase: str | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    report: dict[str, Any] = field(default_factory=dict)
    rollback: RollbackOutcome | None = None
    persisted: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "migration_id": self.migration_id,
            "state": self.state,
            "error": self.error,
            "failed_phase": self.failed_phase,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "persisted": list(self.persisted),
            "rollback": self.rollback.to_dict() if self.rollback else None,
            "report": self.report,
        }


class MigrationPipeline:
    def __init__(
        self,
        coordinator: StorageCoordinator,
        reader: LegacyReader,
        transformer: Transformer,
        config: MigrationConfig,
        *,
        migration_id: str | None = None,
        on_progress: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.reader = reader
        self.transformer = transformer
        self.config = config
        self.migration_id = migration_id or new_migration_id()
        self.migration_dir = Path(config.backup_dir) / self.migration_id
        self.on_progress = on_progress

        self.state = S.IDLE
        self.manifest: Manifest | None = None
        self.batch: BatchResult | None = None
        self.ledger: list[str] = []
        self.checkpoints: list[Checkpoint] = []
        self.errors: list[str] = []
        self.warnings: list[str] = []
        self.total = 0
        self.processed = 0
        self.attempted = 0
        self.verified = 0
        self.started_at: str | None = None
        self.finished_at: str | None = None
        self._started_mono: float | None = None
        self._phase_started: float | None = None
        self.phase_durations: dict[str, float] = {}
        self._progress_high = 0.0

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _enter(self, new: MigrationState) -> None:
        if new not in TRANSITIONS[self.state]:
            msg = f"illegal migration transition {self.state} -> {new}"
            raise CtxStoreError(msg)
        now = time.monotonic()
        if self._phase_started is not None and self.state in PHASE_FLOORS:
            self.phase_durations[self.state.value] = round((now - self._phase_started) * 1000, 2)
        self._phase_started = now
        logger.info("migration %s: %s -> %s", self.migration_id, self.state, new)
        self.state = new
        if self.on_progress is not None:
            try:
                self.on_progress(self.status())
            except Exception:
                logger.exception("progress callback failed")

    def progress(self) -> float:
        """Percent complete; never decreases during a run."""
        floor = PHASE_FLOORS.get(self.state, self._progress_high)
        items = self.processed / self.total * ITEM_WEIGHT if self.total else 0.0
        self._progress_high = max(self._progress_high, floor, items)
        return round(self._progress_high, 2)

    def _phases(self) -> list[tuple[MigrationState, Callable[[], None]]]:
        phases: list[tuple[MigrationState, Callable[[], None]]] = [(S.PLANNING, self._planning)]
        if self.config.enable_backup:
            phases.append((S.BACKUP, self._backup))
        phases += [
            (S.TRANSFORMATION, self._transformation),
            (S.STORAGE, self._storage),
            (S.VERIFICATION, self._verification),
            (S.CLEANUP, self._cleanup),
        ]
        return phases

    def run(self) -> MigrationOutcome:
        """Execute every phase. Never raises; failures come back in the outcome."""
        self.started_at = now_iso()
        self._started_mono = time.monotonic()
        try:
            self._enter(S.SETUP)
            self._setup()
        except Exception as exc:
            return self._fail(S.SETUP, exc, rollback=False)

        for phase, fn in self._phases():
            try:
                self._enter(phase)
                fn()
            except Exception as exc:
                return self._fail(phase, exc, rollback=self.config.enable_rollback)

        self._enter(S.COMPLETED)
        self.finished_at = now_iso()
        self._write_ledger()
        logger.info("migration %s completed: %d records", self.migration_id, len(self.ledger))
        return MigrationOutcome(
            success=True,
            migration_id=self.migration_id,
            state=self.state.value,
            errors=list(self.errors),
            warnings=list(self.warnings),
            report=self.report(),
            persisted=list(self.ledger),
        )

    def _fail(self, phase: MigrationState, exc: Exception, *, rollback: bool) -> MigrationOutcome:
        error = exc if isinstance(exc, MigrationPhaseError) else MigrationPhaseError(phase.value, exc)
        logger.error("%s", error)
        self.errors.append(str(error))
        self.state = S.FAILED
        self.finished_at = now_iso()
        if self.migration_dir.exists():
            self._write_ledger()

        outcome = MigrationOutcome(
            success=False,
            migration_id=self.migration_id,
            state=self.state.value,
            error=str(error),
            failed_phase=phase.value,
            errors=list(self.errors),
            warnings=list(self.warnings),
            persisted=list(self.ledger),
        )
        if rollback:
            outcome.rollback = self.rollback()
            outcome.state = self.state.value
            outcome.warnings = list(self.warnings)
            outcome.persisted = list(self.ledger)
        outcome.report = self.report()
        return outcome

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _setup(self) -> None:
        self.coordinator.initialize(sync=False)
        if not self.reader.root.is_dir():
            msg = f"Legacy root not found: {self.reader.root}"
            raise StorageError(msg)
        self.migration_dir.mkdir(parents=True, exist_ok=True)
        if self.config.enable_backup:
            (self.migration_dir / "files").mkdir(exist_ok=True)

    def _planning(self) -> None:
        manifest = self.reader.generate_manifest()
        self.manifest = manifest
        self.total = len(manifest.files)
        (self.migration_dir / MANIFEST_FILE).write_text(json.dumps(manifest.to_dict(), indent=2))
        self.warnings += manifest.warnings
        for conflict in manifest.conflicts:
            self.warnings.append(
                f"storage key conflict {conflict['storage_key']}: {', '.join(conflict['sources'])}"
            )
        self.warnings += [r["message"] for r in manifest.recommendations if r["type"] == "performance"]
        if not manifest.files:
            self.warnings.append("no legacy files to migrate")
        health = self.coordinator.health_check()
        if health["overall"] == "unhealthy":
            msg = f"target storage unhealthy: {health['primary']}"
            raise StorageError(msg)

    def _planned(self) -> Manifest:
        if self.manifest is None:
            msg = "planning has not run"
            raise CtxStoreError(msg)
        return self.manifest

    def _transformed(self) -> BatchResult:
        if self.batch is None:
            msg = "transformation has not run"
            raise CtxStoreError(msg)
        return self.batch

    def _backup(self) -> None:
        manifest = self._planned()
        files_dir = self.migration_dir / "files"
        pairs = []
        for entry in manifest.files:
            dest = files_dir / entry.name
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(entry.source, dest)
            pairs.append({"original": entry.source, "backup": str(dest)})
        backup_manifest = {
            "migration_id": self.migration_id,
            "timestamp": now_iso(),
            "legacy_root": str(self.reader.root),
            "files": pairs,
        }
        (self.migration_dir / BACKUP_MANIFEST_FILE).write_text(json.dumps(backup_manifest, indent=2))
        logger.info("backed up %d legacy files to %s", len(pairs), files_dir)

    def _transformation(self) -> None:
        manifest = self._planned()
        batch = self.transformer.transform_batch(manifest, self.reader)
        self.batch = batch
        for r in batch.results:
            self.warnings += r.warnings
            if not r.success:
                self.warnings.append(f"transform failed for {r.source}: {r.error}")
        if manifest.files and not batch.succeeded:
            msg = f"all {len(manifest.files)} legacy files failed to transform"
            raise CtxStoreError(msg)

    def _storage(self) -> None:
        batch = self._transformed()
        interval = max(1, self.config.checkpoint_interval)
        for r in batch.succeeded:
            if r.record is None:
                continue
            self.attempted += 1
            try:
                self.coordinator.create(r.record)
            except CtxStoreError as exc:
                self.errors.append(f"{r.source}: {exc}")
                continue
            self.ledger.append(r.record.id)
            self.processed += 1
            if self.processed % interval == 0:
                self.save_checkpoint(f"storage-{self.processed}")
        self._write_ledger()
        if self.processed < self.attempted:
            msg = f"persisted {self.processed} of {self.attempted} records"
            raise StorageError(msg)

    def _verification(self) -> None:
        batch = self._transformed()
        expected = {r.record.id: r.record for r in batch.succeeded if r.record is not None}
        mismatches: list[str] = []
        for rid in self.ledger:
            try:
                stored = self.coordinator.read(rid)
            except CtxStoreError as exc:
                mismatches.append(f"{rid}: {exc}")
                continue
            want = expected[rid]
            if stored.type != want.type or stored.hierarchy != want.hierarchy:
                mismatches.append(f"{rid}: stored {stored.storage_key} != {want.storage_key}")
                continue
            self.verified += 1
        self.errors += mismatches
        if self.verified < len(self.ledger):
            msg = f"verified {self.verified} of {len(self.ledger)} records"
            raise StorageError(msg)

    def _cleanup(self) -> None:
        keep = max(0, self.config.keep_checkpoints)
        dirs = sorted(self.migration_dir.glob("checkpoint-*"))
        stale = dirs[:-keep] if keep else dirs
        for d in stale:
            shutil.rmtree(d, ignore_errors=True)
        self.checkpoints = [cp for cp in self.checkpoints if cp.path is None or cp.path.exists()]

    # ------------------------------------------------------------------
    # Checkpoints and ledger
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        """Full serializable pipeline state."""
        return {
            "migration_id": self.migration_id,
            "state": self.state.value,
            "legacy_root": str(self.reader.root),
            "started_at": self.started_at,
            "total": self.total,
            "processed": self.processed,
            "attempted": self.attempted,
            "ledger": list(self.ledger),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "phase_durations": dict(self.phase_durations),
        }

    def save_checkpoint(self, name: str) -> Checkpoint:
        seq = len(self.checkpoints) + 1
        cp = Checkpoint(
            id=f"{self.migration_id}-cp{seq:04d}",
            name=name,
            timestamp=now_iso(),
            phase=self.state.value,
            progress=self.processed,
            state=self.snapshot(),
        )
        cp_dir = self.migration_dir / f"checkpoint-{seq:04d}"
        cp_dir.mkdir(parents=True, exist_ok=True)
        cp.path = cp_dir / "checkpoint.json"
        cp.path.write_text(json.dumps(cp.to_dict(), indent=2))
        self.checkpoints.append(cp)
        self._write_ledger()
        return cp

    def _write_ledger(self) -> None:
        self.migration_dir.mkdir(parents=True, exist_ok=True)
        data = {
            "migration_id": self.migration_id,
            "state": self.state.value,
            "legacy_root": str(self.reader.root),
            "updated": now_iso(),
            "ledger": list(self.ledger),
        }
        tmp = self.migration_dir / (LEDGER_FILE + ".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        tmp.replace(self.migration_dir / LEDGER_FILE)

    @classmethod
    def load(
        cls, migration_id: str, coordinator: StorageCoordinator, reader: LegacyReader,
        transformer: Transformer, config: MigrationConfig,
    ) -> MigrationPipeline:
        """Rehydrate a finished run from its ledger so it can be rolled back."""
        pipeline = cls(coordinator, reader, transformer, config, migration_id=migration_id)
        ledger_path = pipeline.migration_dir / LEDGER_FILE
        if not ledger_path.exists():
            msg = f"No ledger for migration {migration_id} at {ledger_path}"
            raise CtxStoreError(msg)
        data = json.loads(ledger_path.read_text())
        pipeline.ledger = list(data.get("ledger", []))
        pipeline.state = MigrationState(data.get("state", S.COMPLETED.value))
        pipeline.processed = pipeline.total = len(pipeline.ledger)
        return pipeline

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback(self) -> RollbackOutcome:
        """Delete every ledger id, then restore legacy files from the backup.

        Problems are collected as warnings; nothing here raises.
        """
        outcome = RollbackOutcome(success=True)
        remaining: list[str] = []
        for rid in reversed(self.ledger):
            try:
                if self.coordinator.delete(rid):
                    outcome.deleted += 1
            except Exception as exc:
                outcome.warnings.append(str(RollbackError(f"delete {rid} failed: {exc}")))
                remaining.append(rid)
        self.ledger = list(reversed(remaining))

        backup_manifest = self.migration_dir / BACKUP_MANIFEST_FILE
        if backup_manifest.exists():
            try:
                pairs = json.loads(backup_manifest.read_text()).get("files", [])
            except (OSError, json.JSONDecodeError) as exc:
                outcome.warnings.append(str(RollbackError(f"backup manifest unreadable: {exc}")))
                pairs = []
            for pair in pairs:
                original, backup = Path(pair["original"]), Path(pair["backup"])
                try:
                    if not original.exists() or not filecmp.cmp(original, backup, shallow=False):
                        original.parent.mkdir(parents=True, exist_ok=True)
                        shutil.copy2(backup, original)
                        outcome.restored += 1
                except OSError as exc:
                    outcome.warnings.append(str(RollbackError(f"restore {original} failed: {exc}")))

        if S.ROLLED_BACK in TRANSITIONS[self.state]:
            self.state = S.ROLLED_BACK
        outcome.success = not outcome.warnings
        self.warnings += outcome.warnings
        for w in outcome.warnings:
            logger.warning("rollback: %s", w)
        if self.migration_dir.exists():
            self._write_ledger()
        logger.info("migration %s rolled back: %d deleted, %d restored",
                    self.migration_id, outcome.deleted, outcome.restored)
        return outcome

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        elapsed = time.monotonic() - self._started_mono if self._started_mono else 0.0
        pct = self.progress()
        remaining = elapsed / pct * (100 - pct) if 0 < pct < 100 else 0.0
        return {
            "migration_id": self.migration_id,
            "state": self.state.value,
            "progress": {
                "percentage": pct,
                "processed": self.processed,
                "total": self.total,
                "remaining": max(0, self.total - self.processed),
            },
            "timing": {
                "started_at": self.started_at,
                "elapsed_s": round(elapsed, 3),
                "estimated_remaining_s": round(remaining, 3),
            },
            "counts": {
                "errors": len(self.errors),
                "warnings": len(self.warnings),
                "checkpoints": len(self.checkpoints),
            },
        }

    def report(self) -> dict[str, Any]:
        persisted = len(self.ledger)
        integrity = self.verified / persisted * 100 if persisted else (100.0 if not self.total else 0.0)
        completeness = persisted / self.total * 100 if self.total else 100.0
        quality = {
            "data_integrity": round(integrity, 2),
            "completeness": round(completeness, 2),
            "overall": round((integrity + completeness) / 2, 2),
        }
        recs: list[str] = []
        failed = len(self.batch.failed) if self.batch else 0
        if failed:
            recs.append(f"Review {failed} legacy file(s) that failed to transform")
        if self.warnings:
            recs.append(f"Review {len(self.warnings)} migration warning(s)")
        if self.state == S.COMPLETED:
            recs.append("Keep the backup until the migrated contexts have been reviewed")
        return {
            "migration_id": self.migration_id,
            "state": self.state.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "phase_durations_ms": dict(self.phase_durations),
            "stats": {
                "total_files": self.total,
                "transformed": len(self.batch.succeeded) if self.batch else 0,
                "transform_failed": failed,
                "attempted": self.attempted,
                "persisted": persisted,
                "verified": self.verified,
            },
            "checkpoints": len(self.checkpoints),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "transformer": self.batch.stats if self.batch else {},
            "quality": quality,
            "recommendations": recs,
        }
