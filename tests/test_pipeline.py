"""End-to-end migration tests: phases, checkpoints, failure and rollback."""

from __future__ import annotations

import json
from unittest.mock import patch

from ctxstore.engine import ContextEngine
from ctxstore.errors import StorageError
from ctxstore.legacy import LegacyReader
from ctxstore.pipeline import MigrationPipeline, MigrationState
from ctxstore.transform import Transformer


def _ids(engine) -> set[str]:
    return {r["id"] for r in engine.list(limit=0).data}


class TestMigrate:
    def test_four_file_migration(self, engine, legacy_dir, cfg):
        res = engine.migrate()
        assert res.success, res.errors
        data = res.data
        assert data["state"] == "completed"
        assert sorted(data["persisted"]) == [
            "legacy-progress-md",
            "legacy-project-brief-md",
            "legacy-settings-json",
            "legacy-tech-context-md",
        ]
        assert data["validation"]["assessment"]["grade"] in {"A", "B"}
        assert data["report"]["quality"]["completeness"] == 100.0

        migration_dir = cfg.migration.backup_dir / data["migration_id"]
        backup = json.loads((migration_dir / "backup-manifest.json").read_text())
        assert len(backup["files"]) == 4
        assert all((migration_dir / "files" / name).exists() for name in ("progress.md", "settings.json"))
        assert (migration_dir / "manifest.json").exists()
        assert json.loads((migration_dir / "ledger.json").read_text())["state"] == "completed"

    def test_migrated_records_are_queryable(self, engine, legacy_dir):
        engine.migrate()
        brief = engine.read("legacy-project-brief-md").data
        assert brief["hierarchy"] == ["acme"]
        assert brief["relationships"]["references"] == ["legacy-tech-context-md"]
        technical = engine.get_by_hierarchy(["acme", "technical"]).data
        assert [r["id"] for r in technical] == ["legacy-tech-context-md"]

    def test_legacy_files_untouched(self, engine, legacy_dir):
        before = {p.name: p.read_bytes() for p in legacy_dir.iterdir()}
        engine.migrate()
        assert {p.name: p.read_bytes() for p in legacy_dir.iterdir()} == before

    def test_progress_is_monotonic(self, engine, legacy_dir):
        seen: list[tuple[str, float]] = []
        engine.migrate(on_progress=lambda s: seen.append((s["state"], s["progress"]["percentage"])))
        percentages = [p for _, p in seen]
        assert percentages == sorted(percentages)
        assert seen[-1] == ("completed", 100.0)
        assert [s for s, _ in seen][:3] == ["setup", "planning", "backup"]

    def test_checkpoints_pruned_to_keep_limit(self, engine, legacy_dir, cfg):
        cfg.migration.checkpoint_interval = 1
        res = engine.migrate()
        migration_dir = cfg.migration.backup_dir / res.data["migration_id"]
        checkpoints = sorted(p.name for p in migration_dir.glob("checkpoint-*"))
        assert checkpoints == ["checkpoint-0002", "checkpoint-0003", "checkpoint-0004"]
        saved = json.loads((migration_dir / "checkpoint-0004" / "checkpoint.json").read_text())
        assert saved["progress"] == 4
        assert len(saved["state"]["ledger"]) == 4

    def test_no_backup(self, engine, legacy_dir, cfg):
        cfg.migration.enable_backup = False
        res = engine.migrate()
        assert res.success
        migration_dir = cfg.migration.backup_dir / res.data["migration_id"]
        assert not (migration_dir / "backup-manifest.json").exists()

    def test_strict_validation_rolls_back(self, engine, legacy_dir, cfg):
        # settings.json is pretty-printed on import, which is a content warning
        cfg.validation.strict = True
        engine.validator.strict = True
        res = engine.migrate()
        assert res.success is False
        assert res.data["state"] == "rolled_back"
        assert _ids(engine) == set()


class TestFailures:
    def test_missing_legacy_root_fails_in_setup(self, engine, cfg):
        res = engine.migrate()
        assert res.success is False
        assert res.data["failed_phase"] == "setup"
        assert res.data["state"] == "failed"
        assert res.data["rollback"] is None

    def test_storage_failure_rolls_back(self, engine, legacy_dir):
        engine.create({"id": "keep-me", "type": "task", "hierarchy": ["acme"]})
        original = engine.coordinator.create

        def flaky(record):
            if record.id == "legacy-settings-json":
                raise StorageError("disk full")
            return original(record)

        with patch.object(engine.coordinator, "create", side_effect=flaky):
            res = engine.migrate()
        assert res.success is False
        assert res.data["failed_phase"] == "storage"
        assert res.data["state"] == "rolled_back"
        assert res.data["rollback"]["deleted"] == 3
        assert _ids(engine) == {"keep-me"}

    def test_conflicting_files_fail_storage(self, engine, cfg):
        root = cfg.migration.legacy_root
        root.mkdir(parents=True)
        (root / "notes_a.md").write_text("one")
        (root / "notes-a.md").write_text("two")
        res = engine.migrate()
        assert res.success is False
        assert res.data["failed_phase"] == "storage"
        assert any("conflict" in w for w in res.data["warnings"])
        assert _ids(engine) == set()

    def test_rollback_disabled_leaves_partial_state(self, engine, legacy_dir, cfg):
        cfg.migration.enable_rollback = False
        original = engine.coordinator.create

        def flaky(record):
            if record.id == "legacy-settings-json":
                raise StorageError("disk full")
            return original(record)

        with patch.object(engine.coordinator, "create", side_effect=flaky):
            res = engine.migrate()
        assert res.data["state"] == "failed"
        assert len(_ids(engine)) == 3


class TestRollback:
    def test_rollback_restores_previous_id_set(self, engine, legacy_dir):
        engine.create({"id": "pre-existing", "type": "task", "hierarchy": ["acme"]})
        before = _ids(engine)
        engine.migrate()
        assert len(_ids(engine)) == len(before) + 4
        res = engine.rollback()
        assert res.success, res.errors
        assert res.data["deleted"] == 4
        assert _ids(engine) == before
        assert engine.migration_status().data["state"] == "rolled_back"

    def test_rollback_restores_deleted_legacy_file(self, engine, legacy_dir):
        res = engine.migrate()
        original = (legacy_dir / "progress.md").read_text()
        (legacy_dir / "progress.md").unlink()
        (legacy_dir / "tech-context.md").write_text("edited after migration")
        outcome = engine.rollback(res.data["migration_id"]).data
        assert outcome["restored"] == 2
        assert (legacy_dir / "progress.md").read_text() == original

    def test_rollback_from_ledger_in_new_engine(self, engine, legacy_dir, cfg):
        res = engine.migrate()
        fresh = ContextEngine(cfg, memory_probe=lambda: 0.1)
        result = fresh.rollback(res.data["migration_id"])
        assert result.success
        assert result.data["deleted"] == 4
        assert _ids(fresh) == set()

    def test_unknown_migration_id(self, engine):
        res = engine.rollback("migration-does-not-exist")
        assert res.success is False
        assert "No ledger" in res.message

    def test_rollback_is_idempotent(self, engine, legacy_dir):
        engine.migrate()
        engine.rollback()
        again = engine.rollback()
        assert again.success
        assert again.data["deleted"] == 0


def test_pipeline_status_before_run(coordinator, cfg, legacy_dir):
    reader = LegacyReader(cfg.migration.legacy_root, project=cfg.name)
    pipeline = MigrationPipeline(coordinator, reader, Transformer(batch_pause=0), cfg.migration)
    status = pipeline.status()
    assert status["state"] == MigrationState.IDLE
    assert status["progress"]["percentage"] == 0.0
