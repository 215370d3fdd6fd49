"""Tests for the file-per-record primary store."""

from __future__ import annotations

import json
import threading

import pytest

from ctxstore.errors import ConflictError, NotFoundError
from ctxstore.models import ListQuery
from ctxstore.schema import prepare_new


def _record(rid: str, hierarchy=("app", "backend"), rtype="task", **extra):
    return prepare_new({"id": rid, "type": rtype, "hierarchy": list(hierarchy), **extra})


class TestPrimaryCreate:
    def test_create_writes_file_at_storage_key(self, primary):
        rec = primary.create(_record("t1", content="hello"))
        path = primary.contexts_dir / "app" / "backend" / "task" / "t1.json"
        assert path.exists()
        assert json.loads(path.read_text())["content"] == "hello"
        assert primary.read("t1") == rec

    def test_duplicate_id_conflicts(self, primary):
        primary.create(_record("t1"))
        with pytest.raises(ConflictError):
            primary.create(_record("t1"))

    def test_same_id_elsewhere_conflicts(self, primary):
        primary.create(_record("t1"))
        with pytest.raises(ConflictError):
            primary.create(_record("t1", hierarchy=("other",)))

    def test_concurrent_creates_one_wins(self, primary):
        barrier = threading.Barrier(2)
        outcomes: list[str] = []

        def worker():
            barrier.wait()
            try:
                primary.create(_record("race"))
                outcomes.append("ok")
            except ConflictError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(outcomes) == ["conflict", "ok"]


class TestPrimaryReadUpdateDelete:
    def test_read_missing_returns_none(self, primary):
        assert primary.read("ghost") is None

    def test_read_without_path_index_heals_it(self, primary):
        primary.create(_record("t1"))
        primary.index_path.unlink()
        assert primary.read("t1") is not None
        assert "t1" in json.loads(primary.index_path.read_text())["contexts"]

    def test_update_moves_file_when_hierarchy_changes(self, primary):
        primary.create(_record("t1"))
        updated = primary.update("t1", {"hierarchy": ["app", "frontend"]})
        assert updated.hierarchy == ["app", "frontend"]
        assert (primary.contexts_dir / "app" / "frontend" / "task" / "t1.json").exists()
        assert not (primary.contexts_dir / "app" / "backend").exists()

    def test_update_missing_raises(self, primary):
        with pytest.raises(NotFoundError):
            primary.update("ghost", {"content": "x"})

    def test_delete_is_idempotent(self, primary):
        primary.create(_record("t1"))
        assert primary.delete("t1") is True
        assert primary.delete("t1") is False
        assert primary.read("t1") is None

    def test_delete_removes_lock_file(self, primary):
        primary.create(_record("t1"))
        assert primary.locks.lock_path("t1").exists()
        primary.delete("t1")
        assert not primary.locks.lock_path("t1").exists()


class TestPrimaryIdPatterns:
    @pytest.mark.parametrize("pattern", ["*", "vic*", "vict?m", "[v]ictim", "victim/../victim"])
    def test_wildcard_ids_match_nothing(self, primary, pattern):
        primary.create(_record("victim", content="keep me"))
        assert primary.read(pattern) is None
        assert primary.exists(pattern) is False
        with pytest.raises(NotFoundError):
            primary.update(pattern, {"content": "x"})
        assert primary.delete(pattern) is False
        assert primary.read("victim").content == "keep me"
        assert "victim" in json.loads(primary.index_path.read_text())["contexts"]

    def test_wildcard_ids_match_nothing_without_path_index(self, primary):
        primary.create(_record("victim"))
        primary.index_path.unlink()
        assert primary.read("vic*") is None
        assert primary.delete("*") is False
        assert primary.read("victim") is not None

    def test_scan_matches_whole_file_stem(self, primary):
        primary.create(_record("victim"))
        primary.index_path.unlink()
        assert primary.read("tim") is None
        assert primary.read("victim").id == "victim"

    def test_file_holding_another_id_is_ignored(self, primary):
        primary.create(_record("t1"))
        stray = primary.contexts_dir / "app" / "backend" / "task" / "t2.json"
        stray.write_text((primary.contexts_dir / "app" / "backend" / "task" / "t1.json").read_text())
        primary.index_path.unlink()
        assert primary.read("t2") is None


class TestPrimaryQueries:
    def test_list_falls_back_when_path_index_corrupt(self, primary):
        primary.create(_record("a"))
        primary.create(_record("b", hierarchy=("app", "frontend")))
        primary.index_path.write_text("{not json")
        ids = {r.id for r in primary.list(ListQuery(limit=0))}
        assert ids == {"a", "b"}
        assert json.loads(primary.index_path.read_text())["contexts"].keys() == {"a", "b"}

    def test_list_prefix_is_segment_aware(self, primary):
        primary.create(_record("a", hierarchy=("app",)))
        primary.create(_record("b", hierarchy=("app", "x")))
        primary.create(_record("c", hierarchy=("apple",)))
        ids = {r.id for r in primary.list(ListQuery(hierarchy=["app"]))}
        assert ids == {"a", "b"}

    def test_list_omits_content_unless_asked(self, primary):
        primary.create(_record("a", content="body"))
        assert primary.list()[0].content == ""
        assert primary.list(ListQuery(include_content=True))[0].content == "body"

    def test_search_matches_content(self, primary):
        primary.create(_record("a", content="The Widget factory"))
        primary.create(_record("b", content="nothing here"))
        assert [r.id for r in primary.search("widget")] == ["a"]

    def test_get_by_hierarchy(self, primary):
        primary.create(_record("a", hierarchy=("app",)))
        primary.create(_record("b", hierarchy=("app", "x")))
        assert [r.id for r in primary.get_by_hierarchy(["app"])] == ["a"]
        assert [r.id for r in primary.get_by_hierarchy(["app"], include_children=True)] == ["a", "b"]

    def test_health_check(self, primary):
        primary.create(_record("a"))
        health = primary.health_check()
        assert health["healthy"] is True
        assert health["records"] == 1
