"""Tests for record validation, normalization and patch merging."""

from __future__ import annotations

from datetime import datetime

import pytest

from ctxstore.errors import ValidationError
from ctxstore.models import ContextRecord
from ctxstore.schema import (
    apply_patch,
    clamp_importance,
    parse_hierarchy_path,
    prepare_new,
    storage_key,
    validate,
)


def _valid(**overrides):
    data = {"id": "rec-1", "type": "task", "hierarchy": ["app", "backend"], "content": "hi"}
    data.update(overrides)
    return data


class TestValidate:
    def test_valid_record_has_no_errors(self):
        assert validate(_valid()) == []

    def test_empty_hierarchy_rejected(self):
        assert any("hierarchy" in e for e in validate(_valid(hierarchy=[])))

    def test_blank_segment_rejected(self):
        assert any("hierarchy[1]" in e for e in validate(_valid(hierarchy=["app", "  "])))

    def test_path_separator_in_segment_rejected(self):
        assert validate(_valid(hierarchy=["app/evil"]))
        assert validate(_valid(hierarchy=[".."]))

    def test_depth_limit(self):
        assert any("depth" in e for e in validate(_valid(hierarchy=list("abcdef"))))

    def test_unknown_type(self):
        assert any("type" in e for e in validate(_valid(type="note")))

    def test_bool_importance_rejected(self):
        assert validate(_valid(importance=True))

    def test_tags_must_be_strings(self):
        assert validate(_valid(metadata={"tags": [1, 2]}))

    def test_self_parent_rejected(self):
        assert validate(_valid(relationships={"parent": "rec-1"}))


class TestPrepareNew:
    def test_assigns_id_and_timestamps(self):
        rec = prepare_new({"type": "task", "hierarchy": ["app"]})
        assert rec.id
        assert rec.created and rec.updated

    def test_importance_clamped(self):
        assert prepare_new(_valid(importance=250)).importance == 100
        assert prepare_new(_valid(importance=-3)).importance == 0

    def test_keep_timestamps(self):
        rec = prepare_new(_valid(created="2024-01-01T00:00:00+00:00"), keep_timestamps=True)
        assert rec.created == "2024-01-01T00:00:00+00:00"
        assert rec.updated == rec.created

    def test_invalid_raises_with_all_errors(self):
        with pytest.raises(ValidationError) as exc_info:
            prepare_new({"type": "bogus", "hierarchy": []})
        assert len(exc_info.value.errors) >= 2


class TestApplyPatch:
    def _record(self) -> ContextRecord:
        return prepare_new(_valid(metadata={"tags": ["a"], "agent_id": "bot"}))

    def test_empty_patch_only_moves_updated(self):
        rec = self._record()
        patched = apply_patch(rec, {})
        assert datetime.fromisoformat(patched.updated) > datetime.fromisoformat(rec.updated)
        patched.updated = rec.updated
        assert patched == rec

    def test_metadata_merges_one_level(self):
        patched = apply_patch(self._record(), {"metadata": {"tags": ["b"]}})
        assert patched.metadata.tags == {"b"}
        assert patched.metadata.agent_id == "bot"

    def test_id_is_immutable(self):
        with pytest.raises(ValidationError):
            apply_patch(self._record(), {"id": "other"})

    def test_created_is_ignored(self):
        rec = self._record()
        assert apply_patch(rec, {"created": "1999-01-01"}).created == rec.created

    def test_invalid_patch_rejected(self):
        with pytest.raises(ValidationError):
            apply_patch(self._record(), {"hierarchy": []})


def test_storage_key_is_deterministic():
    assert storage_key(["a", "b"], "task", "x1") == "a/b/task/x1"
    assert parse_hierarchy_path("/a//b/") == ["a", "b"]
    assert clamp_importance(99.6) == 100
