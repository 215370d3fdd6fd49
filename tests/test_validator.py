"""Tests for migration validation and grading."""

from __future__ import annotations

import pytest

from ctxstore.legacy import LegacyReader
from ctxstore.schema import prepare_new
from ctxstore.transform import TransformResult
from ctxstore.validator import Validator, grade_for


def _result(rid, source=None, content="body", parent=None, children=(), references=()):
    record = prepare_new({
        "id": rid,
        "type": "task",
        "hierarchy": ["acme"],
        "content": content,
        "relationships": {"parent": parent, "children": list(children), "references": list(references)},
    })
    return TransformResult(source=source or f"{rid}.md", success=True, record=record, source_content=content)


@pytest.mark.parametrize(("rate", "grade"), [
    (100.0, "A"), (95.0, "A"), (94.99, "B"), (85.0, "B"), (70.0, "C"), (60.0, "D"), (59.9, "F"), (0.0, "F"),
])
def test_grade_thresholds(rate, grade):
    assert grade_for(rate)[0] == grade


class TestChecks:
    def test_content_difference_is_warning_only(self):
        validator = Validator(max_content_difference=0.1)
        assert validator.check_content("a" * 100, "a" * 105) == []
        assert validator.check_content("a" * 100, "a" * 150)
        assert validator.check_content("text", "") == ["non-empty source migrated to empty content"]

    def test_schema_requires_timestamps(self):
        data = _result("r1").record.to_dict()
        data["created"] = ""
        assert "created timestamp missing" in Validator().check_schema(data)

    def test_dangling_relationships(self):
        records = [_result("a", parent="ghost", references=["nowhere"]).record]
        errors = Validator().check_relationships(records)
        assert any("parent ghost" in e for e in errors)
        assert any("reference nowhere" in e for e in errors)

    def test_child_must_point_back(self):
        parent = _result("p", children=["c"]).record
        child = _result("c").record
        assert Validator().check_relationships([parent, child]) == ["p: child c points to parent None"]

    def test_duplicate_storage_keys(self):
        a = _result("same").record
        b = _result("same").record
        assert Validator().check_storage_consistency([a, b]) == ["duplicate storage key: acme/task/same"]


class TestValidateMigration:
    def test_clean_migration_gets_a(self):
        results = [_result("a", references=["b"]), _result("b")]
        report = Validator().validate_migration(results)
        assert report.success is True
        assert report.grade == "A"
        assert report.total == 4
        assert report.warning_count == 0

    def test_failed_record_lowers_grade(self):
        failed = TransformResult(source="bad.md", success=False, error="boom")
        report = Validator().validate_migration([_result("a"), failed])
        assert report.success is False
        assert report.failed == 1
        assert report.success_rate == 75.0
        assert report.grade == "C"
        assert any("bad.md" in e for e in report.errors)

    def test_warnings_do_not_fail_unless_strict(self):
        results = [TransformResult("x.md", True, _result("x", content="short").record, "a much longer source text")]
        assert Validator().validate_migration(results).success is True
        report = Validator(strict=True).validate_migration(results)
        assert report.success is False
        assert report.warning_count == 1

    def test_persistence_check(self):
        results = [_result("a"), _result("b")]
        report = Validator().validate_migration(results, persisted=[results[0].record])
        names = {c.name: c.passed for c in report.checks}
        assert names["persistence"] is False

    def test_report_dict_shape(self):
        data = Validator().validate_migration([_result("a")]).to_dict()
        assert set(data["summary"]) == {"passed", "failed", "total", "warning_count"}
        assert data["assessment"]["grade"] == "A"


class TestValidateManifest:
    def test_clean_manifest(self, legacy_dir):
        manifest = LegacyReader(legacy_dir, project="acme").generate_manifest()
        assert Validator().validate_manifest(manifest).valid is True

    def test_duplicate_targets_invalid(self, tmp_path):
        (tmp_path / "notes_a.md").write_text("one")
        (tmp_path / "notes-a.md").write_text("two")
        manifest = LegacyReader(tmp_path, project="acme").generate_manifest()
        check = Validator().validate_manifest(manifest)
        assert check.valid is False
        assert any("duplicate target key" in e for e in check.errors)
