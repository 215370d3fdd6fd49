"""Post-migration validation and grading."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ctxstore.schema import validate

if TYPE_CHECKING:
    from ctxstore.legacy import Manifest
    from ctxstore.models import ContextRecord
    from ctxstore.transform import TransformResult

GRADES = (
    (95.0, "A", "Excellent - migration is complete and consistent"),
    (85.0, "B", "Good - minor issues worth reviewing"),
    (70.0, "C", "Fair - several records need attention"),
    (60.0, "D", "Poor - significant problems found"),
)
_FAIL_GRADE = ("F", "Failed - migration should be rolled back")


def grade_for(success_rate: float) -> tuple[str, str]:
    for threshold, grade, description in GRADES:
        if success_rate >= threshold:
            return grade, description
    return _FAIL_GRADE


@dataclass
class CheckResult:
    name: str
    passed: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class ValidationReport:
    success: bool
    passed: int
    failed: int
    total: int
    warning_count: int
    success_rate: float
    grade: str
    description: str
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    checks: list[CheckResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "summary": {
                "passed": self.passed,
                "failed": self.failed,
                "total": self.total,
                "warning_count": self.warning_count,
            },
            "assessment": {
                "grade": self.grade,
                "description": self.description,
                "success_rate": self.success_rate,
                "recommendations": list(self.recommendations),
            },
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "checks": [
                {"name": c.name, "passed": c.passed, "errors": c.errors, "warnings": c.warnings}
                for c in self.checks
            ],
        }


@dataclass
class ManifestValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors), "warnings": list(self.warnings)}


class Validator:
    def __init__(self, *, max_content_difference: float = 0.1, strict: bool = False) -> None:
        self.max_content_difference = max_content_difference
        self.strict = strict

    # ------------------------------------------------------------------
    # Individual checks
    # ------------------------------------------------------------------

    def check_schema(self, data: dict[str, Any]) -> list[str]:
        errors = validate(data)
        for name in ("created", "updated"):
            if not data.get(name):
                errors.append(f"{name} timestamp missing")
        return errors

    def check_content(self, source: str, target: str) -> list[str]:
        """Warnings only: content differences never fail a record on their own."""
        if source and not target:
            return ["non-empty source migrated to empty content"]
        if not source:
            return []
        delta = abs(len(target) - len(source)) / len(source)
        if delta > self.max_content_difference:
            return [f"content length changed by {delta:.0%} (limit {self.max_content_difference:.0%})"]
        return []

    def check_relationships(self, records: list[ContextRecord]) -> list[str]:
        by_id = {r.id: r for r in records}
        errors: list[str] = []
        for r in records:
            rel = r.relationships
            if rel.parent is not None and rel.parent not in by_id:
                errors.append(f"{r.id}: parent {rel.parent} not found")
            for child in sorted(rel.children):
                if child not in by_id:
                    errors.append(f"{r.id}: child {child} not found")
                elif by_id[child].relationships.parent != r.id:
                    errors.append(f"{r.id}: child {child} points to parent {by_id[child].relationships.parent}")
            for ref in sorted(rel.references):
                if ref not in by_id:
                    errors.append(f"{r.id}: reference {ref} not found")
        return errors

    def check_storage_consistency(self, records: list[ContextRecord]) -> list[str]:
        counts = Counter(r.storage_key for r in records)
        return [f"duplicate storage key: {key}" for key, n in sorted(counts.items()) if n > 1]

    def validate_manifest(self, manifest: Manifest) -> ManifestValidation:
        result = ManifestValidation(valid=True)
        for name in ("version", "timestamp", "source_root"):
            if not getattr(manifest, name):
                result.errors.append(f"manifest.{name} missing")
        for i, f in enumerate(manifest.files):
            if not f.source or not f.target_hierarchy or not f.target_type or not f.storage_key:
                result.errors.append(f"manifest.files[{i}] incomplete")
        sources = Counter(f.source for f in manifest.files)
        result.warnings += [f"duplicate source: {s}" for s, n in sorted(sources.items()) if n > 1]
        keys = Counter(f.storage_key for f in manifest.files)
        result.errors += [f"duplicate target key: {k}" for k, n in sorted(keys.items()) if n > 1]
        if manifest.conflicts:
            result.warnings.append(f"{len(manifest.conflicts)} conflict(s) reported by the manifest")
        result.valid = not result.errors
        return result

    # ------------------------------------------------------------------
    # Full migration
    # ------------------------------------------------------------------

    def validate_migration(
        self, results: list[TransformResult], persisted: list[ContextRecord] | None = None,
    ) -> ValidationReport:
        checks: list[CheckResult] = []
        migrated = [r.record for r in results if r.success and r.record is not None]
        stored = persisted if persisted is not None else migrated

        for r in results:
            if not r.success or r.record is None:
                checks.append(CheckResult(f"record:{r.source}", False, [f"{r.source}: {r.error}"]))
                continue
            errors = [f"{r.source}: {e}" for e in self.check_schema(r.record.to_dict())]
            warnings = [f"{r.source}: {w}" for w in self.check_content(r.source_content, r.record.content)]
            checks.append(CheckResult(f"record:{r.source}", not errors, errors, warnings))

        rel_errors = self.check_relationships(stored)
        checks.append(CheckResult("relationships", not rel_errors, rel_errors))
        key_errors = self.check_storage_consistency(stored)
        checks.append(CheckResult("storage_consistency", not key_errors, key_errors))
        if persisted is not None:
            stored_ids = {r.id for r in persisted}
            missing = [f"{r.id} not persisted" for r in migrated if r.id not in stored_ids]
            checks.append(CheckResult("persistence", not missing, missing))

        errors = [e for c in checks for e in c.errors]
        warnings = [w for c in checks for w in c.warnings]
        passed = sum(1 for c in checks if c.passed)
        total = len(checks)
        rate = round(passed / total * 100, 2) if total else 100.0
        grade, description = grade_for(rate)
        success = not errors and not (self.strict and warnings)
        return ValidationReport(
            success=success,
            passed=passed,
            failed=total - passed,
            total=total,
            warning_count=len(warnings),
            success_rate=rate,
            grade=grade,
            description=description,
            errors=errors,
            warnings=warnings,
            recommendations=self._recommendations(checks, rate),
            checks=checks,
        )

    @staticmethod
    def _recommendations(checks: list[CheckResult], rate: float) -> list[str]:
        recs: list[str] = []
        failed_records = [c for c in checks if c.name.startswith("record:") and not c.passed]
        if failed_records:
            recs.append(f"Fix {len(failed_records)} source file(s) that failed schema validation and re-run")
        if any(c.warnings for c in checks):
            recs.append("Review content integrity warnings; disable content compression if text was lost")
        if any(not c.passed for c in checks if c.name == "relationships"):
            recs.append("Resolve dangling relationship ids, then run sync")
        if any(not c.passed for c in checks if c.name == "storage_consistency"):
            recs.append("Rename files that map to the same storage key")
        if rate < 85:
            recs.append("Consider rolling back and migrating again after fixing the errors")
        if not recs:
            recs.append("Migration looks healthy; keep the backup until it has been reviewed")
        return recs
