"""Transformer: legacy documents -> ContextRecords.

A record draft (a plain dict) is seeded with identity, placement and the
initial importance score, then passed through the manifest's steps in
order. Each step is a pure function ``(draft, document, options) -> draft``
looked up in STEPS. Unknown step names are skipped with a warning.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from ctxstore.errors import ValidationError
from ctxstore.legacy import LegacyParseError, find_md_references, manifest_legacy_file
from ctxstore.models import ContextRecord, new_record_id
from ctxstore.schema import clamp_importance, prepare_new

if TYPE_CHECKING:
    from ctxstore.legacy import LegacyDocument, LegacyReader, Manifest, ManifestFile

logger = logging.getLogger("ctxstore.transform")

MIGRATION_AGENT = "legacy-migration"
TRUNCATION_MARKER = "[Content truncated during migration]"
PAUSE_EVERY = 10

TYPE_BONUS = {
    "project": 25,
    "tech": 20,
    "product": 20,
    "progress": 15,
    "agent": 15,
    "style": 10,
    "session": 5,
    "generic": 5,
}

_HASHTAG_RE = re.compile(r"(?<![\w#&/])#([A-Za-z][\w-]*)")
_LINK_RE = re.compile(r"\[[^\]]+\]\([^)]+\)|https?://\S+")
_LIST_RE = re.compile(r"^\s*(?:[-*+]|\d+\.)\s+", re.MULTILINE)
_BLANK_RUN_RE = re.compile(r"\n[ \t]*(?:\n[ \t]*)+")
_SPACE_RUN_RE = re.compile(r"[ \t]+")


@dataclass
class TransformOptions:
    compress_content: bool = False
    max_content_size: int = 50_000
    preserve_timestamps: bool = True
    generate_ids: bool = False
    now: datetime | None = None     # reference time for the recency bonus

    def reference_time(self) -> datetime:
        return self.now or datetime.now(UTC)


# ---------------------------------------------------------------------------
# Scoring and content helpers
# ---------------------------------------------------------------------------


def initial_importance(context_type: str, size: int, modified: str, now: datetime) -> int:
    """30 + size bonus (max 20) + type bonus + recency bonus, clamped to 0..100."""
    score = 30 + min(20, size // 1000) + TYPE_BONUS.get(context_type, 5)
    try:
        age_days = (now - datetime.fromisoformat(modified)).days
    except (TypeError, ValueError):
        age_days = None
    if age_days is not None:
        if age_days < 30:
            score += 15
        elif age_days < 90:
            score += 5
    return clamp_importance(score)


def compress_content(text: str, max_size: int) -> str:
    text = _BLANK_RUN_RE.sub("\n\n", text)
    text = _SPACE_RUN_RE.sub(" ", text).strip()
    if len(text) > max_size:
        text = text[:max(0, max_size - 100)].rstrip() + "\n\n" + TRUNCATION_MARKER
    return text


def hashtags(text: str) -> set[str]:
    return {m.lower() for m in _HASHTAG_RE.findall(text)}


def extract_text(doc: LegacyDocument) -> str:
    if doc.format == "json":
        return json.dumps(doc.data, indent=2, ensure_ascii=False)
    return doc.raw.strip()


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def step_content_extraction(draft: dict[str, Any], doc: LegacyDocument, options: TransformOptions) -> dict[str, Any]:
    content = extract_text(doc)
    if options.compress_content and len(content) > options.max_content_size:
        content = compress_content(content, options.max_content_size)
    return {**draft, "content": content}


def step_metadata_generation(draft: dict[str, Any], doc: LegacyDocument, options: TransformOptions) -> dict[str, Any]:
    text = doc.raw
    meta = dict(draft["metadata"])
    meta["tags"] = sorted({"legacy", "migrated", doc.context_type, doc.format} | hashtags(text))
    extra = dict(meta.get("extra", {}))
    extra["analysis"] = {
        "word_count": len(text.split()),
        "line_count": len(text.splitlines()),
        "section_count": len(doc.sections),
        "has_code": "```" in text,
        "has_links": bool(_LINK_RE.search(text)),
        "has_lists": bool(_LIST_RE.search(text)),
    }
    meta["extra"] = extra
    return {**draft, "metadata": meta}


def step_relationship_mapping(draft: dict[str, Any], doc: LegacyDocument, options: TransformOptions) -> dict[str, Any]:
    """Dependencies are the sibling .md files this document mentions."""
    own = doc.file.stem
    deps = sorted(f"legacy-{name}" for name in find_md_references(doc.raw) if name != own)
    return {**draft, "metadata": {**draft["metadata"], "dependencies": deps}}


def step_importance_calculation(draft: dict[str, Any], doc: LegacyDocument, options: TransformOptions) -> dict[str, Any]:
    """Richness bonus on top of the initial score."""
    analysis = draft["metadata"].get("extra", {}).get("analysis")
    text = doc.raw
    if analysis is None:
        analysis = {
            "has_code": "```" in text,
            "has_links": bool(_LINK_RE.search(text)),
            "has_lists": bool(_LIST_RE.search(text)),
            "word_count": len(text.split()),
        }
    bonus = 0
    bonus += 5 if analysis["has_code"] else 0
    bonus += 3 if analysis["has_links"] else 0
    bonus += 2 if analysis["has_lists"] else 0
    bonus += 5 if analysis["word_count"] > 500 else 0
    bonus += 2 * len(draft["metadata"].get("dependencies", ()))
    return {**draft, "importance": clamp_importance(draft["importance"] + bonus)}


StepFn = Callable[[dict[str, Any], "LegacyDocument", TransformOptions], dict[str, Any]]

STEPS: dict[str, StepFn] = {
    "content_extraction": step_content_extraction,
    "metadata_generation": step_metadata_generation,
    "relationship_mapping": step_relationship_mapping,
    "importance_calculation": step_importance_calculation,
}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class TransformResult:
    source: str                     # legacy name, relative to the legacy root
    success: bool
    record: ContextRecord | None = None
    source_content: str = ""
    error: str | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class BatchResult:
    results: list[TransformResult]
    stats: dict[str, Any]

    @property
    def succeeded(self) -> list[TransformResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> list[TransformResult]:
        return [r for r in self.results if not r.success]


# ---------------------------------------------------------------------------
# Transformer
# ---------------------------------------------------------------------------


class Transformer:
    def __init__(
        self, options: TransformOptions | None = None, *,
        batch_pause: float = 0.1, sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.options = options or TransformOptions()
        self.batch_pause = batch_pause
        self._sleep = sleep

    def _seed(self, doc: LegacyDocument, entry: ManifestFile) -> dict[str, Any]:
        modified = doc.file.modified
        draft: dict[str, Any] = {
            "id": new_record_id() if self.options.generate_ids else entry.record_id,
            "type": entry.target_type,
            "hierarchy": list(entry.target_hierarchy),
            "importance": initial_importance(
                doc.context_type, doc.file.size, modified, self.options.reference_time()),
            "content": "",
            "metadata": {
                "agent_id": MIGRATION_AGENT,
                "tags": ["legacy", "migrated", doc.context_type, doc.format],
                "dependencies": [],
                "retention_policy": "default",
                "extra": {"legacy": {
                    "source": entry.source,
                    "name": entry.name,
                    "format": doc.format,
                    "legacy_type": doc.context_type,
                    "title": doc.title,
                    "size": doc.file.size,
                    "modified": modified,
                }},
            },
            "relationships": {"parent": None, "children": [], "references": []},
        }
        if self.options.preserve_timestamps:
            draft["created"] = draft["updated"] = modified
        return draft

    def transform_file(self, doc: LegacyDocument, entry: ManifestFile) -> TransformResult:
        result = TransformResult(source=entry.name, success=False, source_content=doc.raw)
        draft = self._seed(doc, entry)
        for step in entry.steps:
            fn = STEPS.get(step)
            if fn is None:
                result.warnings.append(f"{entry.name}: unknown transformation step '{step}' skipped")
                continue
            draft = fn(draft, doc, self.options)
        try:
            result.record = prepare_new(draft, keep_timestamps=self.options.preserve_timestamps)
        except ValidationError as exc:
            result.error = str(exc)
            return result
        result.success = True
        return result

    def transform_batch(self, manifest: Manifest, reader: LegacyReader) -> BatchResult:
        started = time.perf_counter()
        results: list[TransformResult] = []
        for i, entry in enumerate(manifest.files):
            if i and i % PAUSE_EVERY == 0 and self.batch_pause > 0:
                self._sleep(self.batch_pause)
            try:
                doc = reader.parse_file(manifest_legacy_file(entry))
            except LegacyParseError as exc:
                results.append(TransformResult(source=entry.name, success=False, error=str(exc)))
                continue
            results.append(self.transform_file(doc, entry))

        resolved = self.resolve_references(results)
        ok = [r for r in results if r.success and r.record is not None]
        stats = {
            "total": len(results),
            "successful": len(ok),
            "failed": len(results) - len(ok),
            "warnings": sum(len(r.warnings) for r in results),
            "by_type": dict(Counter(r.record.type for r in ok if r.record)),
            "total_content_size": sum(len(r.record.content) for r in ok if r.record),
            "references_resolved": resolved,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        }
        for r in results:
            if not r.success:
                logger.warning("transform failed for %s: %s", r.source, r.error)
        return BatchResult(results=results, stats=stats)

    @staticmethod
    def resolve_references(results: list[TransformResult]) -> int:
        """Turn dependency names into references to the records they name."""
        ok = [r for r in results if r.success and r.record is not None]
        resolved = 0
        for r in ok:
            record = r.record
            for dep in sorted(record.metadata.dependencies):
                name = dep.removeprefix("legacy-")
                for other in ok:
                    if other is r or other.record is None:
                        continue
                    if name and name in other.source:
                        if other.record.id not in record.relationships.references:
                            record.relationships.references.add(other.record.id)
                            resolved += 1
                        break
        return resolved
