"""LegacyReader: discover and parse flat-file legacy context.

The legacy root is a single directory of markdown, JSON and text files
(default ``.claude/context``). Each file becomes one record; its category
is inferred from the filename, then from its title, and decides where the
record lands:

    category   hierarchy              record type
    project    <root>                 project
    progress   <root>/project         task
    tech       <root>/technical       task
    product    <root>/product         task
    style      <root>/development     task
    session    <root>/sessions        session
    agent      <root>/agents          agent
    generic    <root>/general         task

<root> is the store name from ctxstore.toml.
"""

from __future__ import annotations

import json
import re
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ctxstore.errors import CtxStoreError
from ctxstore.models import now_iso
from ctxstore.schema import storage_key

if TYPE_CHECKING:
    from collections.abc import Collection

MANIFEST_VERSION = "1.0.0"
LEGACY_FORMATS = {".md": "markdown", ".markdown": "markdown", ".json": "json", ".txt": "text"}
LARGE_FILE_BYTES = 100_000
LARGE_BATCH_FILES = 20
DEFAULT_STEPS = ("content_extraction", "metadata_generation", "relationship_mapping", "importance_calculation")

# Checked in order; first filename match wins.
TYPE_PATTERNS: dict[str, tuple[str, ...]] = {
    "project": ("project-brief", "project-overview", "project-vision"),
    "progress": ("progress", "status"),
    "tech": ("tech-context", "system-patterns", "project-structure"),
    "style": ("project-style-guide", "style-guide"),
    "product": ("product-context",),
    "session": ("session",),
    "agent": ("agent",),
}
_TITLE_HINTS = (("project", "project"), ("progress", "progress"), ("technical", "tech"), ("product", "product"))

HIERARCHY_MAP: dict[str, tuple[str, ...]] = {
    "project": (),
    "progress": ("project",),
    "tech": ("technical",),
    "product": ("product",),
    "style": ("development",),
    "session": ("sessions",),
    "agent": ("agents",),
    "generic": ("general",),
}
TYPE_MAP = {
    "project": "project",
    "progress": "task",
    "tech": "task",
    "product": "task",
    "style": "task",
    "session": "session",
    "agent": "agent",
    "generic": "task",
}

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+)$")
_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_MD_REF_RE = re.compile(r"([a-zA-Z-]+)\.md")
_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9]+")


class LegacyParseError(CtxStoreError):
    pass


# ---------------------------------------------------------------------------
# Parsed structures
# ---------------------------------------------------------------------------


@dataclass
class Section:
    level: int
    title: str
    lines: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(self.lines).strip()


@dataclass
class LegacyFile:
    path: Path
    name: str          # path relative to the legacy root
    format: str        # markdown | json | text
    size: int
    modified: str

    @property
    def stem(self) -> str:
        return self.path.stem


@dataclass
class LegacyDocument:
    file: LegacyFile
    context_type: str
    raw: str
    title: str | None = None
    sections: list[Section] = field(default_factory=list)
    data: Any = None   # parsed JSON for json files

    @property
    def format(self) -> str:
        return self.file.format


@dataclass
class DiscoveryResult:
    success: bool
    root: Path
    files: list[LegacyFile] = field(default_factory=list)
    error: str | None = None


@dataclass
class ManifestFile:
    source: str
    name: str
    legacy_type: str
    format: str
    size: int
    modified: str
    target_hierarchy: list[str]
    target_type: str
    record_id: str
    storage_key: str
    steps: list[str]


@dataclass
class Manifest:
    version: str
    timestamp: str
    source_root: str
    files: list[ManifestFile] = field(default_factory=list)
    mappings: list[dict[str, str]] = field(default_factory=list)
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    recommendations: list[dict[str, str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Manifest:
        return cls(
            version=d.get("version", MANIFEST_VERSION),
            timestamp=d.get("timestamp", ""),
            source_root=d.get("source_root", ""),
            files=[ManifestFile(**f) for f in d.get("files", [])],
            mappings=list(d.get("mappings", [])),
            conflicts=list(d.get("conflicts", [])),
            recommendations=list(d.get("recommendations", [])),
            warnings=list(d.get("warnings", [])),
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def legacy_record_id(name: str) -> str:
    """Deterministic record id for a legacy file: legacy-<sanitized relative path>."""
    return "legacy-" + _SANITIZE_RE.sub("-", name).strip("-")


def infer_context_type(filename: str, title: str | None = None) -> str:
    lowered = filename.lower()
    for ctx_type, patterns in TYPE_PATTERNS.items():
        if any(p in lowered for p in patterns):
            return ctx_type
    if title:
        lowered_title = title.lower()
        for hint, ctx_type in _TITLE_HINTS:
            if hint in lowered_title:
                return ctx_type
    return "generic"


def parse_markdown(raw: str) -> tuple[str | None, list[Section]]:
    """Split markdown into (title, sections). Headings inside fences are text."""
    title: str | None = None
    sections: list[Section] = []
    current = Section(level=0, title="")
    in_fence = False
    for line in raw.splitlines():
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            current.lines.append(line)
            continue
        m = None if in_fence else _HEADING_RE.match(line)
        if m is None:
            current.lines.append(line)
            continue
        level, heading = len(m.group(1)), m.group(2).strip()
        if level == 1 and title is None:
            title = heading
            continue
        if current.title or current.text:
            sections.append(current)
        current = Section(level=level, title=heading)
    if current.title or current.text:
        sections.append(current)
    return title, sections


def find_md_references(text: str) -> list[str]:
    return sorted(set(_MD_REF_RE.findall(text)))


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------


class LegacyReader:
    def __init__(
        self, legacy_root: Path | str, *, project: str = "project",
        steps: Collection[str] = DEFAULT_STEPS, known_steps: Collection[str] | None = None,
    ) -> None:
        self.root = Path(legacy_root)
        self.project = project
        self.steps = list(steps)
        self.known_steps = set(known_steps) if known_steps is not None else set(DEFAULT_STEPS)

    def discover(self) -> DiscoveryResult:
        """List legacy files (top level of the root, sorted by name)."""
        if not self.root.is_dir():
            return DiscoveryResult(success=False, root=self.root, error=f"No legacy data at {self.root}")
        files = []
        for path in sorted(self.root.iterdir()):
            fmt = LEGACY_FORMATS.get(path.suffix.lower())
            if fmt is None or not path.is_file():
                continue
            st = path.stat()
            files.append(LegacyFile(
                path=path,
                name=path.relative_to(self.root).as_posix(),
                format=fmt,
                size=st.st_size,
                modified=datetime.fromtimestamp(st.st_mtime, UTC).isoformat(),
            ))
        return DiscoveryResult(success=True, root=self.root, files=files)

    def parse_file(self, file: LegacyFile) -> LegacyDocument:
        try:
            raw = file.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            msg = f"Cannot read legacy file {file.path}: {exc}"
            raise LegacyParseError(msg) from exc

        title: str | None = None
        sections: list[Section] = []
        data: Any = None
        if file.format == "markdown":
            title, sections = parse_markdown(raw)
        elif file.format == "json":
            try:
                data = json.loads(raw)
            except json.JSONDecodeError as exc:
                msg = f"Invalid JSON in {file.path}: {exc}"
                raise LegacyParseError(msg) from exc
            if isinstance(data, dict):
                title = data.get("title") or data.get("name")
        return LegacyDocument(
            file=file,
            context_type=infer_context_type(file.path.name, title if isinstance(title, str) else None),
            raw=raw,
            title=title if isinstance(title, str) else None,
            sections=sections,
            data=data,
        )

    def parse_all(self) -> dict[str, Any]:
        """Parse every discovered file and summarize the set's structure."""
        discovery = self.discover()
        documents: list[LegacyDocument] = []
        errors: list[str] = []
        for f in discovery.files:
            try:
                documents.append(self.parse_file(f))
            except LegacyParseError as exc:
                errors.append(str(exc))

        stems = {d.file.stem for d in documents}
        references = {
            d.file.name: [r for r in find_md_references(d.raw) if r in stems and r != d.file.stem]
            for d in documents
        }
        structure = {
            "total_files": len(discovery.files),
            "total_size": sum(f.size for f in discovery.files),
            "by_type": dict(Counter(d.context_type for d in documents)),
            "by_format": dict(Counter(d.format for d in documents)),
            "references": {k: v for k, v in references.items() if v},
        }
        return {"success": discovery.success, "documents": documents, "errors": errors, "structure": structure}

    def target_for(self, context_type: str) -> tuple[list[str], str]:
        hierarchy = [self.project, *HIERARCHY_MAP.get(context_type, HIERARCHY_MAP["generic"])]
        return hierarchy, TYPE_MAP.get(context_type, "task")

    def generate_manifest(self) -> Manifest:
        discovery = self.discover()
        manifest = Manifest(version=MANIFEST_VERSION, timestamp=now_iso(), source_root=str(self.root))
        if not discovery.success:
            manifest.warnings.append(discovery.error or "no legacy data")
            return manifest

        unknown = [s for s in self.steps if s not in self.known_steps]
        if unknown:
            manifest.warnings.append(f"Unknown transformation steps will be skipped: {', '.join(unknown)}")

        by_key: dict[str, list[str]] = defaultdict(list)
        for f in discovery.files:
            try:
                ctx_type = self.parse_file(f).context_type
            except LegacyParseError as exc:
                manifest.warnings.append(str(exc))
                ctx_type = infer_context_type(f.path.name)
            hierarchy, record_type = self.target_for(ctx_type)
            record_id = legacy_record_id(f.name)
            key = storage_key(hierarchy, record_type, record_id)
            manifest.files.append(ManifestFile(
                source=str(f.path),
                name=f.name,
                legacy_type=ctx_type,
                format=f.format,
                size=f.size,
                modified=f.modified,
                target_hierarchy=hierarchy,
                target_type=record_type,
                record_id=record_id,
                storage_key=key,
                steps=list(self.steps),
            ))
            manifest.mappings.append({"source": str(f.path), "target": key})
            by_key[key].append(str(f.path))

        manifest.conflicts = [
            {"type": "storage_key_collision", "storage_key": key, "sources": sources}
            for key, sources in sorted(by_key.items())
            if len(sources) > 1
        ]
        manifest.recommendations = self._recommendations(manifest)
        return manifest

    def _recommendations(self, manifest: Manifest) -> list[dict[str, str]]:
        recs: list[dict[str, str]] = []
        if manifest.conflicts:
            recs.append({
                "type": "warning",
                "message": f"{len(manifest.conflicts)} storage key conflict(s) detected",
                "action": "Rename or merge the conflicting files before migrating",
            })
        large = [f.name for f in manifest.files if f.size > LARGE_FILE_BYTES]
        if large:
            recs.append({
                "type": "performance",
                "message": f"Large files may slow migration: {', '.join(large)}",
                "action": "Enable content compression or split the files",
            })
        if len(manifest.files) > LARGE_BATCH_FILES:
            recs.append({
                "type": "performance",
                "message": f"Large batch of {len(manifest.files)} files",
                "action": "Keep backup enabled and expect checkpoints during storage",
            })
        return recs


def manifest_legacy_file(entry: ManifestFile) -> LegacyFile:
    """Rebuild the LegacyFile a manifest entry was planned from."""
    return LegacyFile(
        path=Path(entry.source),
        name=entry.name,
        format=entry.format,
        size=entry.size,
        modified=entry.modified,
    )
