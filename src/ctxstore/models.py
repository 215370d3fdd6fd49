"""Data models for context records."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class RecordType(StrEnum):
    PROJECT = "project"
    EPIC = "epic"
    TASK = "task"
    SESSION = "session"
    AGENT = "agent"


RECORD_TYPES = tuple(t.value for t in RecordType)


def new_record_id() -> str:
    return str(uuid.uuid4())


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class Metadata:
    agent_id: str | None = None
    tags: set[str] = field(default_factory=set)
    dependencies: set[str] = field(default_factory=set)
    retention_policy: str = "default"
    extra: dict[str, Any] = field(default_factory=dict)   # free-form provenance (e.g. legacy source)

    @classmethod
    def from_dict(cls, d: dict[str, Any] | None) -> Metadata:
        d = d or {}
        return cls(
            agent_id=d.get("agent_id"),
            tags=set(d.get("tags") or ()),
            dependencies=set(d.get("dependencies") or ()),
            retention_policy=d.get("retention_policy") or "default",
            extra=dict(d.get("extra") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "tags": sorted(self.tags),
            "dependencies": sorted(self.dependencies),
            "retention_policy": self.retention_policy,
            "extra": self.extra,
        }


@dataclass
class Relationships:
    parent: str | None = None
    children: set[str] = field(default_factory=set)
    references: set[str] = field(default_factory=set)

    @classmethod
    def from_dict(cls, d: dict[str, Any] | None) -> Relationships:
        d = d or {}
        return cls(
            parent=d.get("parent"),
            children=set(d.get("children") or ()),
            references=set(d.get("references") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "parent": self.parent,
            "children": sorted(self.children),
            "references": sorted(self.references),
        }


@dataclass
class ContextRecord:
    """A unit of stored context, located by its hierarchy path."""

    id: str
    type: str
    hierarchy: list[str]
    content: str = ""
    importance: int = 50
    created: str = ""
    updated: str = ""
    metadata: Metadata = field(default_factory=Metadata)
    relationships: Relationships = field(default_factory=Relationships)

    @property
    def hierarchy_path(self) -> str:
        return "/".join(self.hierarchy)

    @property
    def storage_key(self) -> str:
        return f"{self.hierarchy_path}/{self.type}/{self.id}"

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ContextRecord:
        return cls(
            id=d["id"],
            type=d.get("type", RecordType.TASK.value),
            hierarchy=list(d.get("hierarchy") or ()),
            content=d.get("content") or "",
            importance=int(d.get("importance", 50)),
            created=d.get("created", ""),
            updated=d.get("updated", ""),
            metadata=Metadata.from_dict(d.get("metadata")),
            relationships=Relationships.from_dict(d.get("relationships")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "hierarchy": list(self.hierarchy),
            "importance": self.importance,
            "created": self.created,
            "updated": self.updated,
            "content": self.content,
            "metadata": self.metadata.to_dict(),
            "relationships": self.relationships.to_dict(),
        }

    def summary(self) -> dict[str, Any]:
        """Index-friendly view: everything except the content blob."""
        d = self.to_dict()
        del d["content"]
        d["content_size"] = len(self.content)
        return d


# Sort columns accepted by list(); anything else falls back to "updated".
SORT_FIELDS = ("updated", "created", "importance", "type", "hierarchy_path", "id")


@dataclass
class ListQuery:
    """Filters for list() on either store."""

    type: str | None = None
    hierarchy: list[str] | str | None = None      # prefix, segment-aware
    importance_min: int | None = None
    importance_max: int | None = None
    agent_id: str | None = None
    tags: list[str] = field(default_factory=list)  # record must carry all of them
    sort_by: str = "updated"
    sort_order: str = "desc"
    limit: int = 100
    offset: int = 0
    include_content: bool = False

    @property
    def hierarchy_prefix(self) -> str | None:
        if self.hierarchy is None:
            return None
        if isinstance(self.hierarchy, str):
            return self.hierarchy.strip("/") or None
        return "/".join(self.hierarchy) or None

    @property
    def sort_field(self) -> str:
        return self.sort_by if self.sort_by in SORT_FIELDS else "updated"

    @property
    def descending(self) -> bool:
        return self.sort_order.lower() != "asc"

    def matches(self, record: ContextRecord) -> bool:
        if self.type and record.type != self.type:
            return False
        prefix = self.hierarchy_prefix
        if prefix and not path_has_prefix(record.hierarchy_path, prefix):
            return False
        if self.importance_min is not None and record.importance < self.importance_min:
            return False
        if self.importance_max is not None and record.importance > self.importance_max:
            return False
        if self.agent_id and record.metadata.agent_id != self.agent_id:
            return False
        return all(t in record.metadata.tags for t in self.tags)


def path_has_prefix(path: str, prefix: str) -> bool:
    """True when prefix names path itself or one of its ancestors."""
    return path == prefix or path.startswith(prefix + "/")


def sort_records(records: list[ContextRecord], query: ListQuery) -> list[ContextRecord]:
    key = query.sort_field
    return sorted(records, key=lambda r: getattr(r, key), reverse=query.descending)


def paginate(records: list[ContextRecord], query: ListQuery) -> list[ContextRecord]:
    return records[query.offset:query.offset + query.limit] if query.limit > 0 else records[query.offset:]


def metadata_matches(record: ContextRecord, text: str) -> bool:
    """Case-insensitive substring match over the indexed (non-content) fields."""
    needle = text.lower()
    haystack = [record.type, record.hierarchy_path, record.metadata.agent_id or ""]
    haystack.extend(record.metadata.tags)
    haystack.extend(record.hierarchy)
    return any(needle in h.lower() for h in haystack)


def by_relevance(records: list[ContextRecord]) -> list[ContextRecord]:
    """Search ordering: importance desc, then most recently updated."""
    return sorted(records, key=lambda r: (r.importance, r.updated), reverse=True)
