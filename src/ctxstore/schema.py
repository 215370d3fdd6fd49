"""Record schema: validation, normalization and patch merging.

Everything that enters a store goes through prepare_new() or apply_patch(),
both of which return a fully-populated ContextRecord or raise
ValidationError listing every problem found.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Any

from ctxstore.errors import ValidationError
from ctxstore.models import RECORD_TYPES, ContextRecord, new_record_id, now_iso

MAX_HIERARCHY_DEPTH = 5
_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_SET_FIELDS_META = ("tags", "dependencies")
_SET_FIELDS_REL = ("children", "references")


# ---------------------------------------------------------------------------
# Hierarchy helpers
# ---------------------------------------------------------------------------


def hierarchy_path(hierarchy: list[str]) -> str:
    return "/".join(hierarchy)


def parse_hierarchy_path(path: str) -> list[str]:
    return [seg for seg in path.split("/") if seg]


def is_valid_id(value: object) -> bool:
    return isinstance(value, str) and _ID_RE.match(value) is not None


def storage_key(hierarchy: list[str], record_type: str, record_id: str) -> str:
    """Deterministic key: <hierarchy path>/<type>/<id>."""
    return f"{hierarchy_path(hierarchy)}/{record_type}/{record_id}"


def clamp_importance(value: float) -> int:
    return max(0, min(100, int(round(value))))


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _is_str_collection(value: Any) -> bool:
    return isinstance(value, list | tuple | set | frozenset) and all(isinstance(v, str) for v in value)


def validate(data: dict[str, Any]) -> list[str]:
    """Return a list of schema violations (empty when valid)."""
    errors: list[str] = []

    rid = data.get("id")
    if not is_valid_id(rid):
        errors.append(f"id must match {_ID_RE.pattern}: {rid!r}")

    rtype = data.get("type")
    if rtype not in RECORD_TYPES:
        errors.append(f"type must be one of {', '.join(RECORD_TYPES)}: {rtype!r}")

    hierarchy = data.get("hierarchy")
    if not isinstance(hierarchy, list | tuple) or not hierarchy:
        errors.append("hierarchy must be a non-empty list of strings")
    else:
        if len(hierarchy) > MAX_HIERARCHY_DEPTH:
            errors.append(f"hierarchy depth {len(hierarchy)} exceeds {MAX_HIERARCHY_DEPTH}")
        for i, seg in enumerate(hierarchy):
            if not isinstance(seg, str) or not seg.strip():
                errors.append(f"hierarchy[{i}] must be a non-empty string")
            elif "/" in seg or "\\" in seg or seg in (".", ".."):
                errors.append(f"hierarchy[{i}] is not a valid path segment: {seg!r}")

    importance = data.get("importance", 50)
    if isinstance(importance, bool) or not isinstance(importance, int | float):
        errors.append(f"importance must be a number: {importance!r}")

    content = data.get("content", "")
    if not isinstance(content, str):
        errors.append("content must be a string")

    meta = data.get("metadata")
    if meta is not None:
        if not isinstance(meta, dict):
            errors.append("metadata must be an object")
        else:
            agent = meta.get("agent_id")
            if agent is not None and not isinstance(agent, str):
                errors.append("metadata.agent_id must be a string")
            for name in _SET_FIELDS_META:
                if name in meta and not _is_str_collection(meta[name]):
                    errors.append(f"metadata.{name} must be a list of strings")
            retention = meta.get("retention_policy")
            if retention is not None and not isinstance(retention, str):
                errors.append("metadata.retention_policy must be a string")
            if "extra" in meta and not isinstance(meta["extra"], dict):
                errors.append("metadata.extra must be an object")

    rels = data.get("relationships")
    if rels is not None:
        if not isinstance(rels, dict):
            errors.append("relationships must be an object")
        else:
            parent = rels.get("parent")
            if parent is not None and not isinstance(parent, str):
                errors.append("relationships.parent must be a string")
            if parent is not None and parent == rid:
                errors.append("relationships.parent cannot reference the record itself")
            for name in _SET_FIELDS_REL:
                if name in rels and not _is_str_collection(rels[name]):
                    errors.append(f"relationships.{name} must be a list of strings")

    return errors


def _require_valid(data: dict[str, Any]) -> None:
    errors = validate(data)
    if errors:
        raise ValidationError(errors)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def _next_timestamp(previous: str) -> str:
    """Current time, bumped past previous so updates strictly advance."""
    now = now_iso()
    if not previous:
        return now
    try:
        prev_dt = datetime.fromisoformat(previous)
    except ValueError:
        return now
    if datetime.fromisoformat(now) <= prev_dt:
        return (prev_dt + timedelta(microseconds=1)).isoformat()
    return now


def prepare_new(data: dict[str, Any], *, keep_timestamps: bool = False) -> ContextRecord:
    """Validate incoming data and return a record ready for create().

    Assigns an id if absent. Timestamps are server-assigned unless
    keep_timestamps is set (migration preserving legacy mtimes).
    """
    data = dict(data)
    data.setdefault("id", new_record_id())
    data.setdefault("importance", 50)
    _require_valid(data)

    record = ContextRecord.from_dict({**data, "importance": clamp_importance(data["importance"])})
    record.hierarchy = [seg.strip() for seg in record.hierarchy]
    now = now_iso()
    if not (keep_timestamps and record.created):
        record.created = now
    if not (keep_timestamps and record.updated):
        record.updated = record.created if keep_timestamps else now
    return record


def apply_patch(existing: ContextRecord, patch: dict[str, Any]) -> ContextRecord:
    """Merge a partial patch into existing and re-validate.

    Top-level fields are replaced; metadata and relationships merge one
    level deep. id and created are immutable. updated always advances.
    """
    if "id" in patch and patch["id"] != existing.id:
        msg = f"id is immutable (got {patch['id']!r}, record is {existing.id!r})"
        raise ValidationError(msg)

    merged = existing.to_dict()
    for key, value in patch.items():
        if key in ("id", "created", "updated"):
            continue
        if key in ("metadata", "relationships") and isinstance(value, dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value

    _require_valid(merged)
    merged["importance"] = clamp_importance(merged["importance"])
    merged["hierarchy"] = [seg.strip() for seg in merged["hierarchy"]]
    merged["updated"] = _next_timestamp(existing.updated)
    return ContextRecord.from_dict(merged)
