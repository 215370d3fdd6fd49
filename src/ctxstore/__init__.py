"""Hierarchical context store: JSON files as source of truth, SQLite as derived index.

Layout:
    .ctxstore/
        contexts/<hierarchy path>/<type>/<id>.json   # full records (authoritative)
        indexes/contexts.json                        # id -> summary path index
        index.db                                     # SQLite mirror (fully reconstructable)
        locks/                                       # per-id flock files
        migrations/<migration id>/                   # backups, checkpoints, rollback ledger

Writes go to the content tree first and are mirrored to SQLite best-effort;
ContextEngine.sync_storages() repairs any divergence. Legacy flat-file
context (.claude/context/*.md|json|txt) is imported by ContextEngine.migrate().
"""

from ctxstore.config import CtxStoreConfig, init_config, load_config
from ctxstore.engine import ContextEngine, Result
from ctxstore.models import ContextRecord, ListQuery, Metadata, RecordType, Relationships

__all__ = [
    "ContextEngine",
    "ContextRecord",
    "CtxStoreConfig",
    "ListQuery",
    "Metadata",
    "RecordType",
    "Relationships",
    "Result",
    "init_config",
    "load_config",
]
