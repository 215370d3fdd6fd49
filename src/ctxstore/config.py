"""CtxStoreConfig: project-local config for the context store.

Default layout (all relative to the project root):

    ctxstore.toml          # project config
    .ctxstore/
        contexts/          # authoritative record tree
            <hierarchy path>/<type>/<id>.json
        indexes/
            contexts.json  # path index: id -> summary
        locks/             # per-id lock files
        index.db           # SQLite secondary index (derived)
        migrations/        # per-migration backups, checkpoints, ledgers
        .gitignore         # auto-written: ignores index.db and locks/

ctxstore.toml example:

    [store]
    name = "my-project"
    # base_dir = ".ctxstore"

    [cache]
    max_entries = 100
    max_memory_mb = 500

    [migration]
    legacy_root = ".claude/context"
    checkpoint_interval = 10
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_CONFIG_FILENAME = "ctxstore.toml"
_DEFAULT_BASE_DIR = ".ctxstore"
_DEFAULT_LEGACY_ROOT = ".claude/context"
_DEFAULT_BACKUP_DIR = ".ctxstore/migrations"
_GITIGNORE_CONTENT = "index.db*\nlocks/\n"


@dataclass
class StoreConfig:
    lock_timeout: float = 5.0        # seconds to wait for a per-id lock
    sync_on_start: bool = True


@dataclass
class CacheConfig:
    max_entries: int = 100
    max_memory_mb: float = 500.0
    compression_threshold_kb: float = 1024.0
    default_ttl: float = 0.0         # seconds, 0 = no expiry
    cleanup_interval: float = 60.0
    compression_interval: float = 300.0
    target_retrieval_ms: float = 100.0
    target_memory_mb: float = 500.0
    target_hit_rate: float = 0.8
    memory_limit_mb: float = 0.0     # force_cleanup ceiling, 0 = total system memory

    @property
    def max_bytes(self) -> int:
        return int(self.max_memory_mb * 1024 * 1024)

    @property
    def compression_threshold(self) -> int:
        return int(self.compression_threshold_kb * 1024)


@dataclass
class MigrationConfig:
    legacy_root: Path = field(default_factory=Path)
    backup_dir: Path = field(default_factory=Path)
    enable_backup: bool = True
    enable_rollback: bool = True
    checkpoint_interval: int = 10    # checkpoint every K persisted records
    keep_checkpoints: int = 3
    batch_pause: float = 0.1         # seconds slept every 10 transformed records
    compress_content: bool = False
    max_content_size: int = 50_000
    preserve_timestamps: bool = True
    generate_ids: bool = False       # False: ids are legacy-<sanitized name>


@dataclass
class ValidationConfig:
    max_content_difference: float = 0.1
    strict: bool = False


@dataclass
class CtxStoreConfig:
    """Resolved configuration for a context store project."""

    root: Path                       # directory that contains ctxstore.toml
    name: str = ""
    base_dir: Path = field(default_factory=Path)
    store: StoreConfig = field(default_factory=StoreConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)

    @property
    def contexts_dir(self) -> Path:
        return self.base_dir / "contexts"

    @property
    def indexes_dir(self) -> Path:
        return self.base_dir / "indexes"

    @property
    def locks_dir(self) -> Path:
        return self.base_dir / "locks"

    @property
    def db_path(self) -> Path:
        return self.base_dir / "index.db"

    def ensure_dirs(self) -> None:
        """Create the store directories if they don't exist."""
        for d in (self.contexts_dir, self.indexes_dir, self.locks_dir):
            d.mkdir(parents=True, exist_ok=True)
        gitignore = self.base_dir / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text(_GITIGNORE_CONTENT)


def load_config(root: Path | str | None = None) -> CtxStoreConfig:
    """Load ctxstore.toml from root (or search upward from cwd if root is None)."""
    root_path = _find_root(Path(root) if root else Path.cwd())
    config_path = root_path / _CONFIG_FILENAME

    raw: dict[str, Any] = {}
    if config_path.exists():
        with config_path.open("rb") as f:
            raw = tomllib.load(f)
    return config_from_dict(root_path, raw)


def config_from_dict(root: Path, raw: dict[str, Any]) -> CtxStoreConfig:
    """Build a config from already-parsed TOML sections."""
    store_section = raw.get("store", {})
    cache_section = raw.get("cache", {})
    mig_section = raw.get("migration", {})
    val_section = raw.get("validation", {})

    return CtxStoreConfig(
        root=root,
        name=store_section.get("name", root.name) or "default",
        base_dir=root / store_section.get("base_dir", _DEFAULT_BASE_DIR),
        store=StoreConfig(
            lock_timeout=float(store_section.get("lock_timeout", 5.0)),
            sync_on_start=bool(store_section.get("sync_on_start", True)),
        ),
        cache=CacheConfig(
            max_entries=int(cache_section.get("max_entries", 100)),
            max_memory_mb=float(cache_section.get("max_memory_mb", 500.0)),
            compression_threshold_kb=float(cache_section.get("compression_threshold_kb", 1024.0)),
            default_ttl=float(cache_section.get("default_ttl", 0.0)),
            cleanup_interval=float(cache_section.get("cleanup_interval", 60.0)),
            compression_interval=float(cache_section.get("compression_interval", 300.0)),
            target_retrieval_ms=float(cache_section.get("target_retrieval_ms", 100.0)),
            target_memory_mb=float(cache_section.get("target_memory_mb", 500.0)),
            target_hit_rate=float(cache_section.get("target_hit_rate", 0.8)),
            memory_limit_mb=float(cache_section.get("memory_limit_mb", 0.0)),
        ),
        migration=MigrationConfig(
            legacy_root=root / mig_section.get("legacy_root", _DEFAULT_LEGACY_ROOT),
            backup_dir=root / mig_section.get("backup_dir", _DEFAULT_BACKUP_DIR),
            enable_backup=bool(mig_section.get("enable_backup", True)),
            enable_rollback=bool(mig_section.get("enable_rollback", True)),
            checkpoint_interval=max(1, int(mig_section.get("checkpoint_interval", 10))),
            keep_checkpoints=int(mig_section.get("keep_checkpoints", 3)),
            batch_pause=float(mig_section.get("batch_pause", 0.1)),
            compress_content=bool(mig_section.get("compress_content", False)),
            max_content_size=int(mig_section.get("max_content_size", 50_000)),
            preserve_timestamps=bool(mig_section.get("preserve_timestamps", True)),
            generate_ids=bool(mig_section.get("generate_ids", False)),
        ),
        validation=ValidationConfig(
            max_content_difference=float(val_section.get("max_content_difference", 0.1)),
            strict=bool(val_section.get("strict", False)),
        ),
    )


def _find_root(start: Path) -> Path:
    """Walk upward from start looking for ctxstore.toml."""
    for directory in (start, *start.parents):
        if (directory / _CONFIG_FILENAME).exists():
            return directory
    return start


def init_config(root: Path, name: str | None = None) -> Path:
    """Write a default ctxstore.toml at root. Raises if already exists."""
    config_path = root / _CONFIG_FILENAME
    if config_path.exists():
        msg = f"ctxstore.toml already exists at {config_path}"
        raise FileExistsError(msg)

    project_name = name or root.name
    content = f"""\
[store]
name = "{project_name}"     # also the root hierarchy segment for migrated records
# base_dir = ".ctxstore"
# lock_timeout = 5.0
# sync_on_start = true

# [cache]
# max_entries = 100
# max_memory_mb = 500
# compression_threshold_kb = 1024
# default_ttl = 0              # seconds, 0 = no expiry
# cleanup_interval = 60
# compression_interval = 300
# target_retrieval_ms = 100
# target_memory_mb = 500
# target_hit_rate = 0.8
# memory_limit_mb = 0          # force_cleanup ceiling, 0 = total system memory

# [migration]
# legacy_root = ".claude/context"
# backup_dir = ".ctxstore/migrations"
# enable_backup = true
# enable_rollback = true
# checkpoint_interval = 10
# keep_checkpoints = 3
# batch_pause = 0.1
# compress_content = false
# max_content_size = 50000
# preserve_timestamps = true
# generate_ids = false         # true: random UUIDs instead of legacy-<name> ids

# [validation]
# max_content_difference = 0.1
# strict = false
"""
    config_path.write_text(content)
    return config_path
