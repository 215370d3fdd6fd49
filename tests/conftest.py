from __future__ import annotations

import json
from pathlib import Path

import pytest

from ctxstore.config import CtxStoreConfig, config_from_dict
from ctxstore.coordinator import StorageCoordinator
from ctxstore.engine import ContextEngine
from ctxstore.index_store import IndexStore
from ctxstore.locks import LockRegistry
from ctxstore.primary import PrimaryStore

PROJECT_BRIEF = """\
# Project Brief

Acme builds widgets for the factory floor. #roadmap

## Goals
- Ship v1 of the widget API
- Keep the stack in tech-context.md boring
"""

TECH_CONTEXT = """\
# Technical Context

## Stack
Python services backed by SQLite.

```
# this is a shell comment, not a heading
make test
```

## Constraints
Single process, single writer.
"""

PROGRESS = """\
# Progress Report

## Done
- Storage layer

## Next
- Legacy migration, see project-brief.md
"""

SETTINGS = {"theme": "dark", "features": {"cache": True, "compression": False}}


def write_legacy_files(root: Path) -> Path:
    """The four-file legacy directory: brief, tech context, progress, settings."""
    root.mkdir(parents=True, exist_ok=True)
    (root / "project-brief.md").write_text(PROJECT_BRIEF)
    (root / "tech-context.md").write_text(TECH_CONTEXT)
    (root / "progress.md").write_text(PROGRESS)
    (root / "settings.json").write_text(json.dumps(SETTINGS))
    return root


@pytest.fixture
def cfg(tmp_path: Path) -> CtxStoreConfig:
    config = config_from_dict(tmp_path, {
        "store": {"name": "acme", "lock_timeout": 2.0},
        "cache": {"cleanup_interval": 0, "compression_interval": 0},
        "migration": {"batch_pause": 0},
    })
    config.ensure_dirs()
    return config


@pytest.fixture
def make_legacy():
    return write_legacy_files


@pytest.fixture
def legacy_dir(cfg: CtxStoreConfig) -> Path:
    return write_legacy_files(cfg.migration.legacy_root)


@pytest.fixture
def primary(cfg: CtxStoreConfig) -> PrimaryStore:
    store = PrimaryStore(cfg.base_dir, LockRegistry(cfg.locks_dir, timeout=2.0))
    store.initialize()
    return store


@pytest.fixture
def index(cfg: CtxStoreConfig) -> IndexStore:
    store = IndexStore(cfg.db_path)
    store.initialize()
    return store


@pytest.fixture
def coordinator(primary: PrimaryStore, index: IndexStore) -> StorageCoordinator:
    coord = StorageCoordinator(primary, index)
    coord.initialize()
    return coord


@pytest.fixture
def engine(cfg: CtxStoreConfig):
    eng = ContextEngine(cfg, memory_probe=lambda: 0.1)
    eng.start()
    yield eng
    eng.stop()
