"""ctxstore CLI: hierarchical context store with a SQLite index.

Commands:
    ctxstore init [NAME]            create ctxstore.toml + .ctxstore/ dirs
    ctxstore add TYPE PATH TEXT     create a context record
    ctxstore show ID                print a record
    ctxstore update ID              patch a record
    ctxstore delete ID              delete a record
    ctxstore ls                     list records (filters: --type, --under, --tag, ...)
    ctxstore search QUERY           substring search over indexed fields
    ctxstore sync                   repair the index from the content tree
    ctxstore reindex                drop and rebuild the index
    ctxstore analyze                dry-run a legacy migration
    ctxstore migrate                import legacy context files
    ctxstore rollback MIGRATION_ID  undo a migration
    ctxstore status                 counts, health and index location
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import click

from ctxstore.config import CtxStoreConfig, init_config, load_config
from ctxstore.engine import ContextEngine, Result
from ctxstore.models import RECORD_TYPES, ListQuery
from ctxstore.schema import parse_hierarchy_path

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_cfg() -> CtxStoreConfig:
    try:
        return load_config()
    except Exception as exc:
        raise click.ClickException(str(exc)) from exc


def _engine() -> ContextEngine:
    return ContextEngine(_load_cfg())


def _check(result: Result) -> Any:
    if not result.success:
        detail = "; ".join(e for e in result.errors if e != result.message)
        raise click.ClickException(f"{result.message}{': ' + detail if detail else ''}")
    return result.data


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _short(record: dict[str, Any]) -> str:
    path = "/".join(record["hierarchy"])
    tags = ",".join(record["metadata"].get("tags", []))
    return f"{record['id']}  [{record['type']}] {path}  imp={record['importance']}  {tags}"


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="ctxstore")
@click.option("--verbose", "-v", is_flag=True, help="Log progress to stderr")
def cli(verbose: bool) -> None:
    """ctxstore — hierarchical context storage and legacy migration."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(message)s",
    )


# ---------------------------------------------------------------------------
# ctxstore init
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("name", required=False)
@click.option("--dir", "root", default=".", show_default=True, help="Project root")
def init(name: str | None, root: str) -> None:
    """Create ctxstore.toml and the .ctxstore/ directories."""
    root_path = Path(root).resolve()
    try:
        config_path = init_config(root_path, name)
    except FileExistsError as exc:
        raise click.ClickException(str(exc)) from exc
    cfg = load_config(root_path)
    cfg.ensure_dirs()
    click.echo(f"Created {config_path}")
    click.echo(f"  contexts: {cfg.contexts_dir}")
    click.echo(f"  index:    {cfg.db_path}")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("record_type", type=click.Choice(RECORD_TYPES))
@click.argument("path")
@click.argument("text")
@click.option("--importance", "-i", default=50, show_default=True, type=click.IntRange(0, 100))
@click.option("--tag", "-t", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--parent", default=None, help="Parent record id")
@click.option("--agent", default=None, help="Agent id recorded in metadata")
def add(
    record_type: str, path: str, text: str, importance: int,
    tags: tuple[str, ...], parent: str | None, agent: str | None,
) -> None:
    """Create a record of TYPE at hierarchy PATH (e.g. app/backend)."""
    data = _check(_engine().create({
        "type": record_type,
        "hierarchy": parse_hierarchy_path(path),
        "content": text,
        "importance": importance,
        "metadata": {"agent_id": agent, "tags": list(tags)},
        "relationships": {"parent": parent},
    }))
    click.echo(data["id"])


@cli.command()
@click.argument("record_id")
@click.option("--json", "as_json", is_flag=True, help="Print the raw record")
def show(record_id: str, as_json: bool) -> None:
    """Print a record."""
    record = _check(_engine().read(record_id))
    if as_json:
        _echo_json(record)
        return
    click.echo(_short(record))
    rel = record["relationships"]
    if rel.get("parent"):
        click.echo(f"  parent:   {rel['parent']}")
    if rel.get("children"):
        click.echo(f"  children: {', '.join(rel['children'])}")
    if rel.get("references"):
        click.echo(f"  refs:     {', '.join(rel['references'])}")
    click.echo(f"  updated:  {record['updated']}")
    click.echo("")
    click.echo(record["content"])


@cli.command()
@click.argument("record_id")
@click.option("--text", default=None, help="Replace the content")
@click.option("--path", default=None, help="Move to a new hierarchy path")
@click.option("--importance", "-i", default=None, type=click.IntRange(0, 100))
@click.option("--tag", "-t", "tags", multiple=True, help="Replace tags (repeatable)")
@click.option("--parent", default=None, help="New parent record id")
def update(
    record_id: str, text: str | None, path: str | None, importance: int | None,
    tags: tuple[str, ...], parent: str | None,
) -> None:
    """Patch a record; unspecified fields are kept."""
    patch: dict[str, Any] = {}
    if text is not None:
        patch["content"] = text
    if path is not None:
        patch["hierarchy"] = parse_hierarchy_path(path)
    if importance is not None:
        patch["importance"] = importance
    if tags:
        patch["metadata"] = {"tags": list(tags)}
    if parent is not None:
        patch["relationships"] = {"parent": parent or None}
    record = _check(_engine().update(record_id, patch))
    click.echo(_short(record))


@cli.command()
@click.argument("record_id")
def delete(record_id: str) -> None:
    """Delete a record (a missing record is not an error)."""
    result = _engine().delete(record_id)
    _check(result)
    click.echo(result.message)


@cli.command("ls")
@click.option("--type", "record_type", default=None, type=click.Choice(RECORD_TYPES))
@click.option("--under", default=None, help="Hierarchy prefix, e.g. app/backend")
@click.option("--tag", "-t", "tags", multiple=True, help="Require tag (repeatable)")
@click.option("--agent", default=None)
@click.option("--min-importance", default=None, type=int)
@click.option("--sort", "sort_by", default="updated", show_default=True,
              type=click.Choice(["updated", "created", "importance", "type", "hierarchy_path", "id"]))
@click.option("--asc", is_flag=True, help="Ascending order")
@click.option("--limit", "-l", default=20, show_default=True)
@click.option("--offset", "-o", default=0, show_default=True)
def ls_cmd(
    record_type: str | None, under: str | None, tags: tuple[str, ...], agent: str | None,
    min_importance: int | None, sort_by: str, asc: bool, limit: int, offset: int,
) -> None:
    """List records."""
    query = ListQuery(
        type=record_type, hierarchy=under, tags=list(tags), agent_id=agent,
        importance_min=min_importance, sort_by=sort_by, sort_order="asc" if asc else "desc",
        limit=limit, offset=offset,
    )
    records = _check(_engine().list(query))
    if not records:
        click.echo("No contexts.")
    for r in records:
        click.echo(_short(r))


@cli.command()
@click.argument("query")
@click.option("--limit", "-l", default=20, show_default=True)
def search(query: str, limit: int) -> None:
    """Search type, hierarchy, agent and tags."""
    records = _check(_engine().search(query, limit=limit))
    if not records:
        click.echo(f"No matches for {query!r}.")
    for r in records:
        click.echo(_short(r))


# ---------------------------------------------------------------------------
# Index maintenance
# ---------------------------------------------------------------------------


@cli.command()
def sync() -> None:
    """Bring the index in line with the content tree."""
    report = _check(_engine().sync_storages())
    click.echo(
        f"created={report['created']} updated={report['updated']} "
        f"removed={report['removed']} unchanged={report['unchanged']}"
    )


@cli.command()
def reindex() -> None:
    """Drop the SQLite index and rebuild it from the content tree."""
    report = _check(_engine().rebuild_index())
    click.echo(f"Indexed {report['synced']} contexts")


@cli.command()
@click.option("--since", default=None, help="ISO timestamp lower bound for access stats")
def analytics(since: str | None) -> None:
    """Access-log analytics from the index."""
    _echo_json(_check(_engine().analytics(since)))


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print the full analysis")
def analyze(as_json: bool) -> None:
    """Dry-run the legacy migration and print the plan."""
    data = _check(_engine().analyze())
    if as_json:
        _echo_json(data)
        return
    manifest = data["manifest"]
    click.echo(f"Legacy root: {manifest['source_root']}")
    for f in manifest["files"]:
        click.echo(f"  {f['name']:<30} {f['legacy_type']:<9} -> {f['storage_key']}")
    for c in manifest["conflicts"]:
        click.echo(f"  conflict {c['storage_key']}: {', '.join(c['sources'])}")
    cx = data["complexity"]
    click.echo(f"Complexity: {cx['level']} (~{cx['estimated_seconds']}s)")
    for rec in data["recommendations"]:
        click.echo(f"  - {rec}")


@cli.command()
@click.option("--no-backup", is_flag=True, help="Skip copying legacy files before migrating")
def migrate(no_backup: bool) -> None:
    """Import legacy context files into the store."""
    engine = _engine()
    if no_backup:
        engine.config.migration.enable_backup = False

    def _progress(status: dict[str, Any]) -> None:
        click.echo(f"  [{status['progress']['percentage']:5.1f}%] {status['state']}", err=True)

    result = engine.migrate(on_progress=_progress)
    data = result.data or {}
    for w in data.get("warnings", []):
        click.echo(f"warning: {w}", err=True)
    _check(result)
    click.echo(result.message)
    click.echo(f"Roll back with: ctxstore rollback {data['migration_id']}")


@cli.command()
@click.argument("migration_id")
def rollback(migration_id: str) -> None:
    """Delete the records a migration created and restore its backup."""
    result = _engine().rollback(migration_id)
    for w in result.errors:
        click.echo(f"warning: {w}", err=True)
    if result.data is None:
        _check(result)
    click.echo(result.message)


# ---------------------------------------------------------------------------
# ctxstore status
# ---------------------------------------------------------------------------


@cli.command()
def status() -> None:
    """Show record counts, storage health and index location."""
    from rich.console import Console
    from rich.table import Table

    cfg = _load_cfg()
    engine = ContextEngine(cfg)
    console = Console()

    table = Table(title=f"ctxstore — {cfg.name}", show_header=True, header_style="bold")
    table.add_column("Metric", style="dim", no_wrap=True)
    table.add_column("Value", justify="right")

    table.add_row("Config", str(cfg.root / "ctxstore.toml"))
    table.add_row("Contexts", str(cfg.contexts_dir))
    table.add_row("", "")

    stats = _check(engine.stats())["storage"]
    table.add_row("Records", str(stats["primary_records"]))
    indexed = stats["index_records"]
    if indexed is None:
        table.add_row("Indexed", "[red]index unavailable[/red]")
    elif stats["in_sync"]:
        table.add_row("Indexed", f"[green]{indexed}[/green]")
    else:
        table.add_row("Indexed", f"[yellow]{indexed} — run `ctxstore sync`[/yellow]")

    health = engine.health_check().data or {}
    overall = health.get("overall", "unknown")
    color = {"healthy": "green", "degraded": "yellow"}.get(overall, "red")
    table.add_row("Health", f"[{color}]{overall}[/{color}]")

    if cfg.db_path.exists():
        size_mb = cfg.db_path.stat().st_size / 1_000_000
        table.add_row("Index", f"{cfg.db_path}  [{size_mb:.1f} MB]")

    by_type = (engine.analytics().data or {}).get("contexts_by_type", {})
    if by_type:
        table.add_row("", "")
        for rtype, n in sorted(by_type.items()):
            table.add_row(f"  {rtype}", str(n))

    legacy = cfg.migration.legacy_root
    table.add_row("", "")
    table.add_row("Legacy root", str(legacy) if legacy.is_dir() else f"[dim]{legacy} (absent)[/dim]")
    console.print(table)
