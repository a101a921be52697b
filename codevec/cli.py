"""
Command-line interface for inspecting and maintaining persisted vector stores.
"""

import json
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from .config import CodevecConfig, DEFAULT_CONFIG_NAME, STORAGE_MODES, create_default_config_file
from .errors import CodevecError
from .utils.logging_setup import setup_logging
from .vector_db.persistence import (
    EXPORT_FORMATS,
    cleanup_old_backups,
    create_backup,
    export_store,
    list_backups,
)
from .vector_db.providers import HashingEmbeddingProvider, TokenOverlapReranker
from .vector_db.semantic_search import SearchQuery, SemanticSearchPipeline
from .vector_db.types import CodeMetadata, CodeType, VectorEntry
from .vector_db.vector_store import VectorStore


console = Console()


def _fail(message: str) -> None:
    console.print(f"[red]✗ {message}[/red]")
    sys.exit(1)


def _load(path: str) -> VectorStore:
    try:
        return VectorStore.load(path)
    except FileNotFoundError as e:
        _fail(str(e))
    except CodevecError as e:
        _fail(e.message)


@click.group()
@click.option("--config", "config_path", type=click.Path(), default=None,
              help=f"Configuration file (default: {DEFAULT_CONFIG_NAME})")
@click.option("--log-level", default="WARNING",
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def main(ctx, config_path, log_level):
    """Inspect and maintain codevec vector stores."""
    setup_logging(level=log_level)
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = CodevecConfig.load_or_default(config_path)
    except CodevecError as e:
        _fail(f"Invalid configuration: {e.message}")


@main.command()
@click.argument("path", type=click.Path())
@click.option("--dimension", type=int, default=None, help="Embedding dimension")
@click.option("--mode", type=click.Choice(STORAGE_MODES), default=None, help="Storage mode")
@click.pass_context
def init(ctx, path, dimension, mode):
    """Create an empty store at PATH."""
    config: CodevecConfig = ctx.obj["config"]
    if dimension is not None:
        config.store.dimension = dimension
    if mode is not None:
        config.store.storage_mode = mode
    try:
        config.validate()
        store = VectorStore.from_config(config)
        store.save(path)
    except CodevecError as e:
        _fail(e.message)
    console.print(f"[green]✓ Created store at {path} "
                  f"(dimension {config.store.dimension}, {config.store.storage_mode})[/green]")


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.argument("entry_id")
@click.option("--text", required=True, help="Code text to embed with the hashing provider")
@click.option("--file-path", default="", help="Source file of the fragment")
@click.option("--language", default="unknown")
@click.option("--code-type", type=click.Choice([t.value for t in CodeType]), default="function")
@click.option("--function-name", default=None)
def add(path, entry_id, text, file_path, language, code_type, function_name):
    """Embed TEXT locally and add it to the store under ENTRY_ID."""
    store = _load(path)
    provider = HashingEmbeddingProvider(store.dimension)
    metadata = CodeMetadata(
        file_path=file_path,
        function_name=function_name,
        code_type=CodeType(code_type),
        language=language,
        tokens=text.split(),
    )
    try:
        store.add_vector(VectorEntry(entry_id, provider.embed(text), metadata))
        store.save(path)
    except CodevecError as e:
        _fail(e.message)
    console.print(f"[green]✓ Added {entry_id}[/green]")


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def stats(path, as_json):
    """Show statistics for the store at PATH."""
    store = _load(path)
    data = store.stats().to_dict()
    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
        return

    table = Table(title=f"Vector store: {path}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    for key in ("entry_count", "total_files", "dimension", "storage_mode", "memory_bytes",
                "index_size_estimate_bytes", "codebooks"):
        table.add_row(key, str(data[key]))
    table.add_row("average_similarity", f"{data['average_similarity']:.4f}")
    lsh = data["lsh"]
    table.add_row("lsh_tables", f"{lsh['num_tables']} x {lsh['hash_bits']} bits")
    table.add_row("lsh_non_empty_buckets", str(lsh["non_empty_buckets"]))
    table.add_row("lsh_avg_bucket", f"{lsh['average_bucket_size']:.2f}")
    for key in ("by_language", "by_code_type", "by_storage_mode"):
        if data[key]:
            table.add_row(key, ", ".join(f"{k}={v}" for k, v in sorted(data[key].items())))
    console.print(table)


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.argument("entry_id")
def show(path, entry_id):
    """Show one entry's metadata."""
    store = _load(path)
    entry = store.get_or_none(entry_id)
    if entry is None:
        _fail(f"Unknown entry id: {entry_id}")
    metadata = entry.metadata.to_dict() if isinstance(entry.metadata, CodeMetadata) else entry.metadata
    console.print(f"[bold]{entry.id}[/bold] (dimension {entry.dimension})")
    console.print(f"  created: {entry.created_at.isoformat()}")
    console.print(f"  accessed: {entry.access_count} times")
    click.echo(json.dumps(metadata, indent=2, default=str))


@main.command()
@click.argument("path", type=click.Path(exists=True))
def verify(path):
    """Check that entries, LSH tables and codebooks agree."""
    store = _load(path)
    problems = store.verify_consistency()
    if problems:
        for problem in problems:
            console.print(f"[red]  {problem}[/red]")
        _fail(f"{len(problems)} consistency problems")
    console.print(f"[green]✓ {len(store)} entries consistent[/green]")


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.argument("entry_id")
def remove(path, entry_id):
    """Remove ENTRY_ID from the store and save it."""
    store = _load(path)
    if not store.remove_vector(entry_id):
        _fail(f"Unknown entry id: {entry_id}")
    store.save(path)
    console.print(f"[green]✓ Removed {entry_id}[/green]")


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--text", default=None, help="Query text (embedded with the hashing provider)")
@click.option("--vector-json", default=None, help="Query embedding as a JSON list")
@click.option("--limit", type=int, default=10)
@click.option("--language", default=None, help="Only return entries in this language")
@click.option("--rerank", is_flag=True, help="Rerank text queries by token overlap")
@click.pass_context
def search(ctx, path, text, vector_json, limit, language, rerank):
    """Search the store by text or by raw embedding."""
    if (text is None) == (vector_json is None):
        _fail("Give exactly one of --text or --vector-json")
    store = _load(path)

    table = Table(title="Results")
    table.add_column("#", justify="right")
    table.add_column("id", style="cyan")
    table.add_column("score", justify="right", style="green")

    try:
        if vector_json is not None:
            try:
                query = json.loads(vector_json)
            except json.JSONDecodeError as e:
                _fail(f"--vector-json is not valid JSON: {e}")
            for rank, hit in enumerate(store.search(query, limit=limit), 1):
                table.add_row(str(rank), hit.id, f"{hit.score:.4f}")
        else:
            config = ctx.obj["config"].search
            config.final_results = limit
            config.min_similarity = -1.0
            pipeline = SemanticSearchPipeline(
                store,
                HashingEmbeddingProvider(store.dimension),
                TokenOverlapReranker() if rerank else None,
                config,
            )
            hits = pipeline.search(SearchQuery(text=text, language=language, max_results=limit))
            for rank, hit in enumerate(hits, 1):
                table.add_row(str(rank), hit.id, f"{hit.combined_score:.4f}")
    except CodevecError as e:
        _fail(e.message)
    console.print(table)


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--mode", type=click.Choice(STORAGE_MODES), required=True)
@click.option("--output", type=click.Path(), default=None, help="Write here instead of PATH")
def convert(path, mode, output):
    """Re-encode every entry into another storage mode."""
    store = _load(path)
    try:
        changed = store.convert_storage(mode)
        store.save(output or path)
    except CodevecError as e:
        _fail(e.message)
    console.print(f"[green]✓ Converted {changed} entries to {mode}[/green]")


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.argument("output", type=click.Path())
@click.option("--format", "fmt", type=click.Choice(EXPORT_FORMATS), default=None,
              help="Export format (default: OUTPUT suffix)")
def export(path, output, fmt):
    """Export store statistics (json) or entry metadata (csv) to OUTPUT."""
    store = _load(path)
    try:
        export_store(store, output, fmt)
    except CodevecError as e:
        _fail(e.message)
    console.print(f"[green]✓ Exported {len(store)} entries to {output}[/green]")


def _backup_dir(path: str, backup_dir) -> Path:
    return Path(backup_dir) if backup_dir else Path(path).parent / "backups"


@main.group()
def backup():
    """Create, list and prune store backups."""
    pass


@backup.command(name="create")
@click.argument("path", type=click.Path(exists=True))
@click.option("--dir", "backup_dir", type=click.Path(), default=None,
              help="Backup directory (default: backups/ next to PATH)")
@click.option("--name", default=None, help="Backup name (default: timestamp)")
def backup_create(path, backup_dir, name):
    """Back up the store at PATH."""
    store = _load(path)
    try:
        info = create_backup(store, _backup_dir(path, backup_dir), name)
    except CodevecError as e:
        _fail(e.message)
    console.print(f"[green]✓ Created backup {info.name} ({len(store)} entries)[/green]")


@backup.command(name="list")
@click.argument("backup_dir", type=click.Path())
def backup_list(backup_dir):
    """List backups in BACKUP_DIR, newest first."""
    backups = list_backups(backup_dir)
    if not backups:
        console.print("[yellow]No backups found[/yellow]")
        return
    table = Table(title=f"Backups: {backup_dir}")
    table.add_column("name", style="cyan")
    table.add_column("created", style="green")
    table.add_column("entries", justify="right")
    for info in backups:
        table.add_row(info.name, info.created_at.isoformat(timespec="seconds"),
                      str(info.stats.get("entry_count", "?")))
    console.print(table)


@backup.command(name="cleanup")
@click.argument("backup_dir", type=click.Path())
@click.option("--keep-days", type=int, required=True, help="Keep backups newer than this")
def backup_cleanup(backup_dir, keep_days):
    """Delete backups older than --keep-days."""
    try:
        removed = cleanup_old_backups(backup_dir, keep_days)
    except CodevecError as e:
        _fail(e.message)
    console.print(f"[green]✓ Removed {len(removed)} backups[/green]")


@main.group(name="config")
def config_group():
    """Manage codevec configuration."""
    pass


@config_group.command(name="init")
@click.option("--path", type=click.Path(), default=DEFAULT_CONFIG_NAME, help="Path for config file")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def config_init(path, force):
    """Write the default configuration file."""
    config_path = Path(path)
    if config_path.exists() and not force:
        if not click.confirm(f"Config file {path} already exists. Overwrite?"):
            console.print("[yellow]Aborted[/yellow]")
            return
    create_default_config_file(config_path)
    console.print(f"[green]✓ Created config file at {path}[/green]")


@config_group.command(name="show")
@click.pass_context
def config_show(ctx):
    """Print the effective configuration (file + environment)."""
    config: CodevecConfig = ctx.obj["config"]
    click.echo(json.dumps(config.to_dict(), indent=2))


if __name__ == "__main__":
    main()
