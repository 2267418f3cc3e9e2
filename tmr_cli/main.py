from __future__ import annotations

import json
from pathlib import Path

import typer
import yaml

from tmr_core.config import load_config, write_config
from tmr_core.constants import DEFAULT_CONFIG_FILENAME, DEFAULT_DB_FILENAME
from tmr_core.db.schema import initialize_database
from tmr_core.jobs.progress import GenerationProgress, GenerationStatus
from tmr_core.logging_setup import configure_logging
from tmr_core.secret_store import OPENAI_API_KEY, mask_secret_value, set_secret
from tmr_core.service import TranslationMemoryService, open_service
from tmr_core.vector.store import VectorStoreConfigurationError

app = typer.Typer(help="tm-retrieval hybrid translation-memory CLI")

DB_OPTION = typer.Option(
    Path(DEFAULT_DB_FILENAME),
    "--db",
    help="SQLite database path.",
    dir_okay=False,
    resolve_path=False,
)
CONFIG_OPTION = typer.Option(
    None,
    "--config",
    help=f"YAML config path. Defaults to ./{DEFAULT_CONFIG_FILENAME} when present.",
    dir_okay=False,
    resolve_path=False,
)


@app.callback()
def main_callback(
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        help="Enable logging at this level (DEBUG, INFO, WARNING).",
    ),
) -> None:
    if log_level:
        try:
            configure_logging(log_level)
        except ValueError as exc:
            typer.secho(str(exc), fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1) from exc


def _resolve_config_path(config_path: Path | None) -> Path | None:
    if config_path is not None:
        return config_path
    default_path = Path(DEFAULT_CONFIG_FILENAME)
    return default_path if default_path.exists() else None


def _open(db_path: Path, config_path: Path | None) -> TranslationMemoryService:
    try:
        config = load_config(_resolve_config_path(config_path))
    except (ValueError, yaml.YAMLError) as exc:
        typer.secho(f"Invalid config: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    return open_service(db_path, config, start_sweeper=False)


def _format_progress(progress: GenerationProgress) -> str:
    return (
        f"[{progress.status.value}] {progress.processed}/{progress.total} processed "
        f"({progress.succeeded} succeeded, {progress.failed} failed)"
    )


@app.command("init-db")
def init_db_command(
    db_path: Path = DB_OPTION,
    config_path: Path | None = typer.Option(
        None,
        "--write-config",
        help="Also write a default YAML config to this path if it does not exist.",
        dir_okay=False,
        resolve_path=False,
    ),
) -> None:
    """Create or migrate the TM database."""

    engine = initialize_database(db_path)
    engine.dispose()
    typer.echo(f"Database ready: {db_path}")

    if config_path is not None:
        if config_path.exists():
            typer.echo(f"Config already exists: {config_path}")
        else:
            write_config(config_path, load_config(None))
            typer.echo(f"Config written: {config_path}")


@app.command("add-entry")
def add_entry_command(
    source_text: str = typer.Argument(..., help="Source text."),
    target_text: str = typer.Argument(..., help="Target text."),
    source_locale: str = typer.Option(..., "--source-locale", "-s", help="Source locale tag."),
    target_locale: str = typer.Option(..., "--target-locale", "-t", help="Target locale tag."),
    project_id: str | None = typer.Option(None, "--project", help="Project id. Omit for a global entry."),
    db_path: Path = DB_OPTION,
    config_path: Path | None = CONFIG_OPTION,
) -> None:
    """Add a TM entry, or update the matching one."""

    with _open(db_path, config_path) as service:
        try:
            entry = service.add_entry(
                source_locale=source_locale,
                target_locale=target_locale,
                source_text=source_text,
                target_text=target_text,
                project_id=project_id,
            )
        except ValueError as exc:
            typer.secho(str(exc), fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1) from exc

    typer.echo(f"Entry: {entry.id}")
    typer.echo(f"Scope: {entry.scope}")
    typer.echo(f"Embedded: {'yes' if entry.has_embedding else 'no'}")


@app.command("import-entries")
def import_entries_command(
    file_path: Path = typer.Argument(..., help="CSV or XLSX file.", exists=True, dir_okay=False),
    source_locale: str = typer.Option(..., "--source-locale", "-s", help="Source locale tag."),
    target_locale: str = typer.Option(..., "--target-locale", "-t", help="Target locale tag."),
    source_column: str = typer.Option("source", "--source-column", help="Source text column."),
    target_column: str = typer.Option("target", "--target-column", help="Target text column."),
    sheet_name: str | None = typer.Option(None, "--sheet", help="XLSX sheet name."),
    project_id: str | None = typer.Option(None, "--project", help="Project id. Omit for global entries."),
    embed: bool = typer.Option(True, "--embed/--no-embed", help="Embed imported entries right away."),
    db_path: Path = DB_OPTION,
    config_path: Path | None = CONFIG_OPTION,
) -> None:
    """Seed the TM from a spreadsheet of source/target pairs."""

    with _open(db_path, config_path) as service:
        try:
            summary = service.import_entries(
                embed=embed,
                file_path=file_path,
                source_locale=source_locale,
                target_locale=target_locale,
                source_column=source_column,
                target_column=target_column,
                sheet_name=sheet_name,
                project_id=project_id,
            )
        except ValueError as exc:
            typer.secho(str(exc), fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1) from exc

    typer.echo(f"Imported: {summary.imported} ({summary.created} new, {summary.updated} updated)")
    typer.echo(f"Skipped: {summary.skipped}")


@app.command("search")
def search_command(
    source_text: str = typer.Argument(..., help="Text to look up."),
    source_locale: str = typer.Option("*", "--source-locale", "-s", help="Source locale tag or *."),
    target_locale: str = typer.Option("*", "--target-locale", "-t", help="Target locale tag or *."),
    project_id: str | None = typer.Option(None, "--project", help="Project id."),
    limit: int | None = typer.Option(None, "--limit", help="Maximum results (1-100)."),
    min_score: int | None = typer.Option(None, "--min-score", help="Minimum fuzzy score (0-100)."),
    vector_similarity: float | None = typer.Option(
        None,
        "--vector-similarity",
        help="Minimum vector similarity percentage (0-100).",
    ),
    mode: str = typer.Option("basic", "--mode", help="basic or extended."),
    use_vector: bool = typer.Option(True, "--vector/--no-vector", help="Include vector search."),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON."),
    db_path: Path = DB_OPTION,
    config_path: Path | None = CONFIG_OPTION,
) -> None:
    """Hybrid fuzzy + vector search."""

    with _open(db_path, config_path) as service:
        try:
            results = service.search(
                {
                    "source_text": source_text,
                    "source_locale": source_locale,
                    "target_locale": target_locale,
                    "project_id": project_id,
                    "limit": limit,
                    "min_score": min_score,
                    "vector_similarity": vector_similarity,
                    "mode": mode,
                    "use_vector_search": use_vector,
                }
            )
        except ValueError as exc:
            typer.secho(str(exc), fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1) from exc

    if as_json:
        typer.echo(json.dumps([result.to_dict() for result in results], ensure_ascii=False, indent=2))
        return

    if not results:
        typer.echo("No matches.")
        return
    for result in results:
        typer.echo(
            f"{result.fuzzy_score:>3}  {result.search_method:<6}  {result.scope:<7}  "
            f"{result.entry.source_text} => {result.entry.target_text}"
        )


@app.command("generate-embeddings")
def generate_embeddings_command(
    project_id: str | None = typer.Option(None, "--project", help="Only entries of this project."),
    batch_size: int | None = typer.Option(None, "--batch-size", help="Entries per provider call (1-200)."),
    limit: int | None = typer.Option(None, "--limit", help="Stop after this many entries."),
    db_path: Path = DB_OPTION,
    config_path: Path | None = CONFIG_OPTION,
) -> None:
    """Embed every entry that has no embedding yet. Ctrl-C cancels."""

    with _open(db_path, config_path) as service:
        try:
            handle = service.start_generation_job(
                {"project_id": project_id, "batch_size": batch_size, "limit": limit},
                observers=[lambda progress: typer.echo(_format_progress(progress))],
            )
        except ValueError as exc:
            typer.secho(str(exc), fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1) from exc

        typer.echo(f"Job: {handle.progress_id}")
        try:
            while not handle.done:
                handle.wait(0.5)
        except KeyboardInterrupt:
            typer.echo("Cancelling...")
            service.cancel_generation(handle.progress_id)
            handle.wait()

        final = handle.snapshot()

    if final is None or final.status is GenerationStatus.ERROR:
        message = final.error if final is not None else "job finished without a status"
        typer.secho(f"Embedding generation failed: {message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Finished: {final.status.value}")


@app.command("embedding-stats")
def embedding_stats_command(
    project_id: str | None = typer.Option(None, "--project", help="Only entries of this project."),
    db_path: Path = DB_OPTION,
    config_path: Path | None = CONFIG_OPTION,
) -> None:
    """Show how many entries have embeddings."""

    with _open(db_path, config_path) as service:
        stats = service.embedding_stats(project_id)

    typer.echo(f"Total entries: {stats.total}")
    typer.echo(f"With embedding: {stats.with_embedding}")
    typer.echo(f"Without embedding: {stats.without_embedding}")
    typer.echo(f"Coverage: {stats.coverage:.2f}%")


@app.command("verify-vector-setup")
def verify_vector_setup_command(
    db_path: Path = DB_OPTION,
    config_path: Path | None = CONFIG_OPTION,
) -> None:
    """Check the database can serve vector search."""

    with _open(db_path, config_path) as service:
        try:
            report = service.verify_vector_setup()
        except VectorStoreConfigurationError as exc:
            typer.secho(str(exc), fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1) from exc

    typer.echo("Vector setup OK")
    typer.echo(f"Dimension: {report.dimension}")
    typer.echo(f"Index: {report.missing_embedding_index}")
    typer.echo(
        f"Embedded: {report.coverage.with_embedding}/{report.coverage.total} "
        f"({report.coverage.coverage:.2f}%)"
    )


@app.command("set-api-key")
def set_api_key_command(
    api_key: str = typer.Option(
        ...,
        "--api-key",
        prompt="OpenAI API key",
        hide_input=True,
        help="Key to store in the OS keyring.",
    ),
) -> None:
    """Store the OpenAI API key in the OS keyring."""

    try:
        set_secret(OPENAI_API_KEY, api_key)
    except (RuntimeError, ValueError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(f"Saved OpenAI API key: {mask_secret_value(api_key)}")


if __name__ == "__main__":
    app()
