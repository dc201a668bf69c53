"""carelog_etl.cli

Command-line entry point: load every caregiver / carelog CSV in a directory
into PostgreSQL.

Usage:
    DATABASE_URL=postgresql://... carelog-etl --input-dir ./data
    carelog-etl --db-dsn postgresql://... --config config/pipeline.yml --parallel
"""

from __future__ import annotations

import asyncio
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click

from carelog_etl.config import PipelineConfig, load_config
from carelog_etl.errors import FatalConfigurationError, describe
from carelog_etl.logging_setup import configure_logging
from carelog_etl.orchestrator import EtlOrchestrator, classify_file, discover_csv_files
from carelog_etl.rejects import RejectWriter
from carelog_etl.row_source import validate_file
from carelog_etl.store import PostgresStore
from carelog_etl.summary import (
    FileResult,
    build_run_report,
    compute_run_stats,
    write_run_report,
)

log = logging.getLogger(__name__)


async def run_pipeline(
    db_dsn: str,
    input_dir: Path,
    config: PipelineConfig,
    rejects: RejectWriter,
) -> list[FileResult]:
    """Open the store, process every file under input_dir, close the store."""
    async with PostgresStore(db_dsn, max_size=config.pool_max_size) as store:
        orchestrator = EtlOrchestrator(store, config, rejects=rejects)
        return await orchestrator.process_all_files(input_dir)


def _validate_files(input_dir: Path, run_id: str) -> bool:
    """Print a structure check for every recognised CSV; True when all pass."""
    ok = True
    for path in discover_csv_files(input_dir):
        record_type = classify_file(path)
        if record_type is None:
            click.echo(f"[{run_id}] {path.name}: skipped (not a caregiver or carelog file)")
            continue
        result = validate_file(path)
        status = "ok" if result.is_valid else "INVALID"
        click.echo(f"[{run_id}] {path.name} ({record_type}): {status}, {result.row_count} rows")
        for error in result.errors[:10]:
            click.echo(f"  {error}")
        ok = ok and result.is_valid
    return ok


@click.command()
@click.option("--db-dsn", envvar="DATABASE_URL", default=None, help="PostgreSQL DSN [env: DATABASE_URL]")
@click.option(
    "--input-dir",
    envvar="CSV_INPUT_DIR",
    default="./data",
    show_default=True,
    type=click.Path(file_okay=False),
    help="Directory of caregiver / carelog CSV files [env: CSV_INPUT_DIR]",
)
@click.option("--config", "config_path", default=None, type=click.Path(), help="YAML pipeline config")
@click.option("--batch-size", default=None, type=int, help="Rows per batch (default 5000)")
@click.option("--max-concurrency", default=None, type=int, help="Batches in flight per file (default 2)")
@click.option("--transactions/--no-transactions", default=None, help="Wrap each batch insert in a transaction")
@click.option("--skip-duplicates/--no-skip-duplicates", default=None, help="ON CONFLICT DO NOTHING for caregiver inserts")
@click.option("--parallel/--sequential", default=None, help="Run caregiver and carelog files concurrently")
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/carelog_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR [env: LOG_LEVEL]")
@click.option("--report-dir", default="./artifacts/reports", show_default=True, type=click.Path())
@click.option("--validate-only", is_flag=True, help="Check CSV structure and exit without touching the database")
def main(
    db_dsn: str | None,
    input_dir: str,
    config_path: str | None,
    batch_size: int | None,
    max_concurrency: int | None,
    transactions: bool | None,
    skip_duplicates: bool | None,
    parallel: bool | None,
    rejects_path: str,
    run_id: str | None,
    log_level: str | None,
    report_dir: str,
    validate_only: bool,
) -> None:
    """Load caregiver and carelog CSV exports into PostgreSQL."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    configure_logging(log_level)

    try:
        config = load_config(Path(config_path) if config_path else None).with_overrides(
            batch_size=batch_size,
            max_concurrency=max_concurrency,
            enable_transactions=transactions,
            skip_duplicates=skip_duplicates,
            enable_parallel_processing=parallel,
        )
    except FatalConfigurationError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    if validate_only:
        sys.exit(0 if _validate_files(Path(input_dir), run_id) else 1)

    if not db_dsn:
        click.echo(f"[{run_id}] FATAL: --db-dsn or DATABASE_URL must be set", err=True)
        sys.exit(1)

    click.echo(
        f"[{run_id}] Starting run input_dir={input_dir} batch_size={config.batch_size} "
        f"max_concurrency={config.max_concurrency} "
        f"transactions={config.enable_transactions} "
        f"parallel={config.enable_parallel_processing}"
    )

    rejects = RejectWriter(Path(rejects_path))
    try:
        results = asyncio.run(run_pipeline(db_dsn, Path(input_dir), config, rejects))
    except FatalConfigurationError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    except Exception as exc:
        log.exception("Run aborted")
        click.echo(f"[{run_id}] FATAL: run aborted: {describe(exc)}", err=True)
        sys.exit(1)
    finally:
        rejects.close()

    stats = compute_run_stats(results)
    click.echo(build_run_report(results, stats))
    if rejects.rows_written:
        click.echo(f"[{run_id}] {rejects.rows_written} rejected rows written to {rejects.path}")
    report_path = write_run_report(
        run_id, started_at, input_dir, results, stats, Path(report_dir),
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


if __name__ == "__main__":
    main()
