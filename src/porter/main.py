"""Main entry point for the porter CLI."""

import asyncio
import dataclasses
import signal
import sys
from pathlib import Path
from typing import Any, Optional

import click

from porter.config import PorterConfig, load_config
from porter.database import DatabaseManager
from porter.exceptions import ConfigurationError, PorterError
from porter.exporter import ExportResult, ExportWriter
from porter.importer import ImportRunner
from porter.metrics import PorterMetrics
from porter.policy import PolicyRegistry
from porter.replicator import BucketReplicator
from porter.storage import ObjectStore
from utils.cancellation import CancellationToken
from utils.logging import configure_logging, quiet_third_party_loggers
from utils.output import print_error, print_success, print_summary, print_table, print_warning


@click.group()
@click.option(
    "--config",
    "-c",
    required=True,
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file (YAML)",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable verbose output",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"]),
    help="Log level",
)
@click.option(
    "--log-format",
    default="console",
    type=click.Choice(["console", "json"], case_sensitive=False),
    help="Log format: 'console' for human-readable output, 'json' for structured logs (default: console)",
)
@click.pass_context
def main(ctx: click.Context, config: Path, verbose: bool, log_level: str, log_format: str) -> None:
    """Export databases to SQL dumps, import them back, and clone S3 buckets."""
    effective_log_level = "DEBUG" if verbose else log_level
    logger = configure_logging(log_level=effective_log_level, log_format=log_format)
    if verbose:
        # Keep boto3/botocore at WARNING so our DEBUG output stays readable
        quiet_third_party_loggers()
    logger = logger.bind(component="main")

    try:
        porter_config = load_config(config)
    except ConfigurationError as e:
        logger.error("Configuration error", error=str(e), correlation_id=e.correlation_id)
        print_error(f"Configuration error: {e.message}")
        sys.exit(1)

    if verbose:
        logger.info("Configuration loaded successfully", version=porter_config.version)

    ctx.obj = {
        "config": porter_config,
        "logger": logger,
        "metrics": _build_metrics(porter_config, logger),
    }


def _build_metrics(config: PorterConfig, logger: Any) -> Optional[PorterMetrics]:
    if not config.monitoring.metrics_enabled:
        return None
    metrics = PorterMetrics(logger=logger)
    metrics.start_metrics_server(config.monitoring.metrics_port)
    return metrics


async def _run_export(
    config: PorterConfig,
    output: Optional[str],
    drop_if_exists: Optional[bool],
    use_remote_storage: Optional[bool],
    metrics: Optional[PorterMetrics],
    logger: Any,
) -> ExportResult:
    store = ObjectStore(config.storage, logger=logger) if config.storage else None
    registry = PolicyRegistry.from_config(config.policies, logger=logger)

    async with DatabaseManager(config.require_database(), logger=logger) as db_manager:
        writer = ExportWriter(
            db_manager,
            config.export,
            registry,
            store=store,
            metrics=metrics,
            logger=logger,
        )
        return await writer.export(
            output_identifier=output,
            drop_if_exists=drop_if_exists,
            use_remote_storage=use_remote_storage,
        )


async def _run_import(
    config: PorterConfig,
    location: str,
    metrics: Optional[PorterMetrics],
    logger: Any,
) -> dict[str, Any]:
    store = ObjectStore(config.storage, logger=logger) if config.storage else None
    async with DatabaseManager(config.require_database(), pool_size=1, logger=logger) as db_manager:
        runner = ImportRunner(
            db_manager,
            store=store,
            config=config.import_,
            metrics=metrics,
            logger=logger,
        )
        return await runner.import_sql(location)


@main.command("export")
@click.argument("output", required=False)
@click.option("--drop-if-exists", is_flag=True, default=False, help="Emit DROP TABLE IF EXISTS before each table")
@click.option("--remote", is_flag=True, default=False, help="Upload the dump to the configured bucket")
@click.option("--local", "local_only", is_flag=True, default=False, help="Write the dump to export.output_dir")
@click.pass_obj
def export_command(
    obj: dict[str, Any],
    output: Optional[str],
    drop_if_exists: bool,
    remote: bool,
    local_only: bool,
) -> None:
    """Export the whole database to a SQL dump named OUTPUT."""
    config: PorterConfig = obj["config"]
    logger = obj["logger"]

    if remote and local_only:
        raise click.UsageError("--remote and --local are mutually exclusive")
    use_remote: Optional[bool] = True if remote else (False if local_only else None)

    try:
        result = asyncio.run(
            _run_export(
                config,
                output,
                drop_if_exists or None,
                use_remote,
                obj["metrics"],
                logger,
            )
        )
    except PorterError as e:
        logger.error("Export failed", error=str(e))
        print_error(f"Export failed: {e.message}")
        sys.exit(1)

    print_summary(dataclasses.asdict(result), title="Export Summary")
    print_success(f"Export written to {result.location}")


@main.command("import")
@click.argument("location")
@click.pass_obj
def import_command(obj: dict[str, Any], location: str) -> None:
    """Import a SQL dump from a local path or s3://bucket/key."""
    config: PorterConfig = obj["config"]
    logger = obj["logger"]

    try:
        stats = asyncio.run(_run_import(config, location, obj["metrics"], logger))
    except PorterError as e:
        logger.error("Import failed", error=str(e))
        print_error(f"Import failed: {e.message}")
        sys.exit(1)

    print_summary(stats, title="Import Summary")
    print_success(f"Imported {location}")


@main.command("clone-s3")
@click.pass_obj
def clone_s3_command(obj: dict[str, Any]) -> None:
    """Copy every object missing from the target bucket out of the source bucket.

    Individual object failures are listed but do not fail the run.
    """
    config: PorterConfig = obj["config"]
    logger = obj["logger"]
    token = CancellationToken()

    def _interrupt(signum: int, frame: Any) -> None:
        token.cancel("interrupted")

    previous_handler = signal.signal(signal.SIGINT, _interrupt)
    try:
        source = ObjectStore(config.require_source_storage(), logger=logger)
        target = ObjectStore(config.require_storage(), logger=logger)
        replicator = BucketReplicator(config.replication, metrics=obj["metrics"], logger=logger)
        replicator.verify_connections(source, target)
        ledger = replicator.replicate(source, target, cancel_token=token)
    except PorterError as e:
        logger.error("Replication failed", error=str(e))
        print_error(f"Replication failed: {e.message}")
        sys.exit(1)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    print_summary(replicator.stats, title="Replication Summary")
    if ledger:
        print_warning(f"{len(ledger)} object(s) could not be copied")
        print_table(["Object", "Last error"], [[key, error] for key, error in ledger.items()])
    else:
        print_success("All objects replicated")


if __name__ == "__main__":
    main()
