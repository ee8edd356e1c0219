"""
CLI commands for the integration hub.

Every command loads the Flask app through ``ScriptInfo`` so it can run from
``flask integrations ...`` or from tests via ``app.test_cli_runner()``.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo
from sqlalchemy.exc import NoResultFound

from hub_app.integrations.celery_app import DEFAULT_QUEUE_NAME, EXTENSION_KEY, get_celery_app
from hub_app.integrations.errors import ConfigurationError, CSVHeaderError
from hub_app.integrations.mapping import load_mapping
from hub_app.integrations.pipeline.dashboard import DashboardService
from hub_app.integrations.pipeline.import_service import ImportService
from hub_app.integrations.pipeline.mapping_service import FieldMappingService
from hub_app.integrations.pipeline.source_service import IntegrationSourceService, SourceFilters
from hub_app.integrations.pipeline.sync_service import SyncOrchestrator
from hub_app.integrations.utils import cleanup_upload, resolve_upload_directory
from hub_app.models import SyncType

CLI_INITIATOR = "cli"


@click.group(name="integrations", invoke_without_command=True)
@click.pass_context
def integrations_cli(ctx):
    """
    Integration hub management commands.

    Displays enabled adapters when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if ctx.invoked_subcommand is None:
        adapters = app.config.get("INTEGRATIONS_ADAPTERS") or ()
        if not adapters:
            click.echo("No integration adapters configured.")
        else:
            click.echo("Enabled integration adapters:")
            for adapter in adapters:
                click.echo(f"  - {adapter}")


def _resolve_celery(app) -> Optional[Celery]:
    """
    Retrieve the registered Celery instance, raising a helpful error if missing.
    """
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Integrations Celery app is unavailable. Ensure the integrations package "
            "initialises before running worker commands."
        )
    return celery_app


def _resolve_mapping_path(app, file_path: Path) -> Path:
    if file_path.exists():
        return file_path.resolve()
    mappings_dir = Path(app.config.get("INTEGRATIONS_MAPPINGS_DIR") or "config/mappings")
    candidate = mappings_dir / file_path
    if candidate.suffix not in {".yaml", ".yml"}:
        candidate = candidate.with_suffix(".yaml")
    if candidate.exists():
        return candidate.resolve()
    raise click.ClickException(f"Mapping file '{file_path}' not found (also looked in {mappings_dir}).")


@integrations_cli.command("sources")
@click.option("--status", "statuses", multiple=True, help="Filter by source status (repeatable).")
@click.option("--system-type", "system_types", multiple=True, help="Filter by system type (repeatable).")
@click.option("--json", "as_json", is_flag=True, help="Emit JSON instead of a table.")
@click.pass_context
def integrations_sources(ctx, statuses: tuple[str, ...], system_types: tuple[str, ...], as_json: bool):
    """List configured integration sources."""
    ctx.ensure_object(ScriptInfo).load_app()
    try:
        filters = SourceFilters.coerce(statuses=statuses, system_types=system_types, limit=200)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc

    result = IntegrationSourceService().list_sources(filters)
    if as_json:
        payload = [
            {
                "id": source.id,
                "name": source.name,
                "system_type": source.system_type.value,
                "status": source.status.value,
                "last_sync_status": source.last_sync_status.value,
                "last_sync_at": source.last_sync_at.isoformat() if source.last_sync_at else None,
            }
            for source in result.sources
        ]
        click.echo(json.dumps(payload, indent=2))
        return

    if not result.sources:
        click.echo("No integration sources found.")
        return
    for source in result.sources:
        last_sync = source.last_sync_at.isoformat() if source.last_sync_at else "never"
        click.echo(
            f"{source.id:>5}  {source.name:<30}  {source.system_type.value:<10}  "
            f"{source.status.value:<8}  last sync: {last_sync} ({source.last_sync_status.value})"
        )


@integrations_cli.command("sync")
@click.argument("source_id", type=int)
@click.option(
    "--type",
    "sync_type",
    type=click.Choice([SyncType.FULL.value, SyncType.INCREMENTAL.value]),
    default=SyncType.FULL.value,
    show_default=True,
)
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.pass_context
def integrations_sync(ctx, source_id: int, sync_type: str, inline: bool):
    """Trigger a pull sync for SOURCE_ID."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    orchestrator = SyncOrchestrator(app=app)
    try:
        if inline:
            summary = orchestrator.run_sync(source_id, sync_type, CLI_INITIATOR)
            click.echo(json.dumps(summary.as_dict(), indent=2))
            return
        trigger = orchestrator.trigger_sync(source_id, sync_type, CLI_INITIATOR)
    except NoResultFound as exc:
        raise click.ClickException(f"Integration source {source_id} not found.") from exc
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    except Exception as exc:
        raise click.ClickException(f"Failed to start sync for source {source_id}: {exc}") from exc

    if trigger.summary is not None:
        click.echo(json.dumps(trigger.summary.as_dict(), indent=2))
        return
    click.echo(json.dumps({"sync_id": trigger.run_id, "status": trigger.status, "task_id": trigger.task_id}))


@integrations_cli.command("import-csv")
@click.argument("source_id", type=int)
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="Path to the CSV file to import.",
)
@click.option("--entity", "entity_type", help="Entity type for rows without an entity column.")
@click.option("--identity-column", help="Column holding each row's external id.")
@click.pass_context
def integrations_import_csv(ctx, source_id: int, file_path: Path, entity_type: Optional[str], identity_column):
    """Import a CSV file into SOURCE_ID."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    service = ImportService(app=app)
    try:
        summary = service.import_csv(
            source_id,
            file_path.resolve(),
            CLI_INITIATOR,
            entity_type=entity_type,
            identity_column=identity_column,
        )
    except NoResultFound as exc:
        raise click.ClickException(f"Integration source {source_id} not found.") from exc
    except (ConfigurationError, CSVHeaderError) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(
        f"Sync run {summary.run_id} finished with status {summary.status}.\n"
        f"  records_processed: {summary.processed}\n"
        f"  records_created  : {summary.created}\n"
        f"  records_updated  : {summary.updated}\n"
        f"  records_failed   : {summary.failed}"
    )
    for error in summary.errors[:20]:
        reasons = "; ".join(error.get("reasons") or ())
        click.echo(f"  row {error.get('row')}: {reasons}")


@integrations_cli.command("load-mappings")
@click.argument("source_id", type=int)
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, dir_okay=False),
    help="Mapping YAML path, or a name inside INTEGRATIONS_MAPPINGS_DIR.",
)
@click.pass_context
def integrations_load_mappings(ctx, source_id: int, file_path: Path):
    """Seed field mappings for SOURCE_ID from a YAML mapping spec."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    spec_path = _resolve_mapping_path(app, file_path)
    try:
        spec = load_mapping(spec_path)
        source = IntegrationSourceService().get_source(source_id)
        if spec.system != source.system_type.value:
            raise click.ClickException(
                f"Mapping spec targets '{spec.system}' but source {source_id} is a "
                f"{source.system_type.value} source."
            )
        result = FieldMappingService().import_spec(source_id, spec)
    except NoResultFound as exc:
        raise click.ClickException(f"Integration source {source_id} not found.") from exc
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    except ValueError as exc:
        raise click.ClickException(f"Invalid mapping spec: {exc}") from exc

    app.logger.info(
        "Field mappings loaded via CLI",
        extra={
            "integration_source_id": source_id,
            "integration_mapping_path": str(spec_path),
            "integration_mapping_checksum": spec.checksum,
        },
    )
    click.echo(
        json.dumps(
            {
                "source_id": source_id,
                "entity": spec.entity,
                "version": spec.version,
                "checksum": spec.checksum,
                "created": len(result.created),
                "updated": len(result.updated),
            }
        )
    )


@integrations_cli.command("dashboard")
@click.option("--source-id", type=int, help="Restrict aggregates to one source.")
@click.pass_context
def integrations_dashboard(ctx, source_id: Optional[int]):
    """Print the dashboard aggregate as JSON."""
    ctx.ensure_object(ScriptInfo).load_app()
    snapshot = DashboardService().get_dashboard(source_id)
    click.echo(json.dumps(snapshot.to_dict(), indent=2, sort_keys=True))


@integrations_cli.command("cancel")
@click.argument("run_id", type=int)
@click.pass_context
def integrations_cancel(ctx, run_id: int):
    """Request cooperative cancellation of a running sync."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    try:
        run = SyncOrchestrator(app=app).request_cancel(run_id)
    except NoResultFound as exc:
        raise click.ClickException(f"Sync run {run_id} not found.") from exc
    if not run.is_running:
        raise click.ClickException(f"Sync run {run_id} is already {run.status.value}.")
    click.echo(json.dumps({"sync_id": run.id, "status": run.status.value, "cancel_requested": True}))


@integrations_cli.command("cleanup-uploads")
@click.option(
    "--max-age-hours",
    default=72,
    show_default=True,
    type=int,
    help="Remove uploads older than the specified number of hours.",
)
@click.pass_context
def integrations_cleanup_uploads(ctx, max_age_hours: int):
    """
    Delete stale CSV upload files from the configured storage directory.
    """
    app = ctx.ensure_object(ScriptInfo).load_app()
    uploads_dir = resolve_upload_directory(app)

    cutoff = datetime.now(timezone.utc) - timedelta(hours=max_age_hours)
    removed = 0
    for path in uploads_dir.iterdir():
        if not path.is_file():
            continue
        try:
            modified = datetime.fromtimestamp(path.stat().st_mtime, timezone.utc)
        except FileNotFoundError:  # pragma: no cover - race condition
            continue
        if modified < cutoff:
            cleanup_upload(path)
            removed += 1

    click.echo(f"Removed {removed} upload file(s) older than {max_age_hours} hours from {uploads_dir}.")


@integrations_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the integrations background worker."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    state = app.extensions.get(EXTENSION_KEY, {})
    if not state.get("worker_enabled") and not app.config.get("INTEGRATIONS_WORKER_ENABLED"):
        click.echo(
            "Warning: INTEGRATIONS_WORKER_ENABLED is false. Syncs run inline until it is enabled.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """Start the Celery worker in the current process."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    celery_app = _resolve_celery(app)

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting integrations worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    app = ctx.ensure_object(ScriptInfo).load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("integrations.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'integrations.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))
