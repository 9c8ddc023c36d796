"""
``flask importer`` commands for operating school imports from a shell.

Every command loads the Flask app through ``ScriptInfo`` and calls the same
pipeline functions as the HTTP blueprint, so run state and locking behave
identically.
"""

from __future__ import annotations

import json
import mimetypes
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from registry_app.importer.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from registry_app.importer.errors import ImportPipelineError
from registry_app.importer.pipeline import (
    ImportRunService,
    cancel_run,
    commit_run,
    create_run,
    process_run,
    resolve_council,
    rollback_run,
)
from registry_app.importer.seed import HierarchyLoadError, load_hierarchy_file, seed_hierarchy
from registry_app.importer.tasks import HEALTHCHECK_TASK_NAME, start_processing
from registry_app.importer.utils import (
    cleanup_stale_uploads,
    cleanup_upload,
    file_sha256,
    persist_local_file,
    resolve_upload_directory,
)
from registry_app.models.importer.schema import ImportType
from registry_app.utils.importer import get_importer_formats, is_importer_enabled


@click.group(name="importer", invoke_without_command=True)
@click.pass_context
def importer_cli(ctx):
    """
    School import management commands.

    Displays the enabled upload formats when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. Enable it to run importer CLI commands."
        )
    if ctx.invoked_subcommand is None:
        formats = get_importer_formats(app)
        if not formats:
            click.echo("No upload formats configured.")
        else:
            click.echo("Enabled upload formats:")
            for fmt in formats:
                click.echo(f"  - {fmt}")


def get_disabled_importer_group() -> click.Group:
    """
    Return a minimal command group that informs the operator the importer is disabled.
    """

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


def _load_app(ctx):
    return ctx.ensure_object(ScriptInfo).load_app()


def _resolve_celery(app) -> Optional[Celery]:
    """
    Retrieve the registered Celery instance, raising a helpful error if missing.
    """
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


def _pipeline_error(exc: ImportPipelineError) -> click.ClickException:
    message = f"[{exc.code}] {exc.message}"
    if exc.details:
        message = f"{message}\n{json.dumps(exc.details, indent=2, default=str)}"
    return click.ClickException(message)


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@importer_cli.command("upload")
@click.argument("file_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--dry-run", is_flag=True, help="Process and preview only; the run can never be committed.")
@click.option(
    "--authoritative",
    is_flag=True,
    help="Deactivate live schools in the matched councils that are missing from the file.",
)
@click.option(
    "--import-type",
    type=click.Choice([member.value for member in ImportType], case_sensitive=False),
    default=ImportType.SCHOOLS_BULK.value,
    show_default=True,
)
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Process inside the CLI process instead of handing off to the worker.",
)
@click.pass_context
def importer_upload(ctx, file_path: Path, dry_run: bool, authoritative: bool, import_type: str, inline: bool):
    """Register FILE_PATH as a new import run and start processing it."""
    app = _load_app(ctx)
    with app.app_context():
        stored_path: Path | None = None
        try:
            stored_path = persist_local_file(file_path, app)
            run = create_run(
                file_name=file_path.name,
                file_size=stored_path.stat().st_size,
                file_path=str(stored_path),
                file_hash=file_sha256(stored_path),
                mime_type=mimetypes.guess_type(file_path.name)[0],
                import_type=ImportType(import_type.upper()),
                dry_run=dry_run,
                authoritative=authoritative,
            )
        except ImportPipelineError as exc:
            if stored_path is not None:
                cleanup_upload(stored_path)
            raise _pipeline_error(exc) from exc

        run_id = run.id
        click.echo(f"Import run {run_id} created for {file_path.name}.")
        try:
            if inline:
                run = process_run(run_id)
                click.echo(f"Import run {run_id} processed: {run.status.value}")
            else:
                outcome = start_processing(app, run_id)
                if outcome["mode"] == "worker":
                    click.echo(f"Import run {run_id} queued (task {outcome['taskId']}).")
                else:
                    click.echo(f"Import run {run_id} processed: {outcome['status']}")
        except ImportPipelineError as exc:
            raise _pipeline_error(exc) from exc
        except Exception as exc:
            raise click.ClickException(f"Import run {run_id} failed: {exc}") from exc


@importer_cli.command("status")
@click.argument("run_id", type=int)
@click.pass_context
def importer_status(ctx, run_id: int):
    """Print the status payload of RUN_ID as JSON."""
    app = _load_app(ctx)
    with app.app_context():
        try:
            _echo_json(ImportRunService().status_payload(run_id))
        except ImportPipelineError as exc:
            raise _pipeline_error(exc) from exc


@importer_cli.command("commit")
@click.argument("run_id", type=int)
@click.option("--confirm-overwrites", is_flag=True, help="Allow updates and deactivations of existing schools.")
@click.pass_context
def importer_commit(ctx, run_id: int, confirm_overwrites: bool):
    """Commit a READY_TO_COMMIT run to the school registry."""
    app = _load_app(ctx)
    with app.app_context():
        try:
            result = commit_run(run_id, confirm_overwrites=confirm_overwrites)
        except ImportPipelineError as exc:
            raise _pipeline_error(exc) from exc
        counts = result.as_dict()
        click.echo(
            f"Import run {run_id} committed: inserted={counts['inserted']} updated={counts['updated']} "
            f"skipped={counts['skipped']} deactivated={counts['deactivated']}"
        )


@importer_cli.command("cancel")
@click.argument("run_id", type=int)
@click.option("--reason", default=None, help="Reason recorded on the run event.")
@click.pass_context
def importer_cancel(ctx, run_id: int, reason: Optional[str]):
    """Cancel a run that has not been committed yet."""
    app = _load_app(ctx)
    with app.app_context():
        try:
            run = cancel_run(run_id, reason=reason)
        except ImportPipelineError as exc:
            raise _pipeline_error(exc) from exc
        click.echo(f"Import run {run_id} is now {run.status.value}.")


@importer_cli.command("rollback")
@click.argument("run_id", type=int)
@click.pass_context
def importer_rollback(ctx, run_id: int):
    """Undo every registry change made by a COMMITTED run."""
    app = _load_app(ctx)
    with app.app_context():
        try:
            result = rollback_run(run_id)
        except ImportPipelineError as exc:
            raise _pipeline_error(exc) from exc
        click.echo(
            f"Import run {run_id} rolled back: reverted={result.reverted} "
            f"deleted={result.deleted} restored={result.restored}"
        )


@importer_cli.command("map-council")
@click.argument("run_id", type=int)
@click.option("--row-id", "row_ids", type=int, multiple=True, required=True, help="Staging row id (repeatable).")
@click.option("--council-id", type=int, required=True, help="Council to assign to the rows.")
@click.option("--create-alias", is_flag=True, help="Register the rows' council text as an alias.")
@click.option("--alias-name", default=None, help="Alias text to register instead of the row's council text.")
@click.pass_context
def importer_map_council(
    ctx, run_id: int, row_ids: tuple[int, ...], council_id: int, create_alias: bool, alias_name: Optional[str]
):
    """Manually assign a council to unresolved rows."""
    app = _load_app(ctx)
    with app.app_context():
        try:
            result = resolve_council(
                run_id,
                list(row_ids),
                council_id,
                create_alias=create_alias,
                alias_name=alias_name,
            )
        except ImportPipelineError as exc:
            raise _pipeline_error(exc) from exc
        message = f"Mapped {result.updated} row(s); run {run_id} is {result.status.value}."
        if result.alias_id is not None:
            message = f"{message} Alias {result.alias_id} registered."
        click.echo(message)


@importer_cli.command("seed-hierarchy")
@click.argument("file_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.pass_context
def importer_seed_hierarchy(ctx, file_path: Path):
    """Load regions, districts, councils and aliases from a YAML file."""
    app = _load_app(ctx)
    with app.app_context():
        try:
            regions = load_hierarchy_file(file_path)
            summary = seed_hierarchy(regions)
        except HierarchyLoadError as exc:
            raise click.ClickException(str(exc)) from exc
        counts = summary.as_dict()
        click.echo("Council hierarchy seeded: " + ", ".join(f"{key}={value}" for key, value in counts.items()))


@importer_cli.command("cleanup-uploads")
@click.option(
    "--max-age-hours",
    type=int,
    default=72,
    show_default=True,
    help="Delete stored uploads older than this many hours.",
)
@click.pass_context
def importer_cleanup_uploads(ctx, max_age_hours: int):
    """Remove stale upload files from the importer upload directory."""
    app = _load_app(ctx)
    with app.app_context():
        upload_dir = resolve_upload_directory(app)
        removed = cleanup_stale_uploads(app, max_age_hours=max_age_hours)
        click.echo(f"Removed {len(removed)} upload(s) older than {max_age_hours}h from {upload_dir}.")


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    app = _load_app(ctx)
    state = app.extensions.get("importer", {})
    if not state.get("worker_enabled") and not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. Uploads are processed inline "
            "until the flag is enabled.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option(
    "--queues",
    default=DEFAULT_QUEUE_NAME,
    show_default=True,
    help="Comma-separated queue list to consume.",
)
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """
    Start the Celery worker in the current process.
    """
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting school import worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
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
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get(HEALTHCHECK_TASK_NAME)
    if task is None:
        raise click.ClickException(f"Heartbeat task '{HEALTHCHECK_TASK_NAME}' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    _echo_json(payload)
