"""Dgraph export tool CLI.

Commands:
- serve: Run the leader-elected export service
- export: Run one export now (no leader election)
- sweep: Remove temporary export dirs
- lease: Show the current lease holder
- version: Show version
"""

import asyncio
import dataclasses
import json
import logging
from typing import Optional

import typer
from dotenv import load_dotenv

from dgraph_export.config import ExportSettings
from dgraph_export.config import load_settings
from dgraph_export.errors import ExportToolError

# Load .env for local dev
load_dotenv()

logger = logging.getLogger(__name__)

app = typer.Typer(help="Dgraph export tool - leader-elected periodic Dgraph exports")


def _settings(**overrides) -> ExportSettings:
    """Environment settings with CLI overrides applied, validated."""
    try:
        settings = load_settings()
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(settings, **changes).validate()
    except ExportToolError as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(1) from e


@app.callback()
def _main(
    log_level: str = typer.Option(None, "--log-level", envvar="LOG_LEVEL", help="Logging level"),
):
    from dgraph_export.main import configure_logging

    configure_logging(log_level or "INFO")


@app.command()
def serve(
    endpoint_url: Optional[str] = typer.Option(None, "--endpoint-url", help="Dgraph admin endpoint"),
    export_dest: Optional[str] = typer.Option(None, "--export-dest", help="Export destination URL"),
    export_period: Optional[float] = typer.Option(None, "--export-period", help="Export period (seconds)"),
    tmp_prefix: Optional[str] = typer.Option(None, "--tmp-prefix", help="Temporary export dir root"),
    tmp_pattern: Optional[str] = typer.Option(None, "--tmp-pattern", help="Temporary export dir name pattern"),
    tmp_cleanup: Optional[bool] = typer.Option(None, "--tmp-cleanup/--no-tmp-cleanup", help="Sweep temp dirs"),
    lease_db_url: Optional[str] = typer.Option(None, "--lease-db-url", help="Lease store sqlite URL"),
    lease_name: Optional[str] = typer.Option(None, "--lease-name", help="Lease name"),
    api_port: Optional[int] = typer.Option(None, "--api-port", help="API port"),
):
    """Run the leader-elected export service."""
    from dgraph_export.main import run

    settings = _settings(
        endpoint_url=endpoint_url,
        export_dest=export_dest,
        export_period_seconds=export_period,
        tmp_prefix=tmp_prefix,
        tmp_pattern=tmp_pattern,
        tmp_cleanup=tmp_cleanup,
        lease_db_url=lease_db_url,
        lease_name=lease_name,
        api_port=api_port,
    )
    raise typer.Exit(run(settings))


@app.command()
def export(
    cleanup: bool = typer.Option(False, "--cleanup", help="Sweep temp dirs after a successful export"),
):
    """Run one export now, bypassing leader election."""
    from dgraph_export.cleanup import CleanupSweeper
    from dgraph_export.export import ExportClient

    settings = _settings()

    async def _execute():
        client = ExportClient.from_settings(settings)
        return await client.export()

    try:
        output = asyncio.run(_execute())
    except ExportToolError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e

    typer.echo(json.dumps(output.to_wire()))

    if cleanup:
        sweeper = CleanupSweeper(settings.tmp_prefix, settings.tmp_pattern)
        try:
            result = sweeper.sweep()
        except ExportToolError as e:
            typer.echo(f"Cleanup failed: {e}", err=True)
            raise typer.Exit(1) from e
        typer.echo(f"Removed {len(result.removed)} temporary dir(s)")


@app.command()
def sweep(
    prefix: Optional[str] = typer.Option(None, "--prefix", help="Temporary export dir root"),
    pattern: Optional[str] = typer.Option(None, "--pattern", help="Temporary export dir name pattern"),
    dry_run: bool = typer.Option(False, "--dry-run", help="List matching dirs without removing"),
):
    """Remove temporary export dirs."""
    from dgraph_export.cleanup import CleanupSweeper

    settings = _settings(tmp_prefix=prefix, tmp_pattern=pattern)
    sweeper = CleanupSweeper(settings.tmp_prefix, settings.tmp_pattern)

    try:
        if dry_run:
            for path in sweeper.targets():
                typer.echo(f"[DRY RUN] would remove {path}")
            return
        result = sweeper.sweep()
    except ExportToolError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e

    for path in result.removed:
        typer.echo(f"removed {path}")
    typer.echo(f"Removed {len(result.removed)} temporary dir(s)")


@app.command()
def lease(
    lease_db_url: Optional[str] = typer.Option(None, "--lease-db-url", help="Lease store sqlite URL"),
    lease_name: Optional[str] = typer.Option(None, "--lease-name", help="Lease name"),
):
    """Show the current lease holder."""
    from dgraph_export.lease import SQLiteLeaseStore

    settings = _settings(lease_db_url=lease_db_url, lease_name=lease_name)

    async def _get():
        store = SQLiteLeaseStore(settings.lease_db_url)
        await store.initialize()
        return await store.get(settings.lease_name)

    try:
        record = asyncio.run(_get())
    except ExportToolError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e

    if record is None:
        typer.echo(f"Lease {settings.lease_name!r}: never acquired")
        return

    typer.echo(f"Lease:       {record.name}")
    typer.echo(f"Holder:      {record.holder or '-'}")
    typer.echo(f"Valid:       {'yes' if record.is_valid() else 'no'}")
    typer.echo(f"Acquired:    {record.acquired_at.isoformat() if record.acquired_at else '-'}")
    typer.echo(f"Renewed:     {record.renewed_at.isoformat() if record.renewed_at else '-'}")
    typer.echo(f"Expires:     {record.expires_at.isoformat() if record.expires_at else '-'}")
    typer.echo(f"Transitions: {record.transitions}")


@app.command()
def version():
    """Show version."""
    from dgraph_export import __version__

    typer.echo(f"dgraph-export-tool v{__version__}")


if __name__ == "__main__":
    app()
