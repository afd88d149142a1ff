#!/usr/bin/env python3
"""
mirrorsync CLI

Runs one table job per invocation: a full sync, a row count, or draining a
staging table left behind by a failed run. Prints a JSON summary and exits
0 on success, 1 on failure.
"""

import asyncio
import json
import logging
import os
import sys
import traceback
from typing import Any, Dict, Optional

import click

from ..config.config_loader import ConfigLoader
from ..config.event import JobRequest, resolve_job_request
from ..config.global_config_loader import Settings, create_warehouse, load_settings
from ..core.enums import SyncMethod
from ..core.exceptions import ConfigurationError, SyncError
from ..sync.sync_engine import count_table_rows, sync_query_to_table
from ..transforms.registry import resolve_transform

DEFAULT_CONFIG_PATH = "tables.yaml"


def setup_logging(level: int = logging.INFO):
    """Set up logging configuration."""
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)]
    )


def echo_summary(summary: Dict[str, Any]) -> None:
    click.echo(json.dumps(summary, indent=2, default=str))


class SyncCLI:
    """Command-line interface for running individual table jobs"""

    def __init__(self, config_path: str, env_file: Optional[str] = None):
        self.logger = logging.getLogger("mirrorsync.cli")
        self.config_path = config_path
        self.env_file = env_file

    def _settings(self, require_source: bool) -> Settings:
        return load_settings(self.env_file, require_source=require_source)

    async def run_sync(self, request: JobRequest) -> bool:
        """Sync one configured table from its source collection"""
        configs = ConfigLoader.load_from_yaml(self.config_path)
        table_config = ConfigLoader.get_table_config(configs, request.table)
        issues = ConfigLoader.validate_config(table_config)
        if issues:
            for issue in issues:
                self.logger.error(f"Configuration issue: {issue}")
            echo_summary({'success': False, 'table': request.table, 'error': '; '.join(issues)})
            return False

        settings = self._settings(require_source=True)
        transform = resolve_transform(table_config.transform)
        options = table_config.engine_options()
        options['progress_interval'] = settings.progress_interval
        if request.batch_size is not None:
            options['batch_size'] = request.batch_size
        if request.progress_interval is not None:
            options['progress_interval'] = request.progress_interval

        warehouse = create_warehouse(settings, logger=self.logger)
        async with warehouse:
            result = await sync_query_to_table(
                warehouse,
                request.table,
                table_config.to_query(),
                transform=transform,
                database=table_config.database or settings.source_database,
                uri=settings.source_uri,
                logger=self.logger,
                **options,
            )
        echo_summary(result.to_summary())
        return result.success

    async def count(self, table: str) -> bool:
        settings = self._settings(require_source=False)
        warehouse = create_warehouse(settings, logger=self.logger)
        async with warehouse:
            rows = await count_table_rows(warehouse, table)
        self.logger.info(f"{warehouse.table_ref(table)} holds {rows} rows")
        echo_summary({'success': True, 'table': table, 'row_count': rows})
        return True

    async def drain_staging(self, table: str) -> bool:
        settings = self._settings(require_source=False)
        warehouse = create_warehouse(settings, logger=self.logger)
        async with warehouse:
            staging = warehouse.table_ref(table).staging()
            staged = await warehouse.count_rows(staging)
            await warehouse.drain(staging)
        self.logger.info(f"Drained {staged} rows from {staging}")
        echo_summary({'success': True, 'table': str(staging), 'rows_drained': staged})
        return True

    async def dispatch(self, request: JobRequest) -> bool:
        if not request.table:
            raise ConfigurationError("No table given; pass --table, SYNC_TABLE or an event payload with 'table'")
        self.logger.info(f"Running {request.method.value} for table {request.table}")
        if request.method == SyncMethod.SYNC:
            return await self.run_sync(request)
        elif request.method == SyncMethod.COUNT:
            return await self.count(request.table)
        elif request.method == SyncMethod.DRAIN_STAGING:
            return await self.drain_staging(request.table)
        raise SyncError(f"Unhandled method {request.method.value}")

    def run(self, coroutine) -> None:
        """Run a command coroutine and exit with its status"""
        try:
            success = asyncio.run(coroutine)
        except SyncError as e:
            self.logger.error(f"{type(e).__name__}: {e}")
            echo_summary({'success': False, 'error': f"{type(e).__name__}: {e}"})
            success = False
        except Exception as e:
            self.logger.error(f"Unexpected error: {e}\n{traceback.format_exc()}")
            echo_summary({'success': False, 'error': f"{type(e).__name__}: {e}"})
            success = False
        sys.exit(0 if success else 1)


@click.group()
@click.option('--config', 'config_path', default=None, help='Path to the tables YAML (default: MIRRORSYNC_CONFIG or tables.yaml)')
@click.option('--env-file', default=None, help='Path to a .env file')
@click.option('--log-level', default='INFO',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']),
              help='Set the logging level')
@click.pass_context
def cli(ctx, config_path, env_file, log_level):
    """mirrorsync - mirror MongoDB collections into warehouse tables"""
    setup_logging(getattr(logging, log_level.upper()))
    config_path = config_path or os.environ.get("MIRRORSYNC_CONFIG") or DEFAULT_CONFIG_PATH
    ctx.ensure_object(dict)
    ctx.obj['cli'] = SyncCLI(config_path, env_file=env_file)


@cli.command()
@click.option('--table', default=None, help='Destination table (default: SYNC_TABLE)')
@click.option('--event', default=None, help='Base64-encoded JSON event payload')
@click.option('--method', default=None, type=click.Choice([m.value for m in SyncMethod]),
              help='Operation to run (default: METHOD or sync)')
@click.pass_context
def sync(ctx, table, event, method):
    """Run a table job, by default a full sync"""
    cli_instance: SyncCLI = ctx.obj['cli']

    async def _run():
        request = resolve_job_request(event=event, table=table, method=method)
        return await cli_instance.dispatch(request)

    cli_instance.run(_run())


@cli.command()
@click.option('--table', default=None, help='Validate only this table')
@click.pass_context
def validate(ctx, table):
    """Validate the tables configuration"""
    cli_instance: SyncCLI = ctx.obj['cli']
    try:
        configs = ConfigLoader.load_from_yaml(cli_instance.config_path)
        if table:
            configs = {table: ConfigLoader.get_table_config(configs, table)}
    except SyncError as e:
        click.echo(f"Configuration error: {e}")
        sys.exit(1)

    failed = False
    for name, table_config in configs.items():
        issues = ConfigLoader.validate_config(table_config)
        if issues:
            failed = True
            click.echo(f"{name}: {len(issues)} issue(s)")
            for issue in issues:
                click.echo(f"  - {issue}")
        else:
            click.echo(f"{name}: ok")
    sys.exit(1 if failed else 0)


@cli.command('drain-staging')
@click.option('--table', required=True, help='Destination table whose staging table should be drained')
@click.pass_context
def drain_staging(ctx, table):
    """Empty a staging table left behind by a failed run"""
    cli_instance: SyncCLI = ctx.obj['cli']
    cli_instance.run(cli_instance.drain_staging(table))


@cli.command()
@click.option('--table', required=True, help='Destination table')
@click.pass_context
def count(ctx, table):
    """Print the row count of a destination table"""
    cli_instance: SyncCLI = ctx.obj['cli']
    cli_instance.run(cli_instance.count(table))


if __name__ == "__main__":
    cli()
