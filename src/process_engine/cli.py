"""
Process engine CLI
"""
import asyncio
import json
import logging
import sys

import click

from .config import EngineSettings, configure_logging
from .exceptions import EngineError
from .storage import create_in_memory_store


logger = logging.getLogger(__name__)

EXIT_STARTUP_FAILURE = 1
EXIT_MIGRATION_FAILURE = 2


def _settings(ctx: click.Context) -> EngineSettings:
    return ctx.obj["settings"]


@click.group()
@click.option("--log-level", default=None, help="Overrides LOG_LEVEL")
@click.pass_context
def cli(ctx, log_level):
    """Low-code process engine"""
    settings = EngineSettings.from_env()
    if log_level:
        settings.log_level = log_level.upper()
    configure_logging(settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


async def _open(settings: EngineSettings):
    from .runtime import open_runtime
    return await open_runtime(settings)


def _startup_failed(what: str, error: Exception):
    logger.error(f"{what} failed to start: {error}", exc_info=True)
    click.echo(f"{what} failed to start: {error}", err=True)
    sys.exit(EXIT_STARTUP_FAILURE)


@cli.command()
@click.option("--concurrency", type=int, default=None, help="Executions run at once")
@click.option("--prefetch/--no-prefetch", default=True, help="Run the cache prefetch pool")
@click.pass_context
def worker(ctx, concurrency, prefetch):
    """Run executions, resume waits and prefetch cache entries"""
    settings = _settings(ctx)
    if concurrency:
        settings.worker_concurrency = concurrency

    async def _run():
        try:
            runtime = await _open(settings)
        except Exception as e:
            _startup_failed("Worker", e)
        stop = asyncio.Event()
        tasks = [
            asyncio.create_task(runtime.worker.run()),
            asyncio.create_task(runtime.engine.waits.run()),
        ]
        if prefetch:
            tasks.append(asyncio.create_task(runtime.prefetch_pool.run()))
            tasks.append(asyncio.create_task(runtime.activity.run(60.0, stop)))
        click.echo(f"Worker {settings.worker_id} running")
        try:
            await asyncio.gather(*tasks)
        finally:
            stop.set()
            runtime.engine.waits.stop()
            await runtime.close()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("Worker stopped")


@cli.command()
@click.pass_context
def scheduler(ctx):
    """Fire due cron schedules"""
    settings = _settings(ctx)

    async def _run():
        try:
            runtime = await _open(settings)
        except Exception as e:
            _startup_failed("Scheduler", e)
        click.echo(f"Scheduler ticking every {runtime.scheduler.tick_interval}s")
        try:
            await runtime.scheduler.run()
        finally:
            await runtime.close()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("Scheduler stopped")


@cli.command()
@click.pass_context
def migrate(ctx):
    """Create the database schema"""
    from .storage.sqlalchemy_repository import DatabaseManager

    settings = _settings(ctx)

    async def _run():
        db_manager = DatabaseManager(settings.database_url)
        try:
            await db_manager.initialize(create_schema=True)
        finally:
            await db_manager.close()

    try:
        asyncio.run(_run())
    except Exception as e:
        logger.error(f"Migration failed: {e}", exc_info=True)
        click.echo(f"Migration failed: {e}", err=True)
        sys.exit(EXIT_MIGRATION_FAILURE)
    click.echo("Schema is up to date")


@cli.command()
@click.option("--workflow", "workflow_file", required=True, type=click.Path(exists=True, dir_okay=False),
              help="Workflow definition (YAML or JSON)")
@click.option("--data", default="{}", help="Input variables as JSON")
@click.pass_context
def test(ctx, workflow_file, data):
    """Dry-run a workflow definition; side effects are only recorded"""
    from .core.parser import WorkflowParser
    from .runtime import create_runtime

    settings = _settings(ctx)
    try:
        input_data = json.loads(data)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"--data is not valid JSON: {e}")

    async def _run():
        definition = WorkflowParser().read_file(workflow_file)
        runtime = create_runtime(settings, create_in_memory_store())
        try:
            return await runtime.engine.test_execution(definition, input_data, user_id="cli")
        finally:
            await runtime.close()

    try:
        result = asyncio.run(_run())
    except EngineError as e:
        click.echo(json.dumps({"error": e.kind, "message": e.message}, indent=2), err=True)
        sys.exit(EXIT_STARTUP_FAILURE)
    click.echo(json.dumps(result, indent=2, ensure_ascii=False, default=str))


@cli.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
def validate(workflow_file):
    """Check a workflow definition for errors and warnings"""
    from .core.parser import WorkflowParser

    parser = WorkflowParser()
    try:
        report = parser.validate(parser.read_file(workflow_file))
    except EngineError as e:
        report = {"errors": [e.message], "warnings": []}
    click.echo(json.dumps(report, indent=2, ensure_ascii=False))
    if report["errors"]:
        sys.exit(1)


@cli.command()
@click.pass_context
def purge(ctx):
    """Archive and delete rows past their retention window"""
    settings = _settings(ctx)

    async def _run():
        try:
            runtime = await _open(settings)
        except Exception as e:
            _startup_failed("Purge", e)
        try:
            return await runtime.store.purge_expired(settings.retention_days)
        finally:
            await runtime.close()

    counts = asyncio.run(_run())
    click.echo(json.dumps(counts))


@cli.command()
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", type=int, default=None, help="Port to bind to")
@click.pass_context
def serve(ctx, host, port):
    """Start the HTTP API"""
    import uvicorn
    from .api import create_app

    settings = _settings(ctx)
    host = host or settings.api_host
    port = port or settings.api_port
    click.echo(f"Starting API server on {host}:{port}")
    uvicorn.run(create_app(settings=settings), host=host, port=port,
                log_level=settings.log_level.lower())


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
