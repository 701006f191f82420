"""
Main CLI entry point for DataBridge.

This module provides the command-line interface for running staged
migrations of catalog projects and inspecting their state.
"""

import asyncio
import json
import sys
import uuid
from pathlib import Path

import click
from dotenv import load_dotenv

from databridge import __version__
from databridge.cli.context import BridgeContext
from databridge.cli.decorators import handle_errors, pass_context
from databridge.cli.utils import (
    create_progress_bar,
    echo_error,
    echo_info,
    echo_success,
    print_execution,
    print_stats,
)
from databridge.client.exceptions import NotFoundError
from databridge.config import ErrorHandling, LoadStrategy, PipelineConfig
from databridge.migration.orchestrator import ExecutionStatus, PipelineOrchestrator
from databridge.migration.queue import AsyncJobQueue
from databridge.migration.stages import StageContext
from databridge.migration.worker import StageRunner
from databridge.utils.logging import configure_logging, get_logger

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)

# Seconds between progress refreshes while a run is in flight
_POLL_INTERVAL = 0.5


@click.group()
@click.version_option(version=__version__, prog_name="databridge")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
    envvar="DATABRIDGE_CONFIG",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Set console logging level (overrides logging.level)",
    envvar="DATABRIDGE_LOG_LEVEL",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    help="Also log to this file",
    envvar="DATABRIDGE_LOG_FILE",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    log_level: str | None,
    log_file: Path | None,
) -> None:
    """DataBridge - Staged migrations between heterogeneous databases.

    Examples:

        # Run every stage of a catalog project
        databridge --config config.yaml run sales

        # Show the stage table of an execution
        databridge --config config.yaml status 6f1c...

        # Print the stored report as JSON
        databridge --config config.yaml report 6f1c...
    """
    # Reconfigured from the logging section once BridgeContext loads the configuration
    configure_logging(level=log_level or "WARNING", log_file=str(log_file) if log_file else None)
    ctx.obj = BridgeContext(config_path=config, log_level=log_level, log_file=log_file)
    logger.debug("cli_initialized", config=str(config) if config else None, log_level=log_level)


async def run_pipeline(
    bridge: BridgeContext,
    project_id: str,
    execution_id: str,
    pipeline: PipelineConfig,
    timeout: float | None,
) -> ExecutionStatus:
    """Start an execution on an in-process queue and wait until it settles."""
    config = bridge.config
    context = StageContext.from_config(config, bridge.state, bridge.catalog)
    queue = AsyncJobQueue(config.queue, processor=StageRunner(context))
    orchestrator = PipelineOrchestrator(queue, bridge.state)

    await queue.start()
    try:
        orchestrator.start_execution(project_id, execution_id, pipeline)
        with create_progress_bar() as progress:
            task = progress.add_task(f"Execution {execution_id}", total=100)
            idle = asyncio.create_task(queue.wait_until_idle(timeout))
            while not idle.done():
                progress.update(task, completed=orchestrator.status(execution_id).progress)
                await asyncio.wait({idle}, timeout=_POLL_INTERVAL)
            progress.update(task, completed=orchestrator.status(execution_id).progress)
            await idle
    finally:
        await queue.close()

    return orchestrator.status(execution_id)


@cli.command()
@click.argument("project_id")
@click.option("--execution-id", help="Execution id (generated when omitted)")
@click.option(
    "--error-handling",
    type=click.Choice([mode.value for mode in ErrorHandling]),
    help="Override the configured error handling mode",
)
@click.option(
    "--load-strategy",
    type=click.Choice([strategy.value for strategy in LoadStrategy]),
    help="Override the configured load strategy",
)
@click.option("--batch-size", type=int, help="Override the configured batch size")
@click.option("--skip-validation", is_flag=True, help="Skip the validation checks")
@click.option("--timeout", type=float, help="Give up waiting after this many seconds")
@pass_context
@handle_errors
def run(
    ctx: BridgeContext,
    project_id: str,
    execution_id: str | None,
    error_handling: str | None,
    load_strategy: str | None,
    batch_size: int | None,
    skip_validation: bool,
    timeout: float | None,
) -> None:
    """Run all six stages of PROJECT_ID and wait for the result."""
    ctx.catalog.get_project(project_id)

    overrides = {
        "error_handling": error_handling,
        "load_strategy": load_strategy,
        "batch_size": batch_size,
    }
    if skip_validation:
        overrides["validate_data"] = False
    pipeline = PipelineConfig.model_validate(
        {
            **ctx.config.pipeline.model_dump(),
            **{key: value for key, value in overrides.items() if value is not None},
        }
    )
    execution_id = execution_id or str(uuid.uuid4())
    echo_info(f"Starting execution {execution_id} of project {project_id}")

    try:
        status = asyncio.run(run_pipeline(ctx, project_id, execution_id, pipeline, timeout))
    except TimeoutError as e:
        echo_error(f"Execution {execution_id} did not finish within {timeout}s")
        raise click.exceptions.Exit(1) from e

    print_execution(status)
    if status.status != "completed":
        echo_error(f"Execution {execution_id} {status.status}")
        raise click.exceptions.Exit(1)
    echo_success(
        f"Execution {execution_id} completed: {status.records_processed:,} records processed, "
        f"{status.records_failed:,} failed"
    )


@cli.command()
@click.argument("execution_id")
@pass_context
@handle_errors
def status(ctx: BridgeContext, execution_id: str) -> None:
    """Show the stage table of EXECUTION_ID."""
    orchestrator = PipelineOrchestrator(AsyncJobQueue(ctx.config.queue), ctx.state)
    print_execution(orchestrator.status(execution_id))


@cli.command()
@click.argument("execution_id")
@click.option("--summary-only", is_flag=True, help="Print only the summary table")
@pass_context
@handle_errors
def report(ctx: BridgeContext, execution_id: str, summary_only: bool) -> None:
    """Print the migration report of EXECUTION_ID."""
    stored = ctx.state.get_report(execution_id)
    if stored is None:
        raise NotFoundError(f"No report for execution {execution_id}")

    if summary_only:
        print_stats(stored.summary, title=f"Report {execution_id}")
        return

    click.echo(
        json.dumps(
            {
                "execution_id": stored.execution_id,
                "project_id": stored.project_id,
                "project_name": stored.project_name,
                "start_time": stored.start_time.isoformat() if stored.start_time else None,
                "end_time": stored.end_time.isoformat() if stored.end_time else None,
                "duration_ms": stored.duration_ms,
                "summary": stored.summary,
                "stages": stored.stages,
                "validations": stored.validations,
                "table_details": stored.table_details,
                "errors": stored.errors or [],
                "warnings": stored.warnings or [],
            },
            indent=2,
        )
    )


@cli.command()
@click.argument("execution_id")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@pass_context
@handle_errors
def delete(ctx: BridgeContext, execution_id: str, yes: bool) -> None:
    """Delete the stored state of EXECUTION_ID."""
    if not yes:
        click.confirm(f"Delete all state of execution {execution_id}?", abort=True)

    removed = ctx.state.delete_execution(execution_id)
    if removed == 0:
        raise NotFoundError(f"Unknown execution: {execution_id}")
    echo_success(f"Deleted {removed:,} rows of execution {execution_id}")


def main() -> int:
    """Main entry point for CLI."""
    try:
        result = cli(standalone_mode=False)
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except click.Abort:
        click.echo("Aborted!", err=True)
        return 1
    except Exception as e:
        logger.error("unexpected_error", error=str(e), exc_info=True)
        click.echo(f"Error: {e}", err=True)
        return 1
    # click returns the exit code of click.exceptions.Exit when not standalone
    return result if isinstance(result, int) else 0


if __name__ == "__main__":
    sys.exit(main())
