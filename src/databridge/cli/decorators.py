"""
Decorators for CLI commands.

This module provides decorators for error handling and context passing.
"""

import functools
from collections.abc import Callable

import click

from databridge.cli.context import BridgeContext
from databridge.client.exceptions import (
    APIError,
    ConfigurationError,
    MigrationError,
    NotFoundError,
    StateError,
)
from databridge.utils.logging import get_logger

logger = get_logger(__name__)


def pass_context(f: Callable) -> Callable:
    """
    Decorator to pass BridgeContext to command function.

    Usage:
        @click.command()
        @pass_context
        def my_command(ctx: BridgeContext):
            print(ctx.config)
    """

    @click.pass_context
    @functools.wraps(f)
    def wrapper(click_ctx: click.Context, *args, **kwargs):
        bridge_ctx: BridgeContext = click_ctx.obj
        try:
            return f(bridge_ctx, *args, **kwargs)
        finally:
            bridge_ctx.cleanup()

    return wrapper


def handle_errors(f: Callable) -> Callable:
    """
    Decorator to handle common errors in CLI commands.

    Exit codes:
        0: Success
        1: General error
        2: Configuration error
        3: Not found
        4: API error
        5: State error
        6: Migration error
    """

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)

        except (click.exceptions.Exit, click.Abort):
            raise

        except ConfigurationError as e:
            logger.error("configuration_error", error=str(e))
            click.echo(f"Configuration Error: {e}", err=True)
            click.echo(
                "\nPlease check your configuration file and project catalog.",
                err=True,
            )
            raise click.exceptions.Exit(2) from e

        except NotFoundError as e:
            logger.error("not_found", error=str(e))
            click.echo(f"Not Found: {e}", err=True)
            raise click.exceptions.Exit(3) from e

        except APIError as e:
            logger.error("api_error", error=str(e))
            click.echo(f"API Error: {e}", err=True)
            if e.status_code:
                click.echo(f"\nResponse status: {e.status_code}", err=True)
            raise click.exceptions.Exit(4) from e

        except StateError as e:
            logger.error("state_error", error=str(e))
            click.echo(f"State Error: {e}", err=True)
            click.echo(
                "\nThere was an error accessing the execution state database.",
                err=True,
            )
            raise click.exceptions.Exit(5) from e

        except MigrationError as e:
            logger.error("migration_error", error=str(e))
            click.echo(f"Migration Error: {e}", err=True)
            raise click.exceptions.Exit(6) from e

        except Exception as e:
            logger.error("unexpected_error", error=str(e), exc_info=True)
            click.echo(f"Unexpected Error: {e}", err=True)
            click.echo(
                "\nAn unexpected error occurred. Please check the logs for details.",
                err=True,
            )
            raise click.exceptions.Exit(1) from e

    return wrapper
