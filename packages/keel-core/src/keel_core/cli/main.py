"""Main entry point for the keel CLI.

Commands:
    keel run: Run the pipeline for a branch push
    keel resume: Re-evaluate a run waiting at an approval gate
    keel approve: Record an approval for a deploy stage
    keel cancel: Cancel a run
    keel status: Show one run or list recent runs
    keel history: Show the deployment log
    keel keys generate: Generate a signing key pair
    keel verify: Verify an image signature

Example:
    $ keel --help
    $ keel -c keel.yaml run --branch dev --commit 3f2c1a9 --build-id 42
"""

from __future__ import annotations

import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version
from pathlib import Path

import click

from keel_core.cli.keys import keys, verify_command
from keel_core.cli.runs import (
    approve_command,
    cancel_command,
    history_command,
    resume_command,
    run_command,
    status_command,
)
from keel_core.config import DEFAULT_CONFIG_FILE
from keel_core.errors import KeelError
from keel_core.telemetry import configure_logging


def _get_version() -> str:
    """Get the keel-core package version, or 'unknown' if not installed."""
    try:
        return get_version("keel-core")
    except PackageNotFoundError:
        return "unknown"


@click.group(
    name="keel",
    help="keel - build, scan, sign and promote container images.",
    epilog="Use 'keel <command> --help' for command-specific help.",
    context_settings={
        "help_option_names": ["-h", "--help"],
    },
)
@click.version_option(
    version=_get_version(),
    prog_name="keel",
    message="%(prog)s %(version)s",
)
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="KEEL_CONFIG",
    default=DEFAULT_CONFIG_FILE,
    show_default=True,
    help="Pipeline configuration file.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    envvar="KEEL_LOG_LEVEL",
    default="INFO",
    show_default=True,
)
@click.option(
    "--json-logs/--console-logs",
    default=True,
    show_default=True,
    help="Log format on stderr.",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path, log_level: str, json_logs: bool) -> None:
    """Root command group for the keel CLI."""
    configure_logging(log_level=log_level, json_output=json_logs)
    obj = ctx.ensure_object(dict)
    obj["config_path"] = config_path


cli.add_command(run_command)
cli.add_command(resume_command)
cli.add_command(approve_command)
cli.add_command(cancel_command)
cli.add_command(status_command)
cli.add_command(history_command)
cli.add_command(keys)
cli.add_command(verify_command)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the keel CLI.

    Args:
        argv: Command-line arguments (uses sys.argv if None).
    """
    try:
        cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
    except KeelError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(e.exit_code)


if __name__ == "__main__":
    main()
