"""CLI utility functions and error handling.

Output helpers keep machine-readable results on stdout and progress,
warnings and errors on stderr. Exit codes mirror ``KeelError.exit_code`` so
CI hosts can tell failure classes apart.

Example:
    from keel_core.cli.utils import error_exit, ExitCode

    if not path.exists():
        error_exit("Key file not found", exit_code=ExitCode.CONFIGURATION_ERROR, path=str(path))
"""

from __future__ import annotations

import sys
from enum import IntEnum
from typing import TYPE_CHECKING

import click

from keel_core.errors import KeelError

if TYPE_CHECKING:
    from typing import NoReturn


class ExitCode(IntEnum):
    """Exit codes for CLI commands."""

    SUCCESS = 0
    """Command completed successfully."""

    GENERAL_ERROR = 1
    """General error (catch-all for failures)."""

    CONFIGURATION_ERROR = 2
    """Invalid configuration, arguments or missing secrets."""

    BUILD_ERROR = 3
    """Build or image assembly failed."""

    SCAN_FAILURE = 4
    """Scan gate blocked the run or a scanner failed."""

    SIGNATURE_ERROR = 6
    """Signing or signature verification failed."""

    LOCK_ERROR = 7
    """Namespace or signing lock not acquired."""

    REGISTRY_ERROR = 8
    """Registry operation failed."""

    IMMUTABILITY_ERROR = 9
    """Tag already bound to another digest."""

    DEPLOY_ERROR = 10
    """Cluster apply failed."""

    APPROVAL_TIMEOUT = 11
    """No approval recorded in time."""

    STEP_TIMEOUT = 12
    """A pipeline step exceeded its timeout."""

    PROMOTION_GATE_ERROR = 13
    """Upstream stage gate did not hold."""

    INVALID_STATE = 14
    """Operation not valid for the run's state."""


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr.

    Example:
        error("Run not found", run_id="abc")
        # Output: Error: Run not found (run_id=abc)
    """
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        full_message = f"Error: {message} ({context_str})"
    else:
        full_message = f"Error: {message}"

    click.echo(full_message, err=True)


def error_exit(
    message: str,
    exit_code: int = ExitCode.GENERAL_ERROR,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with a code."""
    error(message, **context)
    sys.exit(int(exit_code))


def keel_error_exit(e: KeelError) -> NoReturn:
    """Report a pipeline error and exit with its code."""
    error_exit(str(e), exit_code=e.exit_code)


def warn(message: str, **context: str | int | bool | None) -> None:
    """Print a warning message to stderr."""
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        full_message = f"Warning: {message} ({context_str})"
    else:
        full_message = f"Warning: {message}"

    click.echo(full_message, err=True)


def success(message: str) -> None:
    """Print a result to stdout."""
    click.echo(message)


def info(message: str) -> None:
    """Print an informational message to stderr."""
    click.echo(message, err=True)


__all__ = [
    "ExitCode",
    "error",
    "error_exit",
    "info",
    "keel_error_exit",
    "success",
    "warn",
]
