"""Exit handling utilities for the CLI."""

from typing import Any, Iterable, NoReturn

import typer
from rich.markup import escape

from sqlops.cli.common.output import out


def warn_exit(msg: str, code: int = 0) -> NoReturn:
    """Exit with a warning message and optional exit code."""
    out.warn(msg)
    raise typer.Exit(code)


def exit_from_exc(exc: Exception, *, message: str, code: int = 1) -> NoReturn:
    """
    Print an error message and exit, chaining the original exception.

    Exists to satisfy pylint W0707 and to standardize error exits.
    """
    out.error(escape(message))
    raise typer.Exit(code) from exc


def exit_for_results(results: Iterable[Any], *, noun: str) -> None:
    """Exit with code 1 if any per-unit result failed; return otherwise."""
    failed = [r for r in results if not getattr(r, "ok", False)]
    if failed:
        out.error(f"{len(failed)} {noun} failed.")
        raise typer.Exit(1)
