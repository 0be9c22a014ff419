"""Commands for inspecting SQL Server Management Objects installations."""

import socket

import typer
from rich.markup import escape

from sqlops.cli.common.context import (
    SmoAppContext,
    build_smo_context,
    windows_credential,
)
from sqlops.cli.common.exits import exit_for_results, warn_exit
from sqlops.cli.common.options import ComputerOpt, JsonOpt, WinPasswordOpt, WinUserOpt
from sqlops.cli.common.output import out
from sqlops.core.smo import probe_machines

smo_app = typer.Typer(
    help="SQL Server Management Objects (SMO) library operations.",
    no_args_is_help=False,
    invoke_without_command=True,
)


@smo_app.callback()
def _init(ctx: typer.Context):
    """Initialize SMO context."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)
    ctx.obj = build_smo_context(ctx.obj)


@smo_app.command("versions")
def versions(
    ctx: typer.Context,
    computer: list[str] = ComputerOpt,
    version: int | None = typer.Option(
        None, "--version", "-v", help="Only show this major version (e.g. 13)"
    ),
    user: str | None = WinUserOpt,
    password: str | None = WinPasswordOpt,
    as_json: bool = JsonOpt,
):
    """List installed SMO versions and flag the one loaded in-process."""
    appctx: SmoAppContext = ctx.obj
    machines = computer or [socket.gethostname()]
    credential = windows_credential(user, password)

    with out.status("Probing SMO installations..."):
        results = probe_machines(
            appctx.executor, machines, credential, version_filter=version
        )

    found = [v for r in results for v in r.versions]

    if as_json:
        out.json(found)
        exit_for_results(results, noun="machine probe(s)")
        return

    for r in results:
        if not r.ok:
            out.error(f"{r.machine}: {escape(r.error or '')}")

    if found:
        out.versions_table(found, title="SMO versions")

    exit_for_results(results, noun="machine probe(s)")

    if not found:
        warn_exit("No SMO versions found.", code=0)
