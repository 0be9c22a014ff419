"""Common CLI options for the CLI."""

import typer

ServerOpt = typer.Option(
    ...,
    "--server",
    "-s",
    help="Target SQL Server instance (host, host\\instance or host,port). Reusable.",
    show_default=False,
)

JobOpt = typer.Option(
    ...,
    "--job",
    "-j",
    help="SQL Server Agent job name. Reusable.",
    show_default=False,
)

SqlUserOpt = typer.Option(
    None,
    "--sql-user",
    "-u",
    envvar="SQLOPS_SQL_USER",
    help="SQL login (Windows integrated authentication when omitted)",
)

SqlPasswordOpt = typer.Option(
    None,
    "--sql-password",
    envvar="SQLOPS_SQL_PASSWORD",
    help="Password for --sql-user (prompted when omitted)",
    show_default=False,
)

ComputerOpt = typer.Option(
    [],
    "--computer",
    "-c",
    help="Target machine (default: local machine). Reusable.",
    show_default=False,
)

WinUserOpt = typer.Option(
    None,
    "--user",
    envvar="SQLOPS_WINRM_USER",
    help="Windows account for WinRM (Kerberos with current ticket when omitted)",
)

WinPasswordOpt = typer.Option(
    None,
    "--password",
    envvar="SQLOPS_WINRM_PASSWORD",
    help="Password for --user (prompted when omitted)",
    show_default=False,
)

ConfirmOpt = typer.Option(
    False,
    "--confirm/--no-confirm",
    help="Ask for confirmation before creating steps",
)

DryRunOpt = typer.Option(
    False,
    "--dry-run",
    help="Show which steps would be created, but don't create anything",
)

JsonOpt = typer.Option(
    False,
    "--json",
    help="Print results as JSON instead of a table",
)
