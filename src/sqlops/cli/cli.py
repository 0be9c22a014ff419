"""CLI application for SQL Server operations tooling."""

import typer

from sqlops.cli.commands.agent import app as agent_app
from sqlops.cli.commands.smo import smo_app
from sqlops.cli.common.exits import exit_from_exc
from sqlops.cli.common.log import configure_logging
from sqlops.core.config import load_settings
from sqlops.core.errors import ConfigError

app = typer.Typer(
    help="sqlops - SQL Server Agent and SMO operations tooling",
    no_args_is_help=True,
)

app.add_typer(agent_app, name="agent", help="Add / list SQL Server Agent job steps.")
app.add_typer(smo_app, name="smo")


@app.callback()
def _init(
    ctx: typer.Context,
    verbose: bool = typer.Option(
        False, "--verbose", help="Log debug details to stderr"
    ),
    env_file: str | None = typer.Option(
        None,
        "--env-file",
        envvar="SQLOPS_ENV_FILE",
        help="Read settings from this dotenv file instead of the environment",
    ),
):
    """Load settings and configure logging once per invocation."""
    try:
        settings = load_settings(env_file)
    except ConfigError as exc:
        exit_from_exc(exc, message=f"Configuration error: {exc}", code=1)
    configure_logging(settings.log_level, verbose=verbose)
    ctx.obj = settings


if __name__ == "__main__":
    app()
