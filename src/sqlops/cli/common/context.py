"""Application context management for the CLI."""

from dataclasses import dataclass

import typer

from sqlops.core.adapters.machines import WinRMExecutor
from sqlops.core.adapters.sqlagent import SqlServerConnector
from sqlops.core.auth import Credential
from sqlops.core.config import Settings


@dataclass
class AgentAppContext:
    """Application context holding settings and the SQL Server connector."""

    settings: Settings
    credential: Credential | None
    connector: SqlServerConnector


@dataclass
class SmoAppContext:
    """Application context holding settings and the machine executor."""

    settings: Settings
    executor: WinRMExecutor


def _credential(
    user: str | None, password: str | None, *, prompt: str
) -> Credential | None:
    """Return a credential for `user`, prompting for a missing password."""
    if not user:
        return None
    if password is None:
        password = typer.prompt(prompt, hide_input=True)
    return Credential(username=user, password=password)


def build_agent_context(
    settings: Settings, sql_user: str | None, sql_password: str | None
) -> AgentAppContext:
    """Build the agent context; no server is contacted here.

    Args:
        settings: Resolved sqlops settings.
        sql_user: Optional SQL login; integrated authentication when None.
        sql_password: Password for the SQL login.

    Returns:
        AgentAppContext: Context with a lazily connecting connector.
    """
    credential = _credential(
        sql_user, sql_password, prompt=f"Password for SQL login '{sql_user}'"
    )
    return AgentAppContext(
        settings=settings,
        credential=credential,
        connector=SqlServerConnector(credential, settings),
    )


def build_smo_context(settings: Settings) -> SmoAppContext:
    """Build the context for SMO commands."""
    return SmoAppContext(settings=settings, executor=WinRMExecutor(settings))


def windows_credential(user: str | None, password: str | None) -> Credential | None:
    """Return the WinRM credential for `user`, prompting for a missing password."""
    return _credential(user, password, prompt=f"Password for '{user}'")
