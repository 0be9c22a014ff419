"""Authentication and connection helpers for SQL Server.

This module centralizes creation of SQLAlchemy engines for SQL Server
instances and applies small normalization rules to server names so the
ODBC connection string the pyodbc dialect builds is always well-formed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine

from sqlops.core.config import Settings


@dataclass(frozen=True)
class Credential:
    """
    Username/password pair.

    Used as a SQL login for server connections and as the Windows account
    for WinRM sessions. None in either place means integrated authentication.
    """

    username: str
    password: str = field(repr=False, default="")


def _sanitize_server(server: str) -> tuple[str, int | None]:
    """
    Normalize a SQL Server target name.

    - Strips whitespace and a leading `tcp:` protocol prefix
    - Splits an explicit `host,port` pair
    - Keeps named instances (`host\\instance`) as they are

    Returns:
        (host, port) where port is None when not given.
    """
    value = server.strip()
    value = re.sub(r"^tcp:", "", value, flags=re.IGNORECASE)
    if not value:
        raise ValueError("Server name must not be empty.")
    if "," in value:
        host, _, port = value.partition(",")
        try:
            return host.strip(), int(port)
        except ValueError as exc:
            raise ValueError(f"Invalid port in server name '{server}'") from exc
    return value, None


def build_connection_url(
    server: str,
    credential: Credential | None,
    settings: Settings,
    *,
    database: str = "msdb",
) -> URL:
    """
    Build the SQLAlchemy URL for a SQL Server instance.

    Without a credential the connection uses Windows integrated
    authentication (`Trusted_Connection=yes`).
    """
    host, port = _sanitize_server(server)
    query = {
        "driver": settings.odbc_driver,
        "Encrypt": "yes" if settings.encrypt else "no",
        "TrustServerCertificate": "yes" if settings.trust_server_certificate else "no",
    }
    if credential is None:
        query["Trusted_Connection"] = "yes"

    return URL.create(
        "mssql+pyodbc",
        username=credential.username if credential else None,
        password=credential.password if credential else None,
        host=host,
        port=port,
        database=database,
        query=query,
    )


def get_engine(
    server: str,
    credential: Credential | None,
    settings: Settings,
) -> Engine:
    """Create an engine for one server; callers own its disposal."""
    url = build_connection_url(server, credential, settings)
    return create_engine(
        url,
        connect_args={"timeout": settings.connect_timeout},
        pool_pre_ping=True,
    )
