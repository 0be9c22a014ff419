from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from loguru import logger
from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from sqlops.core.agent import (
    Job,
    JobStep,
    StepAction,
    Subsystem,
    flags_to_mask,
    mask_to_flags,
)
from sqlops.core.auth import Credential, get_engine
from sqlops.core.config import Settings
from sqlops.core.errors import ConnectError, PersistenceError, QueryError

_JOB_SQL = text(
    "SELECT CONVERT(nvarchar(36), job_id) AS job_id, name "
    "FROM msdb.dbo.sysjobs WHERE name = :name"
)

_STEPS_SQL = text(
    """
    SELECT s.step_id, s.step_name, s.subsystem, s.command,
           s.cmdexec_success_code,
           s.on_success_action, s.on_success_step_id,
           s.on_fail_action, s.on_fail_step_id,
           s.database_name, s.database_user_name,
           s.retry_attempts, s.retry_interval,
           s.output_file_name, p.name AS proxy_name, s.flags
    FROM msdb.dbo.sysjobsteps AS s
    LEFT JOIN msdb.dbo.sysproxies AS p ON p.proxy_id = s.proxy_id
    WHERE s.job_id = CONVERT(uniqueidentifier, :job_id)
    ORDER BY s.step_id
    """
)

_DATABASES_SQL = text("SELECT name FROM sys.databases")

_PROXIES_SQL = text("SELECT name FROM msdb.dbo.sysproxies")

# S = SQL user, U = Windows user, G = Windows group, E/X = Entra user/group
_USERS_SQL_TEMPLATE = (
    "SELECT name FROM {database}.sys.database_principals "
    "WHERE type IN ('S', 'U', 'G', 'E', 'X')"
)

_ADD_STEP_SQL = text(
    """
    EXEC msdb.dbo.sp_add_jobstep
        @job_id = :job_id,
        @step_id = :step_id,
        @step_name = :step_name,
        @subsystem = :subsystem,
        @command = :command,
        @cmdexec_success_code = :cmdexec_success_code,
        @on_success_action = :on_success_action,
        @on_success_step_id = :on_success_step_id,
        @on_fail_action = :on_fail_action,
        @on_fail_step_id = :on_fail_step_id,
        @database_name = :database_name,
        @database_user_name = :database_user_name,
        @retry_attempts = :retry_attempts,
        @retry_interval = :retry_interval,
        @output_file_name = :output_file_name,
        @flags = :flags,
        @proxy_name = :proxy_name
    """
)


class SqlAgentAdapter:
    """Adapter around msdb catalog views and stored procedures for one server."""

    def __init__(self, connection: Connection, server: str) -> None:
        """Wrap an open connection; the caller owns its lifetime."""
        self.connection = connection
        self.server = server

    def _names(self, statement, what: str) -> list[str]:
        try:
            rows = self.connection.execute(statement).all()
        except SQLAlchemyError as exc:
            raise QueryError(f"Failed to list {what} on {self.server}: {exc}") from exc
        return [row.name for row in rows]

    def get_job(self, name: str) -> Job | None:
        """Return the job with its steps, or None if no job has that name."""
        try:
            row = self.connection.execute(_JOB_SQL, {"name": name}).first()
            if row is None:
                return None
            steps = self.connection.execute(_STEPS_SQL, {"job_id": row.job_id}).all()
        except SQLAlchemyError as exc:
            raise QueryError(
                f"Failed to read job '{name}' on {self.server}: {exc}"
            ) from exc

        try:
            mapped = tuple(
                JobStep(
                    step_id=s.step_id,
                    name=s.step_name,
                    subsystem=Subsystem.from_agent_name(s.subsystem),
                    command=s.command,
                    cmdexec_success_code=s.cmdexec_success_code,
                    on_success_action=StepAction.from_code(s.on_success_action),
                    on_success_step_id=s.on_success_step_id,
                    on_fail_action=StepAction.from_code(s.on_fail_action),
                    on_fail_step_id=s.on_fail_step_id,
                    database=s.database_name,
                    database_user=s.database_user_name,
                    retry_attempts=s.retry_attempts,
                    retry_interval=s.retry_interval,
                    output_file_name=s.output_file_name,
                    proxy_name=s.proxy_name,
                    flags=mask_to_flags(s.flags or 0),
                )
                for s in steps
            )
        except ValueError as exc:
            raise QueryError(
                f"Unreadable step row for job '{name}' on {self.server}: {exc}"
            ) from exc

        return Job(id=row.job_id, name=row.name, steps=mapped)

    def list_databases(self) -> list[str]:
        """List all databases on the server."""
        return self._names(_DATABASES_SQL, "databases")

    def list_database_users(self, database: str) -> list[str]:
        """List users of one database (the name is quoted, not bound)."""
        quoted = self.connection.dialect.identifier_preparer.quote_identifier(database)
        statement = text(_USERS_SQL_TEMPLATE.format(database=quoted))
        return self._names(statement, f"users of database '{database}'")

    def list_proxies(self) -> list[str]:
        """List SQL Server Agent proxies."""
        return self._names(_PROXIES_SQL, "agent proxies")

    def add_job_step(self, job: Job, step: JobStep) -> None:
        """Create the step through sp_add_jobstep and commit."""
        params = {
            "job_id": job.id,
            "step_id": step.step_id,
            "step_name": step.name,
            "subsystem": step.subsystem.agent_name,
            "command": step.command,
            "cmdexec_success_code": step.cmdexec_success_code,
            "on_success_action": step.on_success_action.code,
            "on_success_step_id": step.on_success_step_id,
            "on_fail_action": step.on_fail_action.code,
            "on_fail_step_id": step.on_fail_step_id,
            "database_name": step.database,
            "database_user_name": step.database_user,
            "retry_attempts": step.retry_attempts,
            "retry_interval": step.retry_interval,
            "output_file_name": step.output_file_name,
            "flags": flags_to_mask(step.flags),
            "proxy_name": step.proxy_name,
        }
        try:
            self.connection.execute(_ADD_STEP_SQL, params)
            self.connection.commit()
        except SQLAlchemyError as exc:
            self.connection.rollback()
            raise PersistenceError(
                f"sp_add_jobstep failed on {self.server}: {exc}"
            ) from exc


@contextmanager
def open_agent(
    server: str,
    credential: Credential | None,
    settings: Settings,
) -> Iterator[SqlAgentAdapter]:
    """
    Connect to one server and yield its agent adapter.

    The connection is closed and the engine disposed on every exit path.
    Connection-level failures surface as ConnectError.
    """
    try:
        engine = get_engine(server, credential, settings)
    except ValueError as exc:
        raise ConnectError(server, str(exc)) from exc

    try:
        try:
            connection = engine.connect()
        except DBAPIError as exc:
            raise ConnectError(server, str(exc.orig or exc)) from exc
        logger.debug("Connected to {}", server)
        with connection:
            yield SqlAgentAdapter(connection, server)
    finally:
        engine.dispose()
        logger.debug("Released connection to {}", server)


class SqlServerConnector:
    """Callable connector binding a credential and settings to `open_agent`."""

    def __init__(self, credential: Credential | None, settings: Settings) -> None:
        self.credential = credential
        self.settings = settings

    def __call__(self, server: str):
        return open_agent(server, self.credential, self.settings)
