"""Error taxonomy shared by the sqlops core.

Validation errors abort a whole invocation before any remote work starts.
Every other error is scoped to one unit of work (a server, a job on a
server, or a machine) and is turned into a per-unit result by the batch
loops in `sqlops.core.agent` and `sqlops.core.smo`.
"""

from __future__ import annotations


class SqlOpsError(RuntimeError):
    """Base class for all sqlops failures."""

    kind = "error"


class ValidationError(SqlOpsError, ValueError):
    """Raised when user-supplied options cannot be combined."""

    kind = "validation"


class ConfigError(SqlOpsError):
    """Raised when a configuration value is missing or malformed."""

    kind = "config"


class ConnectError(SqlOpsError):
    """Raised when a target server cannot be reached or logged into."""

    kind = "connection"

    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"Failed to connect to {target}: {reason}")


class ReferenceNotFoundError(SqlOpsError):
    """Raised when a named job, database, user or proxy does not exist."""

    kind = "not_found"

    def __init__(self, entity: str, name: str, where: str):
        self.entity = entity
        self.name = name
        self.where = where
        super().__init__(f"{entity} '{name}' does not exist on {where}")


class DuplicateStepError(ReferenceNotFoundError):
    """Raised when a step id or step name is already taken on a job."""

    kind = "duplicate"

    def __init__(self, field: str, value: object, job: str):
        self.entity = "Step"
        self.name = str(value)
        self.where = job
        self.field = field
        SqlOpsError.__init__(
            self, f"Step {field} '{value}' already exists on job '{job}'"
        )


class PersistenceError(SqlOpsError):
    """Raised when the server rejects a create/commit after validation passed."""

    kind = "persistence"


class QueryError(SqlOpsError):
    """Raised when reading from a connected server fails."""

    kind = "query"


class RemoteExecutionError(SqlOpsError):
    """Raised when a procedure cannot be executed on a target machine."""

    kind = "remote"

    def __init__(self, machine: str, reason: str):
        self.machine = machine
        self.reason = reason
        super().__init__(f"Remote execution on {machine} failed: {reason}")
