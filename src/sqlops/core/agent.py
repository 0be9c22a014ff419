"""Core SQL Server Agent job-step domain models and creation logic.

This module defines the job-step data structures and the domain-level
operations for validating, resolving and creating SQL Server Agent job
steps across many servers and jobs. It is free of CLI concerns (output,
prompts, confirmation); the server is reached through an `AgentAdapter`
yielded by a connector so tests can swap in an in-memory server.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Protocol

from loguru import logger

from sqlops.core.errors import (
    ConnectError,
    DuplicateStepError,
    PersistenceError,
    ReferenceNotFoundError,
    SqlOpsError,
    ValidationError,
)


class Subsystem(str, Enum):
    """Execution engines a job step can run under."""

    ACTIVE_SCRIPTING = "ActiveScripting"
    ANALYSIS_COMMAND = "AnalysisCommand"
    ANALYSIS_QUERY = "AnalysisQuery"
    CMD_EXEC = "CmdExec"
    DISTRIBUTION = "Distribution"
    LOG_READER = "LogReader"
    MERGE = "Merge"
    POWERSHELL = "PowerShell"
    QUEUE_READER = "QueueReader"
    SNAPSHOT = "Snapshot"
    SSIS = "Ssis"
    TRANSACT_SQL = "TransactSql"

    @property
    def agent_name(self) -> str:
        """Name msdb uses for this subsystem (`@subsystem` of sp_add_jobstep)."""
        return _AGENT_SUBSYSTEMS[self]

    @classmethod
    def from_agent_name(cls, name: str) -> Subsystem:
        for member, agent_name in _AGENT_SUBSYSTEMS.items():
            if agent_name.lower() == name.lower():
                return member
        raise ValueError(f"Unknown agent subsystem '{name}'")


_AGENT_SUBSYSTEMS = {
    Subsystem.ACTIVE_SCRIPTING: "ActiveScripting",
    Subsystem.ANALYSIS_COMMAND: "ANALYSISCOMMAND",
    Subsystem.ANALYSIS_QUERY: "ANALYSISQUERY",
    Subsystem.CMD_EXEC: "CmdExec",
    Subsystem.DISTRIBUTION: "Distribution",
    Subsystem.LOG_READER: "LogReader",
    Subsystem.MERGE: "Merge",
    Subsystem.POWERSHELL: "PowerShell",
    Subsystem.QUEUE_READER: "QueueReader",
    Subsystem.SNAPSHOT: "Snapshot",
    Subsystem.SSIS: "SSIS",
    Subsystem.TRANSACT_SQL: "TSQL",
}


class StepAction(str, Enum):
    """What the agent does after a step succeeds or fails."""

    QUIT_WITH_SUCCESS = "QuitWithSuccess"
    QUIT_WITH_FAILURE = "QuitWithFailure"
    GO_TO_NEXT_STEP = "GoToNextStep"
    GO_TO_STEP = "GoToStep"

    @property
    def code(self) -> int:
        """Numeric action code stored in msdb.dbo.sysjobsteps."""
        return _ACTION_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> StepAction:
        for member, value in _ACTION_CODES.items():
            if value == code:
                return member
        raise ValueError(f"Unknown step action code {code}")


_ACTION_CODES = {
    StepAction.QUIT_WITH_SUCCESS: 1,
    StepAction.QUIT_WITH_FAILURE: 2,
    StepAction.GO_TO_NEXT_STEP: 3,
    StepAction.GO_TO_STEP: 4,
}


class StepFlag(str, Enum):
    """Logging and behavior flags of a job step."""

    APPEND_TO_LOG_FILE = "AppendToLogFile"
    APPEND_TO_JOB_HISTORY = "AppendToJobHistory"
    LOG_TO_TABLE_WITH_OVERWRITE = "LogToTableWithOverwrite"
    APPEND_TO_TABLE_LOG = "AppendToTableLog"
    APPEND_ALL_CMDEXEC_OUTPUT_TO_JOB_HISTORY = "AppendAllCmdExecOutputToJobHistory"
    PROVIDE_STOP_PROCESS_EVENT = "ProvideStopProcessEvent"

    @property
    def bit(self) -> int:
        return _FLAG_BITS[self]


_FLAG_BITS = {
    StepFlag.APPEND_TO_LOG_FILE: 2,
    StepFlag.APPEND_TO_JOB_HISTORY: 4,
    StepFlag.LOG_TO_TABLE_WITH_OVERWRITE: 8,
    StepFlag.APPEND_TO_TABLE_LOG: 16,
    StepFlag.APPEND_ALL_CMDEXEC_OUTPUT_TO_JOB_HISTORY: 32,
    StepFlag.PROVIDE_STOP_PROCESS_EVENT: 64,
}


def flags_to_mask(flags: Iterable[StepFlag]) -> int:
    """OR the bits of a flag set into the integer msdb stores."""
    mask = 0
    for flag in flags:
        mask |= flag.bit
    return mask


def mask_to_flags(mask: int) -> frozenset[StepFlag]:
    """Expand an msdb flag mask back into a flag set (unknown bits are ignored)."""
    return frozenset(flag for flag, bit in _FLAG_BITS.items() if mask & bit)


@dataclass(frozen=True)
class JobStep:
    """
    A single step of a SQL Server Agent job.

    Attributes:
        step_id: Position of the step within its job (1-based, unique).
        name: Step name, unique within its job.
        subsystem: Engine that interprets `command`.
        command: Opaque command text for the subsystem.
        database: Database the command runs in (T-SQL steps).
        database_user: User the command runs as inside `database`.
        proxy_name: Agent proxy the step runs under.
        flags: Logging and behavior flags.
    """

    step_id: int
    name: str
    subsystem: Subsystem = Subsystem.TRANSACT_SQL
    command: str | None = None
    cmdexec_success_code: int = 0
    on_success_action: StepAction = StepAction.QUIT_WITH_SUCCESS
    on_success_step_id: int = 0
    on_fail_action: StepAction = StepAction.QUIT_WITH_FAILURE
    on_fail_step_id: int = 0
    database: str | None = None
    database_user: str | None = None
    retry_attempts: int = 0
    retry_interval: int = 0
    output_file_name: str | None = None
    proxy_name: str | None = None
    flags: frozenset[StepFlag] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Job:
    """
    A SQL Server Agent job and its steps.

    Attributes:
        id: msdb job id (uniqueidentifier rendered as text).
        name: Job name, unique per server.
        steps: Steps ordered by step id.
    """

    id: str
    name: str
    steps: tuple[JobStep, ...] = ()


@dataclass(frozen=True)
class StepSpec:
    """What the caller asked for; `step_id=None` means append to the job."""

    name: str
    step_id: int | None = None
    subsystem: Subsystem = Subsystem.TRANSACT_SQL
    command: str | None = None
    cmdexec_success_code: int = 0
    on_success_action: StepAction = StepAction.QUIT_WITH_SUCCESS
    on_success_step_id: int = 0
    on_fail_action: StepAction = StepAction.QUIT_WITH_FAILURE
    on_fail_step_id: int = 0
    database: str | None = None
    database_user: str | None = None
    retry_attempts: int = 0
    retry_interval: int = 0
    output_file_name: str | None = None
    proxy_name: str | None = None
    flags: frozenset[StepFlag] = field(default_factory=frozenset)


class UnitStatus(str, Enum):
    """Outcome of one (server, job) unit of work."""

    CREATED = "CREATED"
    PLANNED = "PLANNED"
    LISTED = "LISTED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class JobStepResult:
    """Result of creating a step on one job of one server."""

    server: str
    job: str | None
    status: UnitStatus
    step: JobStep | None = None
    error_kind: str | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != UnitStatus.FAILED


@dataclass(frozen=True)
class JobStepListing:
    """Steps read from one job of one server."""

    server: str
    job: str | None
    status: UnitStatus
    steps: tuple[JobStep, ...] = ()
    error_kind: str | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != UnitStatus.FAILED


class AgentAdapter(Protocol):
    """Interface to the SQL Server Agent of a single, already connected server."""

    def get_job(self, name: str) -> Job | None:
        """Return the job with its steps, or None when it does not exist."""
        ...

    def list_databases(self) -> list[str]:
        """Return the names of all databases on the server."""
        ...

    def list_database_users(self, database: str) -> list[str]:
        """Return the user names defined in one database."""
        ...

    def list_proxies(self) -> list[str]:
        """Return the names of all agent proxies."""
        ...

    def add_job_step(self, job: Job, step: JobStep) -> None:
        """Create the step on the job and commit the change."""
        ...


Connector = Callable[[str], AbstractContextManager[AgentAdapter]]


def validate_step_spec(spec: StepSpec) -> None:
    """
    Reject option combinations that can never succeed.

    Runs before any server is contacted so a bad invocation fails as a whole.

    Raises:
        ValidationError: On the first invalid combination found.
    """
    if not spec.name or not spec.name.strip():
        raise ValidationError("Parameter StepName must not be empty")

    if spec.step_id is not None and spec.step_id < 1:
        raise ValidationError("Parameter StepId must be >= 1")

    for label, action, target in (
        ("OnSuccessStepId", spec.on_success_action, spec.on_success_step_id),
        ("OnFailStepId", spec.on_fail_action, spec.on_fail_step_id),
    ):
        if action != StepAction.GO_TO_STEP and target >= 1:
            raise ValidationError(
                f"Parameter {label} can only be used with action GoToStep"
            )
        if action == StepAction.GO_TO_STEP and target < 1:
            raise ValidationError(f"Action GoToStep requires {label} >= 1")

    if spec.retry_attempts < 0:
        raise ValidationError("Parameter RetryAttempts must be >= 0")
    if spec.retry_interval < 0:
        raise ValidationError("Parameter RetryInterval must be >= 0")

    if spec.database_user and not spec.database:
        raise ValidationError("Parameter DatabaseUser requires Database")


def _match_name(candidates: Iterable[str], wanted: str) -> str | None:
    """Return the catalog spelling of `wanted` (case-insensitive), or None."""
    folded = wanted.casefold()
    for candidate in candidates:
        if candidate.casefold() == folded:
            return candidate
    return None


def resolve_step(
    agent: AgentAdapter,
    job: Job,
    spec: StepSpec,
    *,
    server: str,
) -> JobStep:
    """
    Turn a StepSpec into the concrete JobStep to create on `job`.

    Raises:
        DuplicateStepError: If the step id or step name is already used.
        ReferenceNotFoundError: If the database, database user or proxy
                                does not exist on the server.
    """
    step_id = spec.step_id if spec.step_id is not None else len(job.steps) + 1
    if any(s.step_id == step_id for s in job.steps):
        raise DuplicateStepError("id", step_id, job.name)

    if _match_name((s.name for s in job.steps), spec.name) is not None:
        raise DuplicateStepError("name", spec.name, job.name)

    database = None
    if spec.database:
        database = _match_name(agent.list_databases(), spec.database)
        if database is None:
            raise ReferenceNotFoundError("Database", spec.database, server)

    database_user = None
    if spec.database_user:
        # validated against the database resolved above
        database_user = _match_name(
            agent.list_database_users(database), spec.database_user
        )
        if database_user is None:
            raise ReferenceNotFoundError(
                "Database user", spec.database_user, f"{server}/{database}"
            )

    proxy_name = None
    if spec.proxy_name:
        proxy_name = _match_name(agent.list_proxies(), spec.proxy_name)
        if proxy_name is None:
            raise ReferenceNotFoundError("Proxy", spec.proxy_name, server)

    return JobStep(
        step_id=step_id,
        name=spec.name,
        subsystem=spec.subsystem,
        command=spec.command,
        cmdexec_success_code=spec.cmdexec_success_code,
        on_success_action=spec.on_success_action,
        on_success_step_id=spec.on_success_step_id,
        on_fail_action=spec.on_fail_action,
        on_fail_step_id=spec.on_fail_step_id,
        database=database,
        database_user=database_user,
        retry_attempts=spec.retry_attempts,
        retry_interval=spec.retry_interval,
        output_file_name=spec.output_file_name,
        proxy_name=proxy_name,
        flags=spec.flags,
    )


def _create_on_job(
    agent: AgentAdapter,
    server: str,
    job_name: str,
    spec: StepSpec,
    *,
    dry_run: bool,
) -> JobStepResult:
    """Run one (server, job) unit; every outcome becomes a result."""
    try:
        job = agent.get_job(job_name)
        if job is None:
            logger.warning("Job '{}' not found on {}, skipping", job_name, server)
            return JobStepResult(
                server=server,
                job=job_name,
                status=UnitStatus.SKIPPED,
                error_kind=ReferenceNotFoundError.kind,
                message=f"Job '{job_name}' does not exist on {server}",
            )
        step = resolve_step(agent, job, spec, server=server)
    except SqlOpsError as exc:
        logger.error("{} / {}: {}", server, job_name, exc)
        return JobStepResult(
            server=server,
            job=job_name,
            status=UnitStatus.FAILED,
            error_kind=exc.kind,
            message=str(exc),
        )

    if dry_run:
        logger.info(
            "Dry-run: would create step {} '{}' on {} / {}",
            step.step_id,
            step.name,
            server,
            job.name,
        )
        return JobStepResult(
            server=server, job=job.name, status=UnitStatus.PLANNED, step=step
        )

    try:
        agent.add_job_step(job, step)
    except Exception as e:  # noqa: BLE001
        exc = e if isinstance(e, PersistenceError) else PersistenceError(str(e))
        logger.error(
            "Creating step '{}' on {} / {} failed: {}", step.name, server, job.name, e
        )
        return JobStepResult(
            server=server,
            job=job.name,
            status=UnitStatus.FAILED,
            step=step,
            error_kind=exc.kind,
            message=f"Failed to create step '{step.name}' on job '{job.name}': {exc}",
        )

    logger.info(
        "Created step {} '{}' on {} / {}", step.step_id, step.name, server, job.name
    )
    return JobStepResult(
        server=server, job=job.name, status=UnitStatus.CREATED, step=step
    )


def create_job_steps(
    connect: Connector,
    servers: Iterable[str],
    jobs: Iterable[str],
    spec: StepSpec,
    *,
    dry_run: bool = False,
) -> list[JobStepResult]:
    """
    Create the same step on every job of every server.

    Servers are processed one at a time, jobs one at a time within a
    server. A server that cannot be reached produces one failed result and
    the loop moves on; a job-level problem produces one result for that job.

    Args:
        connect: Callable returning a context manager that yields an
                 AgentAdapter for a server and closes it on exit.
        servers: Target SQL Server instances.
        jobs: Names of the jobs to add the step to.
        spec: The step to create.
        dry_run: Resolve and validate everything but persist nothing.

    Returns:
        One JobStepResult per (server, job), or per unreachable server.

    Raises:
        ValidationError: If `spec` is invalid. Raised before any connection.
    """
    validate_step_spec(spec)
    job_names = list(jobs)
    results: list[JobStepResult] = []

    for server in servers:
        logger.debug("Connecting to {}", server)
        try:
            with connect(server) as agent:
                for job_name in job_names:
                    results.append(
                        _create_on_job(agent, server, job_name, spec, dry_run=dry_run)
                    )
        except ConnectError as exc:
            logger.error("{}", exc)
            results.append(
                JobStepResult(
                    server=server,
                    job=None,
                    status=UnitStatus.FAILED,
                    error_kind=exc.kind,
                    message=str(exc),
                )
            )

    return results


def list_job_steps(
    connect: Connector,
    servers: Iterable[str],
    jobs: Iterable[str],
) -> list[JobStepListing]:
    """Read the steps of every named job on every server."""
    job_names = list(jobs)
    results: list[JobStepListing] = []

    for server in servers:
        try:
            with connect(server) as agent:
                for job_name in job_names:
                    try:
                        job = agent.get_job(job_name)
                    except SqlOpsError as exc:
                        results.append(
                            JobStepListing(
                                server=server,
                                job=job_name,
                                status=UnitStatus.FAILED,
                                error_kind=exc.kind,
                                message=str(exc),
                            )
                        )
                        continue
                    if job is None:
                        results.append(
                            JobStepListing(
                                server=server,
                                job=job_name,
                                status=UnitStatus.SKIPPED,
                                error_kind=ReferenceNotFoundError.kind,
                                message=f"Job '{job_name}' does not exist on {server}",
                            )
                        )
                        continue
                    results.append(
                        JobStepListing(
                            server=server,
                            job=job.name,
                            status=UnitStatus.LISTED,
                            steps=job.steps,
                        )
                    )
        except ConnectError as exc:
            results.append(
                JobStepListing(
                    server=server,
                    job=None,
                    status=UnitStatus.FAILED,
                    error_kind=exc.kind,
                    message=str(exc),
                )
            )

    return results
