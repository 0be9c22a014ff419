from contextlib import contextmanager

import pytest

from sqlops.core.agent import (
    Job,
    JobStep,
    StepAction,
    StepSpec,
    Subsystem,
    UnitStatus,
    create_job_steps,
    list_job_steps,
    resolve_step,
)
from sqlops.core.errors import (
    ConnectError,
    DuplicateStepError,
    PersistenceError,
    ReferenceNotFoundError,
    ValidationError,
)


def _job(name: str = "nightly", step_ids=(1, 2, 3)) -> Job:
    return Job(
        id=f"id-{name}",
        name=name,
        steps=tuple(JobStep(step_id=i, name=f"step{i}") for i in step_ids),
    )


class _AgentStub:
    def __init__(
        self,
        jobs=(),
        databases=(),
        users=None,
        proxies=(),
        fail_add: Exception | None = None,
    ):
        self.jobs = {j.name: j for j in jobs}
        self.databases = list(databases)
        self.users = users or {}
        self.proxies = list(proxies)
        self.fail_add = fail_add
        self.added: list[tuple[str, JobStep]] = []
        self.user_lookups: list[str] = []

    def get_job(self, name: str):
        return self.jobs.get(name)

    def list_databases(self) -> list[str]:
        return self.databases

    def list_database_users(self, database: str) -> list[str]:
        self.user_lookups.append(database)
        return self.users.get(database, [])

    def list_proxies(self) -> list[str]:
        return self.proxies

    def add_job_step(self, job: Job, step: JobStep) -> None:
        if self.fail_add is not None:
            raise self.fail_add
        self.added.append((job.name, step))
        self.jobs[job.name] = Job(id=job.id, name=job.name, steps=job.steps + (step,))


class _Connector:
    def __init__(self, agents, unreachable=()):
        self.agents = agents
        self.unreachable = set(unreachable)
        self.opened: list[str] = []
        self.closed: list[str] = []

    @contextmanager
    def __call__(self, server: str):
        self.opened.append(server)
        if server in self.unreachable:
            raise ConnectError(server, "login timeout expired")
        try:
            yield self.agents[server]
        finally:
            self.closed.append(server)


@pytest.mark.parametrize(
    "action",
    [StepAction.QUIT_WITH_SUCCESS, StepAction.QUIT_WITH_FAILURE, StepAction.GO_TO_NEXT_STEP],
)
def test_success_step_id_without_goto_fails_before_connecting(action):
    connector = _Connector({"sql1": _AgentStub([_job()])})
    spec = StepSpec(name="new", on_success_action=action, on_success_step_id=2)

    with pytest.raises(ValidationError, match="OnSuccessStepId can only be used"):
        create_job_steps(connector, ["sql1"], ["nightly"], spec)

    assert connector.opened == []


@pytest.mark.parametrize(
    "action",
    [StepAction.QUIT_WITH_SUCCESS, StepAction.QUIT_WITH_FAILURE, StepAction.GO_TO_NEXT_STEP],
)
def test_fail_step_id_without_goto_fails_before_connecting(action):
    connector = _Connector({"sql1": _AgentStub([_job()])})
    spec = StepSpec(name="new", on_fail_action=action, on_fail_step_id=1)

    with pytest.raises(ValidationError, match="OnFailStepId can only be used"):
        create_job_steps(connector, ["sql1"], ["nightly"], spec)

    assert connector.opened == []


@pytest.mark.parametrize(
    "spec",
    [
        StepSpec(name="new", on_success_action=StepAction.GO_TO_STEP),
        StepSpec(name="new", step_id=0),
        StepSpec(name="new", retry_attempts=-1),
        StepSpec(name="new", database_user="etl_user"),
        StepSpec(name="  "),
    ],
)
def test_invalid_specs_are_rejected(spec):
    connector = _Connector({})

    with pytest.raises(ValidationError):
        create_job_steps(connector, ["sql1"], ["nightly"], spec)

    assert connector.opened == []


def test_goto_step_with_target_is_accepted():
    agent = _AgentStub([_job()])
    spec = StepSpec(
        name="new", on_fail_action=StepAction.GO_TO_STEP, on_fail_step_id=1
    )

    results = create_job_steps(_Connector({"sql1": agent}), ["sql1"], ["nightly"], spec)

    assert results[0].status == UnitStatus.CREATED
    assert results[0].step.on_fail_step_id == 1


def test_unreachable_server_is_reported_once_and_others_still_run():
    agents = {"a": _AgentStub([_job()]), "c": _AgentStub([_job()])}
    connector = _Connector(agents, unreachable={"b"})

    results = create_job_steps(
        connector, ["a", "b", "c"], ["nightly"], StepSpec(name="new")
    )

    assert connector.opened == ["a", "b", "c"]
    connection_errors = [r for r in results if r.error_kind == "connection"]
    assert len(connection_errors) == 1
    assert connection_errors[0].server == "b"
    assert connection_errors[0].job is None
    assert "b" in connection_errors[0].message
    assert [(r.server, r.status) for r in results if r.server != "b"] == [
        ("a", UnitStatus.CREATED),
        ("c", UnitStatus.CREATED),
    ]


def test_step_id_defaults_to_next_after_existing_steps():
    agent = _AgentStub([_job(step_ids=(1, 2, 3))])

    results = create_job_steps(
        _Connector({"sql1": agent}), ["sql1"], ["nightly"], StepSpec(name="new")
    )

    assert results[0].step.step_id == 4
    assert agent.added[0][1].step_id == 4


def test_explicit_duplicate_step_id_is_rejected_without_mutation():
    agent = _AgentStub([_job(step_ids=(1, 2, 3))])

    results = create_job_steps(
        _Connector({"sql1": agent}),
        ["sql1"],
        ["nightly"],
        StepSpec(name="new", step_id=2),
    )

    assert results[0].status == UnitStatus.FAILED
    assert results[0].error_kind == "duplicate"
    assert "id '2'" in results[0].message
    assert agent.added == []


def test_duplicate_step_error_is_a_reference_error():
    with pytest.raises(ReferenceNotFoundError):
        resolve_step(_AgentStub(), _job(), StepSpec(name="x", step_id=1), server="sql1")


def test_existing_step_name_is_rejected_case_insensitively():
    agent = _AgentStub([_job()])

    results = create_job_steps(
        _Connector({"sql1": agent}), ["sql1"], ["nightly"], StepSpec(name="STEP2")
    )

    assert results[0].status == UnitStatus.FAILED
    assert results[0].error_kind == "duplicate"
    assert agent.added == []


def test_unknown_database_rejects_before_step_is_created():
    agent = _AgentStub([_job()], databases=["master", "Sales"])

    results = create_job_steps(
        _Connector({"sql1": agent}),
        ["sql1"],
        ["nightly"],
        StepSpec(name="new", database="Finance"),
    )

    assert results[0].status == UnitStatus.FAILED
    assert results[0].error_kind == "not_found"
    assert "Database 'Finance'" in results[0].message
    assert results[0].step is None
    assert agent.added == []


def test_database_user_is_checked_against_the_resolved_database():
    agent = _AgentStub(
        [_job()],
        databases=["master", "Sales"],
        users={"Sales": ["dbo", "etl_user"], "master": ["dbo"]},
    )

    results = create_job_steps(
        _Connector({"sql1": agent}),
        ["sql1"],
        ["nightly"],
        StepSpec(name="new", database="sales", database_user="ETL_USER"),
    )

    assert results[0].status == UnitStatus.CREATED
    assert agent.user_lookups == ["Sales"]
    assert results[0].step.database == "Sales"
    assert results[0].step.database_user == "etl_user"


def test_unknown_database_user_is_rejected():
    agent = _AgentStub(
        [_job()], databases=["Sales"], users={"Sales": ["dbo"]}
    )

    results = create_job_steps(
        _Connector({"sql1": agent}),
        ["sql1"],
        ["nightly"],
        StepSpec(name="new", database="Sales", database_user="etl_user"),
    )

    assert results[0].status == UnitStatus.FAILED
    assert results[0].error_kind == "not_found"
    assert "sql1/Sales" in results[0].message
    assert agent.added == []


def test_proxy_must_exist_on_server():
    agent = _AgentStub([_job(), _job("weekly")], proxies=["ssis_proxy"])
    connector = _Connector({"sql1": agent})

    missing = create_job_steps(
        connector, ["sql1"], ["nightly"], StepSpec(name="new", proxy_name="other")
    )
    found = create_job_steps(
        connector, ["sql1"], ["weekly"], StepSpec(name="new", proxy_name="SSIS_PROXY")
    )

    assert missing[0].status == UnitStatus.FAILED
    assert "Proxy 'other'" in missing[0].message
    assert found[0].status == UnitStatus.CREATED
    assert found[0].step.proxy_name == "ssis_proxy"


def test_missing_job_is_skipped_and_other_jobs_proceed():
    agent = _AgentStub([_job("weekly")])

    results = create_job_steps(
        _Connector({"sql1": agent}),
        ["sql1"],
        ["nightly", "weekly"],
        StepSpec(name="new"),
    )

    assert [(r.job, r.status) for r in results] == [
        ("nightly", UnitStatus.SKIPPED),
        ("weekly", UnitStatus.CREATED),
    ]
    assert results[0].ok is True
    assert "does not exist" in results[0].message


def test_persistence_failure_is_isolated_and_connection_released():
    failing = _AgentStub([_job()], fail_add=RuntimeError("step_id is invalid"))
    healthy = _AgentStub([_job()])
    connector = _Connector({"sql1": failing, "sql2": healthy})

    results = create_job_steps(connector, ["sql1", "sql2"], ["nightly"], StepSpec(name="new"))

    assert results[0].status == UnitStatus.FAILED
    assert results[0].error_kind == PersistenceError.kind
    assert "step_id is invalid" in results[0].message
    assert results[1].status == UnitStatus.CREATED
    assert connector.closed == ["sql1", "sql2"]


def test_dry_run_resolves_but_does_not_persist():
    agent = _AgentStub([_job()])

    results = create_job_steps(
        _Connector({"sql1": agent}),
        ["sql1"],
        ["nightly"],
        StepSpec(name="new"),
        dry_run=True,
    )

    assert results[0].status == UnitStatus.PLANNED
    assert results[0].step.step_id == 4
    assert agent.added == []


def test_created_step_reads_back_with_same_values():
    agent = _AgentStub([_job()])
    connector = _Connector({"sql1": agent})
    spec = StepSpec(
        name="say hi",
        subsystem=Subsystem.CMD_EXEC,
        command="echo hi",
        retry_attempts=2,
    )

    create_job_steps(connector, ["sql1"], ["nightly"], spec)
    listings = list_job_steps(connector, ["sql1"], ["nightly"])

    created = [s for s in listings[0].steps if s.name == "say hi"]
    assert len(created) == 1
    assert created[0].subsystem == Subsystem.CMD_EXEC
    assert created[0].command == "echo hi"
    assert created[0].retry_attempts == 2


def test_list_job_steps_reports_missing_job_and_unreachable_server():
    connector = _Connector({"sql1": _AgentStub([_job()])}, unreachable={"sql2"})

    listings = list_job_steps(connector, ["sql1", "sql2"], ["nightly", "ghost"])

    assert [(l.server, l.job, l.status) for l in listings] == [
        ("sql1", "nightly", UnitStatus.LISTED),
        ("sql1", "ghost", UnitStatus.SKIPPED),
        ("sql2", None, UnitStatus.FAILED),
    ]
    assert len(listings[0].steps) == 3
