"""Commands for managing SQL Server Agent job steps."""

import typer
from rich.markup import escape

from sqlops.cli.common.context import AgentAppContext, build_agent_context
from sqlops.cli.common.exits import exit_for_results, exit_from_exc
from sqlops.cli.common.options import (
    ConfirmOpt,
    DryRunOpt,
    JobOpt,
    JsonOpt,
    ServerOpt,
    SqlPasswordOpt,
    SqlUserOpt,
)
from sqlops.cli.common.output import out
from sqlops.core.agent import (
    StepAction,
    StepFlag,
    StepSpec,
    Subsystem,
    UnitStatus,
    create_job_steps,
    list_job_steps,
    validate_step_spec,
)
from sqlops.core.errors import ValidationError

app = typer.Typer(
    help="Work with SQL Server Agent job steps",
    no_args_is_help=False,
    invoke_without_command=True,
)


@app.callback()
def _init(
    ctx: typer.Context,
    sql_user: str | None = SqlUserOpt,
    sql_password: str | None = SqlPasswordOpt,
):
    """Initialize agent context (credentials and connector)."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)
    ctx.obj = build_agent_context(ctx.obj, sql_user, sql_password)


@app.command("step-add")
def step_add(
    ctx: typer.Context,
    server: list[str] = ServerOpt,
    job: list[str] = JobOpt,
    step_name: str = typer.Option(
        ..., "--step-name", "-n", help="Name of the new step"
    ),
    step_id: int | None = typer.Option(
        None, "--step-id", help="Step id (default: append after the last step)"
    ),
    subsystem: Subsystem = typer.Option(
        Subsystem.TRANSACT_SQL, "--subsystem", case_sensitive=False
    ),
    command: str | None = typer.Option(
        None, "--command", help="Command text run by the subsystem"
    ),
    cmdexec_success_code: int = typer.Option(
        0, "--cmdexec-success-code", help="Exit code that means success (CmdExec)"
    ),
    on_success_action: StepAction = typer.Option(
        StepAction.QUIT_WITH_SUCCESS, "--on-success-action", case_sensitive=False
    ),
    on_success_step_id: int = typer.Option(
        0, "--on-success-step-id", help="Target step for --on-success-action GoToStep"
    ),
    on_fail_action: StepAction = typer.Option(
        StepAction.QUIT_WITH_FAILURE, "--on-fail-action", case_sensitive=False
    ),
    on_fail_step_id: int = typer.Option(
        0, "--on-fail-step-id", help="Target step for --on-fail-action GoToStep"
    ),
    database: str | None = typer.Option(
        None, "--database", "-d", help="Database the step runs in"
    ),
    database_user: str | None = typer.Option(
        None, "--database-user", help="User the step runs as (requires --database)"
    ),
    retry_attempts: int = typer.Option(0, "--retry-attempts"),
    retry_interval: int = typer.Option(
        0, "--retry-interval", help="Minutes between retries"
    ),
    output_file: str | None = typer.Option(
        None, "--output-file", help="File the step output is written to"
    ),
    proxy: str | None = typer.Option(
        None, "--proxy", help="Agent proxy the step runs under"
    ),
    flag: list[StepFlag] = typer.Option(
        [], "--flag", help="Step logging flag. Reusable.", show_default=False
    ),
    confirm: bool = ConfirmOpt,
    dry_run: bool = DryRunOpt,
    as_json: bool = JsonOpt,
):
    """
    Add a step to one or more jobs on one or more servers.
    """
    appctx: AgentAppContext = ctx.obj

    spec = StepSpec(
        name=step_name,
        step_id=step_id,
        subsystem=subsystem,
        command=command,
        cmdexec_success_code=cmdexec_success_code,
        on_success_action=on_success_action,
        on_success_step_id=on_success_step_id,
        on_fail_action=on_fail_action,
        on_fail_step_id=on_fail_step_id,
        database=database,
        database_user=database_user,
        retry_attempts=retry_attempts,
        retry_interval=retry_interval,
        output_file_name=output_file,
        proxy_name=proxy,
        flags=frozenset(flag),
    )

    try:
        validate_step_spec(spec)
    except ValidationError as exc:
        exit_from_exc(exc, message=str(exc), code=2)

    if not as_json:
        out.header("Step to create")
        out.kv(
            {
                "Name": spec.name,
                "Step id": spec.step_id or "next free",
                "Subsystem": spec.subsystem.value,
                "Servers": ", ".join(server),
                "Jobs": ", ".join(job),
            }
        )

    if dry_run:
        if not as_json:
            out.warn("DRY RUN: no steps will be created.")
    elif confirm and not out.confirm(
        f"Create step '{spec.name}' on {len(job)} job(s) "
        f"on {len(server)} server(s)?"
    ):
        out.warn("Cancelled.")
        raise typer.Exit(0)

    status_msg = "Planning job steps..." if dry_run else "Creating job steps..."
    with out.status(status_msg):
        results = create_job_steps(
            appctx.connector, server, job, spec, dry_run=dry_run
        )

    if as_json:
        out.json(results)
    else:
        out.unit_messages(results)
        out.step_results_table(results, title="Job step results")

    exit_for_results(results, noun="unit(s)")

    done = [
        r for r in results if r.status in (UnitStatus.CREATED, UnitStatus.PLANNED)
    ]
    if as_json:
        return
    if dry_run:
        out.success(f"Dry-run complete: {len(done)} step(s) would be created.")
    else:
        out.success(f"Created {len(done)} step(s).")


@app.command("steps-list")
def steps_list(
    ctx: typer.Context,
    server: list[str] = ServerOpt,
    job: list[str] = JobOpt,
    as_json: bool = JsonOpt,
):
    """
    List the steps of one or more jobs.
    """
    appctx: AgentAppContext = ctx.obj

    with out.status("Loading job steps..."):
        listings = list_job_steps(appctx.connector, server, job)

    if as_json:
        out.json(listings)
    else:
        out.unit_messages(listings)
        for listing in listings:
            if listing.status != UnitStatus.LISTED:
                continue
            where = escape(f"{listing.server} / {listing.job}")
            if not listing.steps:
                out.warn(f"{where}: job has no steps")
                continue
            out.steps_table(listing.steps, title=where)

    exit_for_results(listings, noun="job lookup(s)")
