import pytest
from rich.console import Console

from sqlops.cli.common import output
from sqlops.core.agent import (
    JobStep,
    JobStepResult,
    StepSpec,
    UnitStatus,
)


@pytest.fixture
def recorded(monkeypatch):
    console = Console(record=True, width=240, theme=output._THEME)
    monkeypatch.setattr(output, "console", console)
    return console


def test_steps_table_keeps_bracketed_identifiers(recorded):
    output.out.steps_table(
        [
            JobStep(
                step_id=1,
                name="load [dbo]",
                command="DELETE FROM [dbo].[t]",
                database="[Sales]",
            )
        ],
        title="sql1 / nightly",
    )

    text = recorded.export_text()
    assert "load [dbo]" in text
    assert "DELETE FROM [dbo].[t]" in text
    assert "[Sales]" in text


def test_step_results_table_keeps_bracketed_names(recorded):
    step = JobStep(step_id=2, name="purge [staging]")
    output.out.step_results_table(
        [
            JobStepResult(
                server="sql1",
                job="[etl] nightly",
                status=UnitStatus.CREATED,
                step=step,
            )
        ]
    )

    text = recorded.export_text()
    assert "purge [staging]" in text
    assert "[etl] nightly" in text
    assert "CREATED" in text


def test_summary_and_unit_messages_keep_brackets(recorded):
    output.out.kv({"Name": StepSpec(name="[x]").name})
    output.out.unit_messages(
        [
            JobStepResult(
                server="sql1",
                job="nightly",
                status=UnitStatus.FAILED,
                message="[Microsoft][ODBC Driver 18 for SQL Server] timeout",
            )
        ]
    )

    text = recorded.export_text()
    assert "Name: [x]" in text
    assert "[Microsoft][ODBC Driver 18 for SQL Server] timeout" in text
