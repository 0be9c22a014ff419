"""Output formatting utilities for the CLI."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import asdict, dataclass, is_dataclass
from enum import Enum
from typing import Any, Iterable, Mapping

import questionary
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.theme import Theme

from sqlops.cli.common.tui_style import QUESTIONARY_STYLE_CONFIRM

_THEME = Theme(
    {
        "ok": "bold green",
        "warn": "yellow",
        "err": "bold red",
        "title": "bold cyan",
        "meta": "dim",
    }
)

console = Console(theme=_THEME)

_MAX_COMMAND_WIDTH = 48

_STATUS_STYLES = {
    "CREATED": "ok",
    "PLANNED": "title",
    "LISTED": "ok",
    "SKIPPED": "warn",
    "FAILED": "err",
}


def _truncate(text: str, max_len: int) -> str:
    """Return text capped at max_len characters using an ASCII ellipsis."""
    if max_len <= 3 or len(text) <= max_len:
        return text[:max_len]
    return f"{text[: max_len - 3]}..."


def _jsonable(value: Any) -> Any:
    """Convert dataclasses, enums and sets into JSON-friendly values."""
    if is_dataclass(value) and not isinstance(value, type):
        return _jsonable(asdict(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted(_jsonable(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass(frozen=True)
class Out:
    """Output formatter for CLI messages and tables."""

    def _q_try(self, fn, *args, **kwargs):
        """Call questionary prompts and drop unsupported kwargs on older versions."""
        try:
            return fn(*args, **kwargs)
        except TypeError:
            for k in ("pointer", "auto_enter"):
                kwargs.pop(k, None)
            return fn(*args, **kwargs)

    def _q(self, message: str) -> str:
        """Prefix Questionary prompts to be SQLOPS consistent."""
        return f"[SQLOPS] {message}"

    @contextmanager
    def status(self, msg: str):
        """Show a transient status spinner while work is in progress."""
        with console.status(msg, spinner="dots"):
            yield

    def success(self, msg: str) -> None:
        """Print a success message."""
        console.print(f"[ok]✓[/] {msg}")

    def warn(self, msg: str) -> None:
        """Print a warning message."""
        console.print(f"[warn]⚠[/] {msg}")

    def error(self, msg: str) -> None:
        """Print an error message."""
        console.print(f"[err]✗[/] {msg}")

    def header(self, title: str) -> None:
        """Print a header message."""
        console.print(f"[title]{title}[/]")

    def kv(self, items: Mapping[str, Any]) -> None:
        """Print key-value pairs."""
        for k, v in items.items():
            console.print(f"[meta]{k}[/]: {escape(str(v))}")

    def json(self, records: Iterable[Any]) -> None:
        """Print records as a JSON array (for piping into other tools)."""
        console.print_json(data=[_jsonable(r) for r in records])

    def confirm(self, message: str, *, default: bool = False) -> bool:
        """
        Ask the user for confirmation using a standardized Questionary prompt.

        Args:
            message: Confirmation question shown to the user.
            default: Default answer if the user just presses enter.

        Returns:
            True if the user confirms, False otherwise.
        """
        # Questionary renders `instruction=...` inline next to the echoed answer.
        console.print("[meta]Use y/n then Enter[/]")

        prompt = self._q_try(
            questionary.confirm,
            self._q(message),
            default=default,
            style=QUESTIONARY_STYLE_CONFIRM,
            qmark="✦",
            auto_enter=False,
            pointer="❯",
        )
        return bool(prompt.ask())

    def unit_messages(self, results: Iterable[Any]) -> None:
        """
        Print one warning/error line per skipped or failed unit.

        Expects objects with .server .job .status .message
        (like sqlops.core.agent.JobStepResult)
        """
        for r in results:
            status = getattr(r.status, "value", str(r.status))
            where = f"{r.server} / {r.job}" if r.job else r.server
            # driver messages carry [brackets] that Rich would read as markup
            message = escape(r.message or "")
            if status == "SKIPPED":
                self.warn(f"{where}: {message}")
            elif status == "FAILED":
                self.error(f"{where}: {message}")

    def step_results_table(
        self, results: Iterable[Any], title: str = "Job steps"
    ) -> None:
        """
        Expects objects with .server .job .status .step
        (like sqlops.core.agent.JobStepResult)
        """
        t = Table(title=title, show_lines=False)
        t.add_column("Server", style="meta")
        t.add_column("Job")
        t.add_column("Step ID", style="ok", no_wrap=True)
        t.add_column("Step name")
        t.add_column("Subsystem", style="meta")
        t.add_column("Status")

        for r in results:
            status = getattr(r.status, "value", str(r.status))
            style = _STATUS_STYLES.get(status, "meta")
            step = r.step
            t.add_row(
                escape(r.server),
                escape(r.job or ""),
                str(step.step_id) if step else "",
                escape(step.name) if step else "",
                step.subsystem.value if step else "",
                f"[{style}]{status}[/{style}]",
            )

        console.print(t)

    def steps_table(self, steps: Iterable[Any], title: str = "Steps") -> None:
        """
        Render the steps of one job.

        Expects objects like sqlops.core.agent.JobStep.
        """
        t = Table(title=title, show_lines=False)
        t.add_column("ID", style="ok", no_wrap=True)
        t.add_column("Name")
        t.add_column("Subsystem", style="meta")
        t.add_column("Database", style="meta")
        t.add_column("On success")
        t.add_column("On fail")
        t.add_column("Retries", style="meta")
        t.add_column("Command")

        for s in steps:
            on_success = s.on_success_action.value
            if s.on_success_step_id:
                on_success = f"{on_success} ({s.on_success_step_id})"
            on_fail = s.on_fail_action.value
            if s.on_fail_step_id:
                on_fail = f"{on_fail} ({s.on_fail_step_id})"
            t.add_row(
                str(s.step_id),
                escape(s.name),
                s.subsystem.value,
                escape(s.database or ""),
                on_success,
                on_fail,
                f"{s.retry_attempts} x {s.retry_interval}m",
                escape(_truncate(s.command or "", _MAX_COMMAND_WIDTH)),
            )

        console.print(t)

    def versions_table(
        self, versions: Iterable[Any], title: str = "SMO versions"
    ) -> None:
        """
        Expects objects with .computer_name .version .loaded .load_template
        (like sqlops.core.smo.LibraryVersion)
        """
        t = Table(title=title, show_lines=False)
        t.add_column("Computer", style="meta")
        t.add_column("Version", style="ok", no_wrap=True)
        t.add_column("Loaded")
        t.add_column("Load template", style="meta")

        for v in versions:
            t.add_row(
                escape(v.computer_name),
                v.version,
                "[ok]yes[/]" if v.loaded else "no",
                v.load_template,
            )

        console.print(t)


out = Out()
