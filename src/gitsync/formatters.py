"""Output formatters for console and JSON display."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.text import Text

if TYPE_CHECKING:
    from .core import FleetSummary, RepositoryState

OUTCOME_STYLES = {
    "Ok": "green",
    "AheadNeedsPush": "yellow",
    "AheadPushed": "blue",
    "BehindMerged": "yellow",
    "Diverged": "magenta",
    "Error": "red",
}

HINTS = {
    "BranchUnresolved": "detached HEAD?",
    "NoTrackingBranch": "no remote tracking branch?",
    "MergeBlocked": "local changes?",
    "Diverged": "manual merge/rebase needed",
}


class OutputFormatter:
    """Format sync reports for console or JSON."""

    def __init__(self, console: Console, use_json: bool = False, verbose: bool = False):
        self.console = console
        self.use_json = use_json
        self.verbose = verbose

    def format_status(self, state: RepositoryState) -> Text:
        """Build the one-line status for a repository."""
        line = Text("Checking ")
        line.append(str(state.location.work_tree), style="green")
        line.append(" ")
        if state.branch:
            line.append(f"[{state.branch}]", style="cyan")
        if state.ahead_count:
            line.append(f"[ahead: {state.ahead_count}]")
        if state.behind_count:
            line.append(f"[behind: {state.behind_count}]")

        style = OUTCOME_STYLES.get(state.outcome.value, "")
        if state.is_error:
            tag = state.error_kind.value if state.error_kind else state.outcome.value
            line.append(f"[{tag}]", style=style)
            hint = self._error_hint(state)
        else:
            line.append(f"[{state.outcome.value}]", style=style)
            hint = HINTS.get(state.outcome.value)
        if hint:
            line.append(f" ({hint})", style="dim")
        return line

    def _error_hint(self, state: RepositoryState) -> str | None:
        if state.error_kind is None:
            return None
        if state.error_kind.value == "Timeout" and state.failed_stage:
            return f"while {state.failed_stage.value.replace('_', ' ')}"
        return HINTS.get(state.error_kind.value)

    def format_details(self, state: RepositoryState) -> list[Text]:
        """Raw git diagnostics for a failed repository, indented."""
        if not state.is_error or not state.error_detail:
            return []
        return [Text(f"    {line}", style="dim") for line in state.error_detail.splitlines()]

    def print_report(self, state: RepositoryState):
        """Print one repository's status line (and diagnostics when verbose)."""
        if self.use_json:
            return
        self.console.print(self.format_status(state))
        if self.verbose:
            for line in self.format_details(state):
                self.console.print(line)

    def print_nothing_to_sync(self, root: Path):
        if self.use_json:
            return
        self.console.print(f"[dim]No git repositories under {escape(str(root))}, nothing to synchronize.[/]")

    def print_summary(self, states: list[RepositoryState], summary: FleetSummary):
        """Print the fleet summary, or the whole JSON document in JSON mode."""
        if self.use_json:
            output = {
                "repositories": [s.to_dict() for s in states],
                "summary": summary.to_dict(),
            }
            self.console.print_json(json.dumps(output))
            return

        if summary.total == 0:
            return

        parts = [f"[bold]Total:[/] {summary.total}"]
        if summary.ok > 0:
            parts.append(f"[green]Ok:[/] {summary.ok}")
        if summary.merged > 0:
            parts.append(f"[yellow]Merged:[/] {summary.merged}")
        if summary.pushed > 0:
            parts.append(f"[blue]Pushed:[/] {summary.pushed}")
        if summary.needs_push > 0:
            parts.append(f"[yellow]Need push:[/] {summary.needs_push}")
        if summary.diverged > 0:
            parts.append(f"[magenta]Diverged:[/] {summary.diverged}")
        if summary.errors > 0:
            parts.append(f"[red]Errors:[/] {summary.errors}")

        self.console.print()
        self.console.print(" | ".join(parts))


class ReportWriter:
    """Single writer for all pipelines.

    Reports arrive in completion order and are printed in discovery order:
    a report is held until every earlier repository has been printed.
    """

    def __init__(self, formatter: OutputFormatter):
        self.formatter = formatter
        self._pending: dict[int, RepositoryState] = {}
        self._next = 0
        self._expected = 0

    def expect(self, count: int):
        self._expected = count

    def submit(self, index: int, state: RepositoryState):
        if index in self._pending or index < self._next:
            raise ValueError(f"report {index} submitted twice")
        self._pending[index] = state
        while self._next in self._pending:
            self.formatter.print_report(self._pending.pop(self._next))
            self._next += 1

    @property
    def flushed(self) -> int:
        return self._next

    @property
    def done(self) -> bool:
        return self._next >= self._expected

    def nothing_to_sync(self, root: Path):
        self.formatter.print_nothing_to_sync(root)
