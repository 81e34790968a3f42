"""Output formatters for console and JSON display."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from rich.console import Console
from rich.text import Text

if TYPE_CHECKING:
    from .core import FleetReport, SyncConfig, UpdateOutcome

FAILURE_STYLE = "bright_red"
SUCCESS_STYLE = "bright_green"


def render_outcome(outcome: UpdateOutcome) -> Text:
    """Render one outcome as colored text.

    Drift narratives are red; the closing "is up-to-date" line of a successful
    update is green.
    """
    from .core import OutcomeKind, OutcomeStyle

    if outcome.style == OutcomeStyle.SUCCESS:
        return Text(outcome.message, style=SUCCESS_STYLE)
    if outcome.style == OutcomeStyle.NEUTRAL:
        return Text(outcome.message)

    lines = outcome.message.split("\n")
    text = Text()
    if outcome.kind == OutcomeKind.UPDATED:
        text.append("\n".join(lines[:-1]) + "\n", style=FAILURE_STYLE)
        text.append(lines[-1], style=SUCCESS_STYLE)
    else:
        text.append("\n".join(lines), style=FAILURE_STYLE)
    return text


class OutputFormatter:
    """Format output for console or JSON."""

    def __init__(self, console: Console, use_json: bool = False):
        self.console = console
        self.use_json = use_json

    def _print(self, renderable: Text | str = ""):
        self.console.print(renderable, soft_wrap=True, highlight=False)

    def print_report(self, report: FleetReport, config: SyncConfig, single: bool = False):
        """Print the drift report."""
        if self.use_json:
            self._print_report_json(report, config, single)
        elif single:
            self._print_single_report(report, config)
        else:
            self._print_fleet_report(report, config)

    def _print_single_report(self, report: FleetReport, config: SyncConfig):
        """Print the result for a single repository."""
        self._print()
        self._print(Text(f"Checking Repository For Updates. git: ({config.remote_branch})"))
        for outcome in [*report.diagnostics, *report.outdated, *report.up_to_date]:
            if outcome.is_outdated:
                self._print()
            self._print(render_outcome(outcome))

    def _print_fleet_report(self, report: FleetReport, config: SyncConfig):
        """Print outdated and up-to-date repositories in separate sections."""
        self._print()
        self._print(Text(f"Checking Repositories For Updates. git: ({config.remote_branch})"))

        if report.total == 0:
            self._print()
            self._print(Text("No repositories found", style="dim"))
            return

        for outcome in report.diagnostics:
            self._print(render_outcome(outcome))

        if report.outdated:
            self._print()
            self._print(Text("Outdated Repositories:", style="bold"))
            for outcome in report.outdated:
                self._print()
                self._print(render_outcome(outcome))
            self._print()

        if report.up_to_date:
            self._print(Text("Up-to-Date Repositories:", style="bold"))
            self._print()
            for outcome in report.up_to_date:
                self._print(render_outcome(outcome))

    def _print_report_json(self, report: FleetReport, config: SyncConfig, single: bool):
        """Print JSON output."""
        output = {
            "mode": "repository" if single else "directory",
            "config": config.to_dict(),
            **report.to_dict(),
        }
        self.console.print(
            json.dumps(output, indent=2, default=str),
            markup=False,
            highlight=False,
            soft_wrap=True,
        )

    def print_log(self, output: str):
        """Print raw git log output."""
        if self.use_json:
            self.console.print(
                json.dumps({"log": output}, indent=2),
                markup=False,
                highlight=False,
                soft_wrap=True,
            )
        else:
            self.console.print(output.rstrip("\n"), markup=False, highlight=False, soft_wrap=True)
