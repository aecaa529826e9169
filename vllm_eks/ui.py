"""Colorized console output for vllm-eks workflows.

Thin wrapper around :mod:`rich` that degrades gracefully when stdout is not
a TTY (piped, CI).  All user-facing status messages flow through this
module; ``logger.*`` calls stay for diagnostic logging.
"""

from __future__ import annotations

from typing import Iterable, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from vllm_eks.probe.models import ManagedResource, ResourceState
from vllm_eks.reports import CheckStatus, PreflightReport
from vllm_eks.stages.models import PlanReport, Stage, StageState
from vllm_eks.teardown.driver import DeletionStatus, TeardownReport

# Shared console; force_terminal=None lets Rich decide.
console = Console(stderr=False, force_terminal=None)

# ── Symbols ────────────────────────────────────────────────────────────────

_PASS = "[bold green]✓[/]"
_FAIL = "[bold red]✗[/]"
_WARN = "[bold yellow]⚠[/]"
_ARROW = "[bold cyan]›[/]"
_DOT = "[dim]·[/]"

_STATE_STYLE = {
    StageState.READY: "green",
    StageState.FAILED: "red",
    StageState.POLLING: "cyan",
    StageState.CREATING: "cyan",
    StageState.NOT_STARTED: "dim",
}

_RESOURCE_STYLE = {
    ResourceState.READY: "green",
    ResourceState.PENDING: "yellow",
    ResourceState.FAILED: "red",
    ResourceState.NOT_FOUND: "dim",
}

# ── Phase headers ──────────────────────────────────────────────────────────


def phase(title: str) -> None:
    """Print a bold phase header (e.g. ``PREFLIGHT``, ``PROVISION``)."""
    console.print()
    console.print(f"[bold blue]── {title} ──[/]")


# ── Status lines ───────────────────────────────────────────────────────────


def ok(msg: str) -> None:
    console.print(f"  {_PASS} {msg}")


def fail(msg: str) -> None:
    console.print(f"  {_FAIL} [red]{msg}[/]")


def warn(msg: str) -> None:
    console.print(f"  {_WARN} [yellow]{msg}[/]")


def step(msg: str) -> None:
    """Cyan arrow + in-progress action."""
    console.print(f"  {_ARROW} {msg}")


def info(msg: str) -> None:
    console.print(f"  {_DOT} [dim]{msg}[/]")


def detail(key: str, value: str) -> None:
    console.print(f"    [bold]{key}[/]: {value}")


def error_msg(msg: str) -> None:
    """Bold red error message (not indented)."""
    console.print(f"[bold red]ERROR:[/] {msg}")


# ── Banners / panels ──────────────────────────────────────────────────────


def success_panel(title: str, body: str) -> None:
    console.print()
    console.print(
        Panel(body, title=f"[bold green]{title}[/]", border_style="green", padding=(1, 2))
    )


def error_panel(title: str, body: str) -> None:
    console.print()
    console.print(
        Panel(body, title=f"[bold red]{title}[/]", border_style="red", padding=(1, 2))
    )


def elapsed_str(seconds: float) -> str:
    """Format seconds as ``Xm Ys``."""
    m, s = divmod(int(seconds), 60)
    if m > 0:
        return f"{m}m {s}s"
    return f"{s}s"


# ── Stage runner feedback ──────────────────────────────────────────────────


def stage_transition(stage: Stage, state: StageState, resource: Optional[ManagedResource]) -> None:
    """Listener for :class:`StageRunner` state changes."""
    label = f"{stage.name} ({stage.kind.value}/{stage.selector})"
    if state == StageState.CREATING:
        step(f"{label}: creating")
    elif state == StageState.POLLING:
        step(f"{label}: waiting for ready (timeout {elapsed_str(stage.timeout)})")
    elif state == StageState.READY:
        ok(f"{label}: ready")
    elif state == StageState.FAILED:
        fail(f"{label}: failed")


def preflight_report(report: PreflightReport) -> None:
    for chk in report.checks:
        if chk.status == CheckStatus.PASS:
            version = chk.details.get("version")
            ok(f"{chk.id}" + (f" ({version})" if version else ""))
        elif chk.status == CheckStatus.WARN:
            warn(f"{chk.id}: {chk.remediation}")
        else:
            fail(f"{chk.id}: {chk.remediation}")


def stage_table(report: PlanReport) -> None:
    table = Table(title=f"{report.target} ({report.region})", show_lines=False)
    table.add_column("Stage", style="bold")
    table.add_column("State")
    table.add_column("Path", style="dim")
    table.add_column("Resource")
    table.add_column("Elapsed", justify="right")
    for outcome in report.outcomes:
        style = _STATE_STYLE.get(outcome.state, "")
        state = outcome.state.value
        if outcome.reason:
            state = f"{state} ({outcome.reason.value})"
        elif outcome.verify_only:
            state = f"{state} (verified)"
        elif outcome.skipped:
            state = f"{state} (skipped)"
        table.add_row(
            outcome.stage,
            f"[{style}]{state}[/]" if style else state,
            " → ".join(t.value for t in outcome.transitions),
            outcome.resource.label if outcome.resource else "",
            elapsed_str(outcome.elapsed),
        )
    console.print()
    console.print(table)


def plan_failure(report: PlanReport) -> None:
    outcome = report.failed_outcome
    if outcome is None or outcome.error is None:
        return
    err = outcome.error
    body = [
        f"[bold]Stage[/]: {outcome.stage}",
        f"[bold]Resource[/]: {err.resource}",
        f"[bold]Reason[/]: {outcome.reason.value if outcome.reason else type(err).__name__}",
        f"[bold]Error[/]: {escape(err.message)}",
    ]
    if err.cause is not None:
        body.append(f"[bold]Provider error[/]: {escape(str(err.cause))}")
    if err.remediation:
        body.append(f"[bold]Remediation[/]: {escape(err.remediation)}")
    error_panel("Deployment halted", "\n".join(body))


def resource_table(resources: Iterable[ManagedResource]) -> None:
    table = Table(title="Managed resources")
    table.add_column("Kind", style="bold")
    table.add_column("Name")
    table.add_column("State")
    table.add_column("Status", style="dim")
    table.add_column("Identifiers")
    for res in resources:
        style = _RESOURCE_STYLE.get(res.current_state, "")
        table.add_row(
            res.kind.value,
            res.name,
            f"[{style}]{res.current_state.value}[/]",
            res.status,
            ", ".join(f"{k}={v}" for k, v in sorted(res.identifiers.items())),
        )
    console.print()
    console.print(table)


def teardown_table(report: TeardownReport) -> None:
    table = Table(title=f"Teardown of {report.target} ({report.region})")
    table.add_column("Step", style="bold")
    table.add_column("Resource")
    table.add_column("Result")
    table.add_column("Error", style="red")
    styles = {
        DeletionStatus.DELETED: "green",
        DeletionStatus.ABSENT: "dim",
        DeletionStatus.FAILED: "red",
    }
    for r in report.results:
        table.add_row(r.step, r.resource, f"[{styles[r.status]}]{r.status.value}[/]", escape(r.error))
    console.print()
    console.print(table)
