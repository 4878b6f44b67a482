"""Run report records, JSON persistence, and the final summary banner."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from rich.markup import escape

from tandem import log
from tandem.errors import Phase, looks_like_merge_conflict, looks_like_spawn_failure, looks_like_timeout
from tandem.executor import ExecutionResult
from tandem.io_utils import write_json
from tandem.merge import MergeOrchestratorResult
from tandem.resources import ResourceStatus

if TYPE_CHECKING:
    from tandem.pipeline import Plan


@dataclass(frozen=True)
class FailureRecord:
    """Why one task did not land on the target branch."""

    task_id: str
    phase: Phase
    reason: str

    @property
    def category(self) -> str:
        if self.reason == "cancelled":
            return "cancelled"
        if self.reason.startswith("skipped"):
            return "skipped"
        if looks_like_timeout(self.reason):
            return "timeout"
        if self.reason.startswith("spawn error") or looks_like_spawn_failure(self.reason):
            return "spawn"
        if self.phase == Phase.MERGE and looks_like_merge_conflict(self.reason):
            return "conflict"
        return "error"

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "phase": self.phase.value,
            "reason": self.reason,
            "category": self.category,
        }


@dataclass
class RunReport:
    mode: str
    success: bool
    plan: Plan
    resources: ResourceStatus | None = None
    executions: list[ExecutionResult] = field(default_factory=list)
    merge: MergeOrchestratorResult = field(default_factory=MergeOrchestratorResult)
    failures: list[FailureRecord] = field(default_factory=list)
    target_branch: str = ""
    cancelled: bool = False
    duration: float = 0.0
    task_states: dict[str, str] = field(default_factory=dict)

    def failure_for(self, task_id: str) -> FailureRecord | None:
        return next((f for f in self.failures if f.task_id == task_id), None)

    def execution_for(self, task_id: str) -> ExecutionResult | None:
        return next((e for e in self.executions if e.task_id == task_id), None)

    @property
    def merged_task_ids(self) -> list[str]:
        return [m.task_id for m in self.merge.merged]

    def to_dict(self) -> dict:
        return {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "mode": self.mode,
            "success": self.success,
            "cancelled": self.cancelled,
            "target_branch": self.target_branch,
            "duration": round(self.duration, 3),
            "plan": self.plan.to_dict(),
            "resources": self.resources.to_dict() if self.resources else None,
            "executions": [e.to_dict() for e in self.executions],
            "merge": self.merge.to_dict(),
            "failures": [f.to_dict() for f in self.failures],
            "task_states": dict(self.task_states),
        }


def write_report(report: RunReport, path: Path) -> None:
    write_json(path, report.to_dict())
    log.info(f"Report written to {path}")


def show_summary(report: RunReport) -> None:
    """Print the final run summary."""
    total = report.plan.stats.get("total_tasks", 0)
    log.console.print("")
    merged = len(report.merge.merged)
    if report.success:
        log.banner(f"[green]Run complete![/green] {merged}/{total} task(s) merged.")
    elif report.cancelled:
        log.banner(f"[yellow]Run cancelled.[/yellow] {merged}/{total} task(s) merged.")
    else:
        log.banner(f"[red]Run finished with failures.[/red] {merged}/{total} task(s) merged.")
    log.console.print(f"Mode:          {report.mode}")
    if report.target_branch:
        log.console.print(f"Target branch: {report.target_branch}")
    log.console.print(f"Commits:       {report.merge.total_commits}")
    log.console.print(f"Files changed: {len(report.merge.total_files_changed)}")

    if report.failures:
        log.console.print("")
        log.console.print("[bold]>>> Failures[/bold]")
        for f in report.failures:
            log.console.print(
                f"  - {escape(f.task_id)} [dim]({f.phase.value}, {f.category})[/dim]: {escape(f.reason)}",
                markup=True,
                highlight=False,
            )

    log.console.print(log.RULE)
