"""Human-readable progress stream and update history for a run."""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from tandem import log
from tandem.executor import EventType, ProgressEvent
from tandem.merge import MergeOrchestratorResult
from tandem.overlap import SafeGroup

if TYPE_CHECKING:
    from tandem.pipeline import Plan


@dataclass
class ProgressUpdate:
    timestamp: float
    phase: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProgressState:
    phase: str = "idle"
    start_time: float | None = None
    end_time: float | None = None
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    cancelled_tasks: int = 0
    running_tasks: int = 0
    groups: list[SafeGroup] = field(default_factory=list)
    updates: list[ProgressUpdate] = field(default_factory=list)


def format_duration(ms: float) -> str:
    if ms < 1000:
        return f"{int(ms)}ms"
    if ms < 60000:
        return f"{ms / 1000:.1f}s"
    minutes = int(ms // 60000)
    seconds = round((ms % 60000) / 1000)
    return f"{minutes}m {seconds}s"


def _print_line(line: str) -> None:
    log.console.print(line, markup=False, highlight=False)


class ProgressReporter:
    """Consumes executor events and prints the lifecycle of a run.

    *output* receives every rendered line; it defaults to the shared Rich console.
    """

    def __init__(self, verbose: bool = False, output: Callable[[str], None] | None = None) -> None:
        self.verbose = verbose
        self._output = output or _print_line
        self._state = ProgressState()

    def _emit(self, text: str) -> None:
        self._output(text)

    def _add_update(self, phase: str, message: str, **details: Any) -> None:
        self._state.updates.append(ProgressUpdate(time.time(), phase, message, details))

    # ── lifecycle ────────────────────────────────────────────────

    def start(self, groups: list[SafeGroup]) -> None:
        self._state = ProgressState(
            phase="executing",
            start_time=time.monotonic(),
            total_tasks=sum(len(g.task_ids) for g in groups),
            groups=list(groups),
        )
        self._add_update("analysis", f"Starting parallel execution of {self._state.total_tasks} tasks")
        max_parallel = max((len(g.task_ids) for g in groups), default=1)
        for line in (
            "",
            "================================================",
            "           PARALLEL EXECUTION STARTED           ",
            "================================================",
            "",
            f"Total tasks: {self._state.total_tasks}",
            f"Parallel groups: {len(groups)}",
            f"Max parallelism: {max_parallel}",
            "",
            "Progress:",
        ):
            self._emit(line)

    def handle_event(self, event: ProgressEvent) -> None:
        s = self._state
        match event.type:
            case EventType.STARTED:
                s.running_tasks += 1
                self._add_update("execution", f"Task {event.task_id} started", task_id=event.task_id)
                self._emit(f"  → Starting: {event.task_id}")
            case EventType.COMPLETED:
                s.running_tasks = max(0, s.running_tasks - 1)
                s.completed_tasks += 1
                self._add_update("execution", f"Task {event.task_id} completed", task_id=event.task_id)
                self._emit(f"  ✓ Completed: {event.task_id}")
            case EventType.FAILED:
                s.running_tasks = max(0, s.running_tasks - 1)
                s.failed_tasks += 1
                reason = event.message or "Unknown error"
                self._add_update(
                    "execution", f"Task {event.task_id} failed: {reason}", task_id=event.task_id, error=reason
                )
                self._emit(f"  ✗ Failed: {event.task_id} - {reason}")
            case EventType.CANCELLED:
                s.running_tasks = max(0, s.running_tasks - 1)
                s.cancelled_tasks += 1
                self._add_update("execution", f"Task {event.task_id} cancelled", task_id=event.task_id)
                self._emit(f"  ○ Cancelled: {event.task_id}")
            case EventType.OUTPUT:
                if self.verbose and event.message.strip():
                    for line in event.message.rstrip().splitlines():
                        self._emit(f"    [{event.task_id}] {line}")
                return
        if self.verbose and event.type != EventType.STARTED:
            self._emit(self.progress_bar())

    def merge_started(self) -> None:
        self._state.phase = "merging"
        self._add_update("merge", "Starting merge of completed tasks")
        self._emit("")
        self._emit("Merging results...")

    def merge_completed(self, result: MergeOrchestratorResult) -> None:
        self._state.phase = "executing"
        self._add_update(
            "merge",
            "Merge completed",
            merged=len(result.merged),
            failed=len(result.failed),
            commits=result.total_commits,
        )
        self._emit(f"  Merged: {len(result.merged)} tasks")
        if result.failed:
            self._emit(f"  Failed: {len(result.failed)} tasks")
            for f in result.failed:
                self._emit(f"    ✗ {f.task_id} - {f.error}")
        self._emit(f"  Commits: {result.total_commits}")
        self._emit(f"  Files: {len(result.total_files_changed)}")

    def cleanup_started(self) -> None:
        self._state.phase = "cleanup"
        self._add_update("cleanup", "Cleaning up workspaces")
        if self.verbose:
            self._emit("")
            self._emit("Cleaning up workspaces...")

    def complete(self, success: bool) -> None:
        s = self._state
        s.phase = "complete" if success else "failed"
        s.end_time = time.monotonic()
        elapsed_ms = (s.end_time - (s.start_time or s.end_time)) * 1000
        self._add_update(
            "cleanup" if success else "execution",
            "Parallel execution completed" if success else "Parallel execution failed",
        )

        status = "SUCCESS" if success else "FAILED"
        lines = [
            "",
            "================================================",
            f"           PARALLEL EXECUTION {status}",
            "================================================",
            "",
            f"Result: {status}",
            f"   Duration: {format_duration(elapsed_ms)}",
            f"   Completed: {s.completed_tasks}/{s.total_tasks}",
        ]
        if s.failed_tasks:
            lines.append(f"   Failed: {s.failed_tasks}")
        if s.cancelled_tasks:
            lines.append(f"   Cancelled: {s.cancelled_tasks}")
        for line in lines:
            self._emit(line)

    # ── queries ──────────────────────────────────────────────────

    def state(self) -> ProgressState:
        return copy.deepcopy(self._state)

    def updates(self) -> list[ProgressUpdate]:
        return list(self._state.updates)

    def progress_percent(self) -> int:
        s = self._state
        if s.total_tasks == 0:
            return 100
        done = s.completed_tasks + s.failed_tasks + s.cancelled_tasks
        return round(done / s.total_tasks * 100)

    def progress_bar(self, width: int = 30) -> str:
        progress = self.progress_percent()
        filled = round(progress / 100 * width)
        bar = "█" * filled + "░" * (width - filled)
        return f"  [{bar}] {progress}% ({self._state.running_tasks} running)"

    def explain(self, plan: Plan) -> str:
        """Explain why tasks were (or were not) grouped together."""
        groups = [g for level in plan.levels for g in level]
        parallel = sum(len(g.task_ids) for g in groups if len(g.task_ids) > 1)
        lines = [
            "## Parallelization Analysis",
            "",
            f"Tasks parallelizable: {parallel}",
            f"Tasks sequential: {len(plan.sequential_tasks)}",
            "",
        ]
        for index, level in enumerate(plan.levels):
            lines.append(f"### Level {index}")
            lines.append("")
            for group in level:
                note = " - unknown file footprint, runs alone" if group.isolated else ""
                lines.append(f"**{group.id}** ({len(group.task_ids)} tasks){note}")
                lines += [f"  - {tid}" for tid in group.task_ids]
                files = sorted(group.files)
                if files:
                    more = "..." if len(files) > 3 else ""
                    lines.append(f"  Files: {', '.join(files[:3])}{more}")
                lines.append("")
        if plan.sequential_tasks:
            lines.append("### Sequential Tasks (have dependencies)")
            lines.append("")
            lines += [f"  - {tid}" for tid in plan.sequential_tasks]
            lines.append("")
        return "\n".join(lines).rstrip()
