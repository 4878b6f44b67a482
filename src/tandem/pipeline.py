"""End-to-end run: analysis, grouping, resource gating, execution waves, merge, report."""

from __future__ import annotations

import signal
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from rich.markup import escape

from tandem import git_ops, log
from tandem.agents.base import AgentBase
from tandem.analyzer import DependencyGraph, TaskAnalyzer
from tandem.artifacts import FailureRecord, RunReport
from tandem.config import Config
from tandem.errors import Phase, PreconditionError, ResourceError
from tandem.executor import (
    EventType,
    ExecutionResult,
    ExecutionStatus,
    ParallelExecutor,
    ProgressEvent,
)
from tandem.merge import MergeOrchestrator, MergeOrchestratorResult, MergeResult
from tandem.overlap import OverlapDetector, SafeGroup
from tandem.predictor import FilePrediction, FilePredictor
from tandem.progress import ProgressReporter
from tandem.resources import ResourceMonitor, ResourceStatus, ResourceThresholds
from tandem.scheduler import Scheduler, TaskState
from tandem.tasks.model import Task
from tandem.workspace import Workspace, WorkspaceManager, WorkspaceStatus, precheck_repository

LOW_CONFIDENCE = 0.5


# ── plan ─────────────────────────────────────────────────────────────

@dataclass
class Plan:
    """Dependency levels, each split into file-disjoint safe groups."""

    graph: DependencyGraph
    predictions: dict[str, FilePrediction] = field(default_factory=dict)
    levels: list[list[SafeGroup]] = field(default_factory=list)
    sequential_tasks: list[str] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)

    @property
    def groups(self) -> list[SafeGroup]:
        return [g for level in self.levels for g in level]

    def waves(self) -> list[list[list[str]]]:
        """Task ids per group per level, e.g. ``[[["a", "b"], ["d"]], [["c"]]]``."""
        return [[list(g.task_ids) for g in level] for level in self.levels]

    def to_dict(self) -> dict:
        return {
            "levels": [[g.to_dict() for g in level] for level in self.levels],
            "sequential_tasks": list(self.sequential_tasks),
            "predictions": {tid: p.to_dict() for tid, p in self.predictions.items()},
            "tasks": [t.to_dict() for t in self.graph.tasks()],
            "stats": dict(self.stats),
        }


def build_plan(
    tasks: list[Task],
    predictor: FilePredictor,
    analyzer: TaskAnalyzer | None = None,
    detector: OverlapDetector | None = None,
) -> Plan:
    analyzer = analyzer or TaskAnalyzer()
    detector = detector or OverlapDetector()

    graph = analyzer.build_graph(tasks)
    predictions = predictor.predict_all(graph.tasks())
    for task_id, prediction in predictions.items():
        graph.nodes[task_id].predicted_files |= prediction.files

    levels: list[list[SafeGroup]] = []
    for index, level in enumerate(graph.levels):
        preds = [predictions[tid] for tid in level]
        levels.append(detector.group(preds, id_prefix=f"level-{index}-group"))

    warnings = list(graph.warnings)
    for task_id, prediction in predictions.items():
        if prediction.is_empty:
            warnings.append(f"No files predicted for {task_id}; it will run alone")
        elif prediction.confidence < LOW_CONFIDENCE:
            warnings.append(f"Low prediction confidence for {task_id} ({round(prediction.confidence * 100)}%)")

    total = len(graph.nodes)
    groups = [g for level in levels for g in level]
    confidences = [p.confidence for p in predictions.values()]
    stats = {
        "total_tasks": total,
        "levels": len(levels),
        "waves": len(groups),
        "parallelizable_tasks": sum(len(g.task_ids) for g in groups if len(g.task_ids) > 1),
        "max_parallelism": max((len(g.task_ids) for g in groups), default=0),
        "estimated_speedup": round(total / len(groups), 2) if groups else 1.0,
        "avg_confidence": round(sum(confidences) / len(confidences), 2) if confidences else 0.0,
        "has_cycle": graph.has_cycle,
        "warnings": warnings,
    }
    return Plan(
        graph=graph,
        predictions=predictions,
        levels=levels,
        sequential_tasks=list(graph.sequential_tasks),
        stats=stats,
    )


def format_plan(plan: Plan) -> str:
    s = plan.stats
    lines = [
        "## Execution Plan",
        "",
        f"Tasks: {s['total_tasks']}",
        f"Levels: {s['levels']}  Waves: {s['waves']}",
        f"Parallelizable tasks: {s['parallelizable_tasks']}",
        f"Max parallelism: {s['max_parallelism']}",
        f"Estimated speedup: {s['estimated_speedup']}x",
        f"Average prediction confidence: {round(s['avg_confidence'] * 100)}%",
        "",
    ]
    for index, level in enumerate(plan.levels):
        groups = "  ".join("{" + ", ".join(g.task_ids) + "}" for g in level)
        lines.append(f"level {index}: {groups}")
    if s["warnings"]:
        lines += ["", "### Warnings"]
        lines += [f"- {w}" for w in s["warnings"]]
    return "\n".join(lines)


# ── sequential fallback ──────────────────────────────────────────────

class SequentialRunner:
    """Runs tasks one at a time directly in the base repository, in level order.

    Used when the host cannot support parallel workspaces. A failed task's
    partial commits are discarded so the branch only ever holds finished work.
    """

    def __init__(
        self,
        base_dir: Path,
        agent: AgentBase,
        *,
        timeout_seconds: float = 300,
        on_event: Callable[[ProgressEvent], None] | None = None,
        should_stop: Callable[[], bool] = lambda: False,
    ) -> None:
        self.base_dir = base_dir
        self.agent = agent
        self.timeout_seconds = timeout_seconds
        self.on_event = on_event
        self.should_stop = should_stop

    def _emit(self, kind: EventType, task_id: str, message: str = "") -> None:
        if self.on_event is not None:
            self.on_event(ProgressEvent(kind, task_id, message))

    def run(self, plan: Plan, report: RunReport, sched: Scheduler) -> None:
        target = report.target_branch
        for level in plan.graph.levels:
            for task_id in level:
                if self.should_stop():
                    return
                if sched.has_failed_deps(task_id):
                    _record_skip(sched, task_id, report)
                    continue
                sched.start_task(task_id)
                execution, merged = self._run_one(plan.graph.task(task_id), target)
                report.executions.append(execution)
                if execution.success:
                    sched.complete_task(task_id)
                    report.merge.merged.append(merged)
                else:
                    sched.fail_task(task_id)
                    report.merge.skipped.append(task_id)
                    report.failures.append(FailureRecord(task_id, Phase.EXECUTION, execution.error))

    def _run_one(self, task: Task, target: str) -> tuple[ExecutionResult, MergeResult]:
        head_before = git_ops.current_commit(cwd=self.base_dir)
        self._emit(EventType.STARTED, task.id, f"Starting task {task.id}")
        result = self.agent.run_sync(task.directive, cwd=self.base_dir, timeout=self.timeout_seconds)
        if result.output:
            self._emit(EventType.OUTPUT, task.id, result.output)

        execution = ExecutionResult(
            task_id=task.id,
            success=result.success,
            output=result.output,
            error=result.error,
            exit_code=result.exit_code,
            duration=result.duration_ms / 1000,
            workspace_path=str(self.base_dir),
            status=ExecutionStatus.COMPLETED if result.success else ExecutionStatus.FAILED,
            timed_out=result.error.startswith("timed out"),
        )
        if not result.success:
            git_ops.reset_hard(head_before, cwd=self.base_dir)
            self._emit(EventType.FAILED, task.id, result.error)
            return execution, MergeResult(task.id, False, target, error=result.error)

        commits = git_ops.commit_count(head_before, "HEAD", cwd=self.base_dir)
        files = git_ops.changed_files(head_before, "HEAD", cwd=self.base_dir) if commits else []
        self._emit(EventType.COMPLETED, task.id, f"Task {task.id} completed successfully")
        return execution, MergeResult(task.id, True, target, commits=commits, files_changed=files)


def _record_skip(sched: Scheduler, task_id: str, report: RunReport) -> None:
    reason = f"skipped: {sched.explain_block(task_id)}"
    sched.skip_task(task_id)
    report.merge.skipped.append(task_id)
    report.failures.append(FailureRecord(task_id, Phase.EXECUTION, reason))
    log.warn(f"Skipping {escape(task_id)} ({escape(reason)})")


# ── parallel run ─────────────────────────────────────────────────────

class ParallelRun:
    """Orchestrates one run over a list of tasks.

    Usage::

        run = ParallelRun(load_config(repo), repo, get_agent("claude"))
        report = run.run(tasks)     # raises PreconditionError before any side effect
        show_summary(report)
    """

    def __init__(
        self,
        config: Config,
        base_dir: Path,
        agent: AgentBase,
        *,
        reporter: ProgressReporter | None = None,
        monitor: ResourceMonitor | None = None,
        predictor: FilePredictor | None = None,
    ) -> None:
        self.config = config
        self.base_dir = base_dir
        self.agent = agent
        self.reporter = reporter or ProgressReporter(verbose=config.verbose)
        workspace_root = Path(config.workspace_root) if config.workspace_root else Path(tempfile.gettempdir())
        self.monitor = monitor or ResourceMonitor(workspace_root, ResourceThresholds.from_config(config))
        self.predictor = predictor or FilePredictor(
            base_dir,
            use_git_history=config.use_git_history,
            history_depth=config.history_depth,
            include_tests=config.include_tests,
            include_related=config.include_related,
        )
        self._executor: ParallelExecutor | None = None
        self._stop_requested = False
        self._interrupt_count = 0
        self._orig_signal_handlers: dict[int, object] = {}

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self) -> None:
        self._stop_requested = True
        if self._executor is not None:
            self._executor.cancel()

    def run(self, tasks: list[Task]) -> RunReport:
        start = time.monotonic()
        problems = self.config.validate()
        if problems:
            raise PreconditionError(f"Invalid configuration: {'; '.join(problems)}")
        if not tasks:
            raise PreconditionError("No tasks to run")
        precheck_repository(self.base_dir)

        target = self.config.target_branch or git_ops.current_branch(cwd=self.base_dir)
        if not target:
            raise PreconditionError("Cannot determine the target branch (detached HEAD?)")
        if not git_ops.branch_exists(target, cwd=self.base_dir):
            raise PreconditionError(f"Target branch does not exist: {target}")

        plan = build_plan(tasks, self.predictor)
        for warning in plan.stats["warnings"]:
            log.debug(warning)
        if self.config.dry_run:
            return RunReport(
                mode="dry_run",
                success=True,
                plan=plan,
                target_branch=target,
                duration=time.monotonic() - start,
            )

        resources = self.monitor.status()
        sched = Scheduler(plan.graph)
        self._install_signal_handlers()
        try:
            try:
                self._require_parallel(resources)
                report = RunReport(
                    mode="parallel", success=False, plan=plan, resources=resources, target_branch=target
                )
                self._run_parallel(plan, report, resources, sched)
            except ResourceError as e:
                log.warn(f"{escape(str(e))}; running tasks sequentially without workspaces")
                report = RunReport(
                    mode="sequential", success=False, plan=plan, resources=resources, target_branch=target
                )
                self._run_sequential(plan, report, sched)
            except KeyboardInterrupt:
                self._stop_requested = True
                raise
        finally:
            self._restore_signal_handlers()

        self._cancel_pending(sched, report)
        report.task_states = sched.snapshot()
        counts = [f"{sched.count(state)} {state.value}" for state in TaskState if sched.count(state)]
        log.debug(f"Task states: {', '.join(counts)}")
        report.cancelled = self._stop_requested
        report.success = not report.failures and not report.cancelled
        report.duration = time.monotonic() - start
        self.reporter.complete(report.success)
        return report

    def _require_parallel(self, resources: ResourceStatus) -> None:
        if not resources.overall.can_parallelize:
            raise ResourceError(
                resources.overall.reason or "Resources insufficient for parallelization", resources
            )

    def _run_sequential(self, plan: Plan, report: RunReport, sched: Scheduler) -> None:
        git_ops.ensure_clean_git_state(cwd=self.base_dir)
        if git_ops.current_branch(cwd=self.base_dir) != report.target_branch:
            if not git_ops.checkout(report.target_branch, cwd=self.base_dir):
                raise PreconditionError(f"Cannot check out target branch {report.target_branch}")
        self.reporter.start(plan.groups)
        runner = SequentialRunner(
            self.base_dir,
            self.agent,
            timeout_seconds=self.config.timeout_seconds,
            on_event=self.reporter.handle_event,
            should_stop=lambda: self._stop_requested,
        )
        runner.run(plan, report, sched)

    def _run_parallel(
        self, plan: Plan, report: RunReport, resources: ResourceStatus, sched: Scheduler
    ) -> None:
        cfg = self.config
        orchestrator = MergeOrchestrator(self.base_dir, report.target_branch, cfg.merge_strategy)
        orchestrator.ensure_target_checked_out()

        manager = WorkspaceManager(
            self.base_dir,
            Path(cfg.workspace_root) if cfg.workspace_root else None,
            max_workspaces=cfg.max_concurrency,
            branch_prefix=cfg.branch_prefix,
        )
        executor = ParallelExecutor(
            manager,
            self.agent,
            timeout_seconds=cfg.timeout_seconds,
            on_event=self.reporter.handle_event,
            monitor=self.monitor,
            resource_poll_seconds=cfg.resource_poll_seconds,
        )
        self._executor = executor
        if self._stop_requested:
            executor.cancel()
        tasks = {t.id: t for t in plan.graph.tasks()}
        limit = min(cfg.max_concurrency, resources.overall.recommended_concurrency)
        log.info(f"Running {len(tasks)} task(s) in {len(plan.groups)} wave(s), at most {limit} at a time")
        self.reporter.start(plan.groups)

        try:
            for level in plan.levels:
                for group in level:
                    if self._stop_requested:
                        return
                    self._run_wave(group, tasks, limit, sched, executor, manager, orchestrator, report)
        finally:
            self._executor = None
            self._release(manager)

    def _run_wave(
        self,
        group: SafeGroup,
        tasks: dict[str, Task],
        limit: int,
        sched: Scheduler,
        executor: ParallelExecutor,
        manager: WorkspaceManager,
        orchestrator: MergeOrchestrator,
        report: RunReport,
    ) -> None:
        runnable: list[str] = []
        for task_id in group.task_ids:
            if sched.has_failed_deps(task_id):
                _record_skip(sched, task_id, report)
            else:
                runnable.append(task_id)
        if not runnable:
            return

        wave = SafeGroup(id=group.id, task_ids=runnable, files=set(group.files), isolated=group.isolated)
        results = executor.execute(wave, tasks, min(limit, len(runnable)))
        report.executions.extend(results)

        for r in results:
            if r.success:
                sched.complete_task(r.task_id)
            elif r.status == ExecutionStatus.CANCELLED:
                sched.cancel_task(r.task_id)
                report.failures.append(FailureRecord(r.task_id, Phase.EXECUTION, "cancelled"))
            else:
                sched.fail_task(r.task_id)
                report.failures.append(FailureRecord(r.task_id, Phase.EXECUTION, r.error))
        if executor.cancelled:
            self._stop_requested = True

        workspaces = [ws for ws in (manager.get(r.task_id) for r in results) if ws is not None]
        merged = self._merge(orchestrator, workspaces)
        report.merge.extend(merged)
        for m in merged.failed:
            sched.fail_task(m.task_id)
            report.failures.append(FailureRecord(m.task_id, Phase.MERGE, m.error))

        if self.config.cleanup_on_complete and merged.merged:
            self.reporter.cleanup_started()
            orchestrator.cleanup_branches(manager, merged.merged)

    def _merge(self, orchestrator: MergeOrchestrator, workspaces: list[Workspace]) -> MergeOrchestratorResult:
        if not any(ws.status == WorkspaceStatus.COMPLETED for ws in workspaces):
            return orchestrator.merge_all(workspaces)
        self.reporter.merge_started()
        merged = orchestrator.merge_all(workspaces)
        self.reporter.merge_completed(merged)
        return merged

    def _release(self, manager: WorkspaceManager) -> None:
        manager.remove_active()
        leftover = manager.workspaces()
        if not leftover:
            manager.cleanup_all()
            return
        log.info(
            f"Kept {len(leftover)} workspace(s) under {manager.root} for inspection; "
            "run 'tandem cleanup' to remove them"
        )

    def _cancel_pending(self, sched: Scheduler, report: RunReport) -> None:
        for task_id in sched.pending():
            sched.cancel_task(task_id)
            report.failures.append(FailureRecord(task_id, Phase.EXECUTION, "cancelled"))

    # ── signals ──────────────────────────────────────────────────

    def _install_signal_handlers(self) -> None:
        """Install handlers so Ctrl-C stops admission and cancels in-flight agents."""
        self._orig_signal_handlers = {}
        signals_to_handle = [signal.SIGINT]
        if hasattr(signal, "SIGBREAK"):
            signals_to_handle.append(signal.SIGBREAK)
        if hasattr(signal, "SIGTERM"):
            signals_to_handle.append(signal.SIGTERM)

        for sig in signals_to_handle:
            try:
                self._orig_signal_handlers[sig] = signal.getsignal(sig)
                signal.signal(sig, self._on_signal)
            except (OSError, RuntimeError, ValueError):
                continue

    def _restore_signal_handlers(self) -> None:
        for sig, handler in self._orig_signal_handlers.items():
            try:
                signal.signal(sig, handler)
            except (OSError, RuntimeError, ValueError):
                continue
        self._orig_signal_handlers = {}

    def _on_signal(self, signum: int, _frame: object) -> None:
        self._interrupt_count += 1
        self.request_stop()
        if self._interrupt_count == 1:
            log.warn(f"Interrupt received (signal {signum}). Stopping agents...")
        else:
            log.warn(f"Interrupt received again (signal {signum}). Forcing stop...")


# ── postmortem cleanup ───────────────────────────────────────────────

def cleanup(base_dir: Path, branch_prefix: str = "tandem", workspace_root: Path | None = None) -> list[str]:
    """Remove leftover workspaces and branches of earlier runs. Returns the task ids cleaned."""
    if not git_ops.is_repository(cwd=base_dir):
        raise PreconditionError(f"Not a git repository: {base_dir}")
    manager = WorkspaceManager(base_dir, workspace_root, branch_prefix=branch_prefix)
    cleaned = [ws.task_id for ws in manager.sync()]
    manager.cleanup_all()

    prefix = f"{manager.branch_prefix}/"
    for branch in git_ops.list_branches(f"{prefix}*", cwd=base_dir):
        if git_ops.delete_branch(branch, force=True, cwd=base_dir):
            task_id = branch[len(prefix):]
            if task_id not in cleaned:
                cleaned.append(task_id)
        else:
            log.warn(f"Failed to delete branch {branch}")
    git_ops.worktree_prune(cwd=base_dir)
    return cleaned
