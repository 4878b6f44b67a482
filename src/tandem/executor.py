"""Parallel executor: runs one safe group's tasks as a bounded pool of agent processes."""

from __future__ import annotations

import subprocess
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from rich.markup import escape

from tandem import log
from tandem.agents.base import AgentBase
from tandem.errors import TandemError
from tandem.io_utils import read_text
from tandem.overlap import SafeGroup
from tandem.resources import ResourceMonitor
from tandem.tasks.model import Task
from tandem.workspace import Workspace, WorkspaceManager, slugify


class EventType(str, Enum):
    STARTED = "started"
    OUTPUT = "output"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProgressEvent:
    type: EventType
    task_id: str
    message: str = ""
    timestamp: float = field(default_factory=time.time)


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ExecutionResult:
    """One task attempt. ``success`` is true exactly when the agent exited 0."""

    task_id: str
    success: bool
    output: str = ""
    error: str = ""
    exit_code: int = 0
    duration: float = 0.0
    workspace_path: str = ""
    status: ExecutionStatus = ExecutionStatus.COMPLETED
    timed_out: bool = False

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "success": self.success,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "workspace_path": self.workspace_path,
            "error": self.error,
            "timed_out": self.timed_out,
            "output": self.output,
        }


@dataclass
class AgentSlot:
    """Tracks a running agent subprocess."""

    task_id: str
    proc: subprocess.Popen  # type: ignore[type-arg]
    workspace: Workspace
    output_file: Path
    deadline: float
    started_at: float = field(default_factory=time.monotonic)
    offset: int = 0


EventHandler = Callable[[ProgressEvent], None]


class ParallelExecutor:
    """Runs tasks inside their own workspaces, at most *ceiling* at a time.

    Usage::

        executor = ParallelExecutor(manager, agent, timeout_seconds=300, on_event=reporter.handle_event)
        results = executor.execute(group, tasks, ceiling=3)
        executor.cancel()               # safe to call from a signal handler
    """

    def __init__(
        self,
        manager: WorkspaceManager,
        agent: AgentBase,
        *,
        timeout_seconds: float = 300,
        on_event: EventHandler | None = None,
        monitor: ResourceMonitor | None = None,
        resource_poll_seconds: float = 0,
        poll_interval: float = 0.1,
    ) -> None:
        self.manager = manager
        self.agent = agent
        self.timeout_seconds = timeout_seconds
        self.on_event = on_event
        self.monitor = monitor
        self.resource_poll_seconds = resource_poll_seconds
        self.poll_interval = poll_interval
        self.log_dir = manager.log_dir
        self.active: list[AgentSlot] = []
        self.peak_concurrency = 0
        self._cancel_requested = False
        self._last_poll = time.monotonic()
        self._admission_open = True

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    def cancel(self) -> None:
        """Stop admitting tasks; in-flight agents are terminated by the running loop."""
        self._cancel_requested = True

    def _emit(self, kind: EventType, task_id: str, message: str = "") -> None:
        if self.on_event is not None:
            self.on_event(ProgressEvent(kind, task_id, message))

    # ── main loop ────────────────────────────────────────────────

    def execute(self, group: SafeGroup, tasks: dict[str, Task], ceiling: int) -> list[ExecutionResult]:
        """Run every task of *group*; returns results in completion order."""
        ceiling = max(1, min(ceiling, len(group.task_ids)))
        queue = deque(group.task_ids)
        results: list[ExecutionResult] = []
        log.debug(f"Executing {group.id} ({len(queue)} task(s), ceiling {ceiling})")

        try:
            while queue or self.active:
                if self._cancel_requested:
                    self._cancel_in_flight(results)
                    break

                while queue and len(self.active) < ceiling and self._may_admit():
                    task_id = queue.popleft()
                    failed = self._admit(tasks[task_id])
                    if failed is not None:
                        results.append(failed)
                self.peak_concurrency = max(self.peak_concurrency, len(self.active))

                self._reap_finished(results)
                self._maybe_poll_resources()

                if self.active:
                    time.sleep(self.poll_interval)
        except KeyboardInterrupt:
            self._cancel_requested = True
            self._cancel_in_flight(results)
            raise

        return results

    def _admit(self, task: Task) -> ExecutionResult | None:
        """Create the workspace and spawn the agent. Returns a result only on failure."""
        start = time.monotonic()
        self._emit(EventType.STARTED, task.id, f"Starting task {task.id}")

        try:
            ws = self.manager.create(task.id)
        except TandemError as e:
            return self._fail_early(task.id, f"workspace: {e}", start, "")

        output_file = self.log_dir / f"{slugify(task.id)}.log"
        try:
            proc = self.agent.launch(task.directive, cwd=ws.path, output_file=output_file)
        except OSError as e:
            self.manager.mark_failed(task.id)
            reason = f"spawn error: {e}"
            return self._fail_early(task.id, reason, start, str(ws.path))

        self.active.append(
            AgentSlot(
                task_id=task.id,
                proc=proc,
                workspace=ws,
                output_file=output_file,
                deadline=start + self.timeout_seconds,
                started_at=start,
            )
        )
        return None

    def _fail_early(self, task_id: str, reason: str, start: float, path: str) -> ExecutionResult:
        log.debug(f"Task {escape(task_id)}: {escape(reason)}")
        self._emit(EventType.FAILED, task_id, reason)
        return ExecutionResult(
            task_id=task_id,
            success=False,
            error=reason,
            exit_code=-1,
            duration=time.monotonic() - start,
            workspace_path=path,
            status=ExecutionStatus.FAILED,
        )

    def _stream_output(self, slot: AgentSlot) -> None:
        if not slot.output_file.is_file():
            return
        with open(slot.output_file, "rb") as f:
            f.seek(slot.offset)
            chunk = f.read()
        if chunk:
            slot.offset += len(chunk)
            self._emit(EventType.OUTPUT, slot.task_id, chunk.decode("utf-8", errors="replace"))

    def _read_output(self, slot: AgentSlot) -> str:
        if not slot.output_file.is_file():
            return ""
        return read_text(slot.output_file, errors="replace")

    def _reap_finished(self, results: list[ExecutionResult]) -> None:
        """Check active agents; record any that exited or ran out of time."""
        still_active: list[AgentSlot] = []
        now = time.monotonic()

        for slot in self.active:
            self._stream_output(slot)
            rc = slot.proc.poll()
            if rc is None:
                if now < slot.deadline:
                    still_active.append(slot)
                    continue
                self.agent.terminate_process(slot.proc)
                results.append(self._finish(slot, timed_out=True))
                continue
            results.append(self._finish(slot))

        self.active = still_active

    def _finish(self, slot: AgentSlot, *, timed_out: bool = False) -> ExecutionResult:
        self._stream_output(slot)
        output = self._read_output(slot)
        rc = slot.proc.returncode if slot.proc.returncode is not None else -1
        duration = time.monotonic() - slot.started_at
        success = rc == 0 and not timed_out

        if timed_out:
            error = f"timed out after {self.timeout_seconds:g}s"
        elif rc != 0:
            lines = output.strip().splitlines()
            error = f"exit code {rc}" + (f": {lines[-1][:200]}" if lines else "")
        else:
            error = ""

        if success:
            self.manager.mark_completed(slot.task_id)
            self._emit(EventType.COMPLETED, slot.task_id, f"Task {slot.task_id} completed successfully")
        else:
            self.manager.mark_failed(slot.task_id)
            self._emit(EventType.FAILED, slot.task_id, error)

        return ExecutionResult(
            task_id=slot.task_id,
            success=success,
            output=output,
            error=error,
            exit_code=-1 if timed_out else rc,
            duration=duration,
            workspace_path=str(slot.workspace.path),
            status=ExecutionStatus.COMPLETED if success else ExecutionStatus.FAILED,
            timed_out=timed_out,
        )

    def _cancel_in_flight(self, results: list[ExecutionResult]) -> None:
        """Terminate active agents and record them as cancelled."""
        if not self.active:
            return
        log.warn(f"Stopping {len(self.active)} active agent(s)...")
        slots = list(self.active)
        self.active = []

        for slot in slots:
            self.agent.terminate_process(slot.proc)
            self.manager.mark_failed(slot.task_id)
            self._emit(EventType.CANCELLED, slot.task_id, f"Task {slot.task_id} cancelled")
            results.append(
                ExecutionResult(
                    task_id=slot.task_id,
                    success=False,
                    output=self._read_output(slot),
                    error="cancelled",
                    exit_code=slot.proc.returncode if slot.proc.returncode is not None else -1,
                    duration=time.monotonic() - slot.started_at,
                    workspace_path=str(slot.workspace.path),
                    status=ExecutionStatus.CANCELLED,
                )
            )

    def _may_admit(self) -> bool:
        """Admit when nothing runs, or when the monitor has room for one more workspace."""
        if self._cancel_requested:
            return False
        if not self.active or self.monitor is None or self.resource_poll_seconds <= 0:
            return True
        ok, reason = self.monitor.can_add_workspace(len(self.active))
        if not ok and self._admission_open:
            log.warn(f"Holding back new tasks: {escape(reason)}")
        elif ok and not self._admission_open:
            log.info("Resources recovered; admitting tasks again")
        self._admission_open = ok
        return ok

    def _maybe_poll_resources(self) -> None:
        if self.monitor is None or self.resource_poll_seconds <= 0:
            return
        now = time.monotonic()
        if now - self._last_poll >= self.resource_poll_seconds:
            self._last_poll = now
            self.monitor.poll()
