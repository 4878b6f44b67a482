"""Per-run task state ledger used to gate waves on upstream outcomes."""

from __future__ import annotations

from enum import Enum

from tandem import log
from tandem.analyzer import DependencyGraph


class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


_BLOCKING = (TaskState.FAILED, TaskState.CANCELLED, TaskState.SKIPPED)


class Scheduler:
    """Tracks task state across waves.

    Usage::

        sched = Scheduler(graph)
        if sched.has_failed_deps(tid):  # a dependency failed, was skipped or cancelled
            sched.skip_task(tid)
        sched.start_task(tid)           # pending -> running
        sched.complete_task(tid)        # running -> done
        sched.fail_task(tid)            # running/done -> failed (e.g. merge failure)
    """

    def __init__(self, graph: DependencyGraph) -> None:
        self._state: dict[str, TaskState] = {tid: TaskState.PENDING for tid in graph.nodes}
        self._deps: dict[str, set[str]] = {
            tid: set(node.dependencies) for tid, node in graph.nodes.items()
        }

    # ── state queries ────────────────────────────────────────────

    def state(self, task_id: str) -> TaskState:
        return self._state.get(task_id, TaskState.PENDING)

    def count(self, state: TaskState) -> int:
        return sum(1 for s in self._state.values() if s == state)

    def pending(self) -> list[str]:
        return [tid for tid, s in self._state.items() if s == TaskState.PENDING]

    def snapshot(self) -> dict[str, str]:
        return {tid: s.value for tid, s in self._state.items()}

    # ── dependency checks ────────────────────────────────────────

    def has_failed_deps(self, task_id: str) -> bool:
        """Check if any dependency of *task_id* failed, was skipped or cancelled."""
        return any(self._state.get(dep) in _BLOCKING for dep in self._deps.get(task_id, ()))

    def explain_block(self, task_id: str) -> str:
        """Human-readable explanation of why *task_id* cannot run."""
        blocked = []
        for dep in sorted(self._deps.get(task_id, ())):
            st = self._state.get(dep, TaskState.PENDING)
            if st != TaskState.DONE:
                blocked.append(f"{dep} ({st.value})")
        return f"dependsOn: {' '.join(blocked)}" if blocked else ""

    # ── transitions ──────────────────────────────────────────────

    def start_task(self, task_id: str) -> None:
        self._state[task_id] = TaskState.RUNNING
        log.debug(f"Task {task_id}: pending -> running")

    def complete_task(self, task_id: str) -> None:
        self._state[task_id] = TaskState.DONE
        log.debug(f"Task {task_id}: running -> done")

    def fail_task(self, task_id: str) -> None:
        previous = self._state.get(task_id, TaskState.PENDING)
        self._state[task_id] = TaskState.FAILED
        log.debug(f"Task {task_id}: {previous.value} -> failed")

    def cancel_task(self, task_id: str) -> None:
        self._state[task_id] = TaskState.CANCELLED
        log.debug(f"Task {task_id}: cancelled")

    def skip_task(self, task_id: str) -> None:
        self._state[task_id] = TaskState.SKIPPED
        log.debug(f"Task {task_id}: skipped ({self.explain_block(task_id)})")
