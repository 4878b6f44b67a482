"""Tests for tandem.scheduler: per-run task state across waves."""

from __future__ import annotations

from tandem.analyzer import TaskAnalyzer
from tandem.scheduler import Scheduler, TaskState


def _sched(make_task) -> Scheduler:
    graph = TaskAnalyzer().build_graph([
        make_task("A"),
        make_task("B", depends_on=["A"]),
        make_task("C", depends_on=["A", "B"]),
        make_task("D"),
    ])
    return Scheduler(graph)


class TestSchedulerState:
    def test_initial_state_pending(self, make_task):
        sched = _sched(make_task)
        assert sched.pending() == ["A", "B", "C", "D"]
        assert sched.count(TaskState.PENDING) == 4

    def test_unknown_task_reads_as_pending(self, make_task):
        assert _sched(make_task).state("ghost") == TaskState.PENDING

    def test_transitions(self, make_task):
        sched = _sched(make_task)
        sched.start_task("A")
        assert sched.state("A") == TaskState.RUNNING
        sched.complete_task("A")
        sched.start_task("D")
        sched.fail_task("D")
        assert sched.snapshot() == {"A": "done", "B": "pending", "C": "pending", "D": "failed"}

    def test_merge_failure_after_done(self, make_task):
        sched = _sched(make_task)
        sched.complete_task("A")
        sched.fail_task("A")
        assert sched.state("A") == TaskState.FAILED


class TestDependencies:
    def test_failed_dependency_blocks(self, make_task):
        sched = _sched(make_task)
        sched.fail_task("A")
        assert sched.has_failed_deps("B")
        assert not sched.has_failed_deps("D")

    def test_skipped_and_cancelled_propagate(self, make_task):
        sched = _sched(make_task)
        sched.complete_task("A")
        sched.skip_task("B")
        assert sched.has_failed_deps("C")
        sched2 = _sched(make_task)
        sched2.cancel_task("A")
        assert sched2.has_failed_deps("B")

    def test_explain_block(self, make_task):
        sched = _sched(make_task)
        sched.complete_task("A")
        sched.fail_task("B")
        assert sched.explain_block("C") == "dependsOn: B (failed)"
        assert sched.explain_block("D") == ""
