"""Tests for tandem.artifacts: run reports and the final summary."""

from __future__ import annotations

import json
from pathlib import Path

from tandem.analyzer import TaskAnalyzer
from tandem.artifacts import FailureRecord, RunReport, show_summary, write_report
from tandem.errors import Phase
from tandem.executor import ExecutionResult, ExecutionStatus
from tandem.merge import MergeOrchestratorResult, MergeResult
from tandem.pipeline import Plan


def _report(make_task, **kwargs) -> RunReport:
    graph = TaskAnalyzer().build_graph([make_task("a"), make_task("b")])
    plan = Plan(graph=graph, levels=[], stats={"total_tasks": 2})
    merge = MergeOrchestratorResult(
        merged=[MergeResult("a", True, "tandem/a", commits=2, files_changed=["a.txt", "lib/a.py"])],
    )
    defaults = dict(
        mode="parallel",
        success=False,
        plan=plan,
        executions=[
            ExecutionResult("a", True, duration=1.23456),
            ExecutionResult("b", False, error="exit code 1: boom", exit_code=1, status=ExecutionStatus.FAILED),
        ],
        merge=merge,
        failures=[FailureRecord("b", Phase.EXECUTION, "exit code 1: boom")],
        target_branch="main",
    )
    defaults.update(kwargs)
    return RunReport(**defaults)


class TestRunReport:
    def test_lookups(self, make_task):
        report = _report(make_task)
        assert report.failure_for("b").reason == "exit code 1: boom"
        assert report.failure_for("a") is None
        assert report.execution_for("a").success
        assert report.merged_task_ids == ["a"]

    def test_to_dict(self, make_task):
        data = _report(make_task).to_dict()
        assert data["mode"] == "parallel"
        assert data["resources"] is None
        assert data["executions"][0]["duration"] == 1.235
        assert data["merge"]["total_commits"] == 2
        assert data["failures"][0]["category"] == "error"
        assert "generated_at" in data

    def test_write_report(self, make_task, tmp_path: Path):
        path = tmp_path / "out" / "report.json"
        write_report(_report(make_task), path)
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["target_branch"] == "main"
        assert [t["id"] for t in data["plan"]["tasks"]] == ["a", "b"]


class TestShowSummary:
    def test_failures_listed(self, make_task, capsys):
        show_summary(_report(make_task))
        out = capsys.readouterr().out
        assert "Run finished with failures." in out
        assert "1/2 task(s) merged." in out
        assert "Commits:       2" in out
        assert "Files changed: 2" in out
        assert ">>> Failures" in out
        assert "- b (execution, error): exit code 1: boom" in out

    def test_success(self, make_task, capsys):
        show_summary(_report(make_task, success=True, failures=[]))
        out = capsys.readouterr().out
        assert "Run complete!" in out
        assert ">>> Failures" not in out

    def test_cancelled(self, make_task, capsys):
        report = _report(
            make_task,
            cancelled=True,
            failures=[FailureRecord("b", Phase.EXECUTION, "cancelled")],
        )
        show_summary(report)
        out = capsys.readouterr().out
        assert "Run cancelled." in out
        assert "(execution, cancelled)" in out

    def test_bracketed_reason_printed_literally(self, make_task, capsys):
        reason = "exit code 1: missing [/tmp/out] dir [ERROR]"
        show_summary(_report(make_task, failures=[FailureRecord("b", Phase.EXECUTION, reason)]))
        out = capsys.readouterr().out
        assert "missing [/tmp/out] dir [ERROR]" in out
