"""CLI tests: every command and its main flags, invoked in-process through CliRunner."""

from __future__ import annotations

import json
import shlex
import sys
from pathlib import Path

import pytest

from conftest import FAKE_AGENT_SCRIPT, commit_file, git
from tandem import __version__, git_ops
from tandem.cli import main
from tandem.io_utils import write_text


@pytest.fixture
def cli_runner():
    """Click CliRunner for invoking the CLI in-process."""
    from click.testing import CliRunner
    return CliRunner()


@pytest.fixture
def agent_command(tmp_path: Path) -> str:
    script = tmp_path / "fake_agent.py"
    write_text(script, FAKE_AGENT_SCRIPT)
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"


# ── Main entry and help ──────────────────────────────────────────────


class TestCliHelpAndVersion:
    def test_help_long(self, cli_runner):
        r = cli_runner.invoke(main, ["--help"])
        assert r.exit_code == 0
        assert "parallel git worktrees" in r.output
        for command in ("run", "plan", "resources", "cleanup", "rollback", "config"):
            assert command in r.output

    def test_help_short(self, cli_runner):
        r = cli_runner.invoke(main, ["-h"])
        assert r.exit_code == 0

    def test_version(self, cli_runner):
        r = cli_runner.invoke(main, ["--version"])
        assert r.exit_code == 0
        assert f"tandem, version {__version__}" in r.output

    @pytest.mark.parametrize("alias", ["exec", "analyze", "clean", "undo", "status"])
    def test_aliases_resolve(self, cli_runner, alias):
        r = cli_runner.invoke(main, [alias, "--help"])
        assert r.exit_code == 0


# ── plan ─────────────────────────────────────────────────────────────


class TestPlan:
    def test_text_plan(self, cli_runner, git_repo):
        r = cli_runner.invoke(main, ["-C", str(git_repo), "plan", "Create one.txt", "Create two.txt"])
        assert r.exit_code == 0, r.output
        assert "## Execution Plan" in r.output
        assert "level 0: {task-1, task-2}" in r.output

    def test_json_plan(self, cli_runner, git_repo):
        r = cli_runner.invoke(
            main, ["-C", str(git_repo), "plan", "--json", "Create one.txt", "then Create two.txt"]
        )
        assert r.exit_code == 0, r.output
        data = json.loads(r.output)
        assert [[g["task_ids"] for g in level] for level in data["levels"]] == [[["task-1"]], [["task-2"]]]

    def test_task_file(self, cli_runner, git_repo, tmp_path):
        task_file = tmp_path / "tasks.yaml"
        write_text(task_file, "tasks:\n  - id: a\n    description: Create a.txt\n  - id: b\n    description: Create a.txt\n")
        r = cli_runner.invoke(main, ["-C", str(git_repo), "plan", "-f", str(task_file)])
        assert r.exit_code == 0, r.output
        assert "level 0: {a}  {b}" in r.output

    def test_details_adds_reports(self, cli_runner, git_repo):
        r = cli_runner.invoke(
            main, ["-C", str(git_repo), "plan", "--details", "Edit shared.txt", "Fix shared.txt"]
        )
        assert r.exit_code == 0, r.output
        assert "## Task Analysis Summary" in r.output
        assert "## File Overlap Analysis" in r.output
        assert "task-1 <-> task-2" in r.output

    def test_requires_tasks(self, cli_runner, git_repo):
        r = cli_runner.invoke(main, ["-C", str(git_repo), "plan"])
        assert r.exit_code == 2
        assert "No tasks given" in r.output

    def test_descriptions_and_file_conflict(self, cli_runner, git_repo, tmp_path):
        task_file = tmp_path / "tasks.json"
        write_text(task_file, "[]")
        r = cli_runner.invoke(main, ["-C", str(git_repo), "plan", "-f", str(task_file), "Create x.txt"])
        assert r.exit_code == 2

    def test_malformed_task_file(self, cli_runner, git_repo, tmp_path):
        task_file = tmp_path / "tasks.json"
        write_text(task_file, '{"tasks": 3}')
        r = cli_runner.invoke(main, ["-C", str(git_repo), "plan", "-f", str(task_file)])
        assert r.exit_code == 2


# ── run ──────────────────────────────────────────────────────────────


class TestRun:
    def test_dry_run(self, cli_runner, git_repo, agent_command):
        head = git_ops.current_commit(cwd=git_repo)
        r = cli_runner.invoke(
            main,
            ["-C", str(git_repo), "run", "--dry-run", "--agent-command", agent_command, "Create one.txt"],
        )
        assert r.exit_code == 0, r.output
        assert "## Parallelization Analysis" in r.output
        assert git_ops.current_commit(cwd=git_repo) == head

    def test_run_merges_and_writes_report(self, cli_runner, git_repo, agent_command, tmp_path):
        report = tmp_path / "report.json"
        r = cli_runner.invoke(
            main,
            [
                "-C", str(git_repo), "run",
                "--agent-command", agent_command,
                "--report", str(report),
                "Create one.txt", "Create two.txt",
            ],
        )
        assert r.exit_code == 0, r.output
        assert "Run complete!" in r.output
        assert (git_repo / "one.txt").exists()
        assert (git_repo / "two.txt").exists()
        data = json.loads(report.read_text(encoding="utf-8"))
        assert data["success"] is True
        assert sorted(m["task_id"] for m in data["merge"]["merged"]) == ["task-1", "task-2"]

    def test_failed_task_exits_one(self, cli_runner, git_repo, agent_command):
        r = cli_runner.invoke(
            main, ["-C", str(git_repo), "run", "--agent-command", agent_command, "FAIL one.txt"]
        )
        assert r.exit_code == 1
        assert "Run finished with failures." in r.output

    def test_dirty_repository_exits_two(self, cli_runner, git_repo, agent_command):
        write_text(git_repo / "README.md", "dirty\n")
        r = cli_runner.invoke(
            main, ["-C", str(git_repo), "run", "--agent-command", agent_command, "Create one.txt"]
        )
        assert r.exit_code == 2
        assert "Uncommitted changes" in r.output

    def test_missing_agent_exits_two(self, cli_runner, git_repo):
        r = cli_runner.invoke(
            main,
            ["-C", str(git_repo), "run", "--agent-command", "/nonexistent/tandem-agent", "Create one.txt"],
        )
        assert r.exit_code == 2
        assert "not found" in r.output

    def test_command_agent_needs_command(self, cli_runner, git_repo, monkeypatch):
        monkeypatch.delenv("TANDEM_AGENT_COMMAND", raising=False)
        r = cli_runner.invoke(main, ["-C", str(git_repo), "run", "--agent", "command", "Create one.txt"])
        assert r.exit_code == 2


# ── rollback, cleanup, resources, config ─────────────────────────────


class TestMaintenance:
    def test_rollback_yes(self, cli_runner, git_repo):
        first = git_ops.current_commit(cwd=git_repo)
        commit_file(git_repo, "a.txt", "a", "a")
        r = cli_runner.invoke(main, ["-C", str(git_repo), "rollback", "1", "--yes"])
        assert r.exit_code == 0, r.output
        assert git_ops.current_commit(cwd=git_repo) == first

    def test_rollback_declined(self, cli_runner, git_repo):
        commit_file(git_repo, "a.txt", "a", "a")
        head = git_ops.current_commit(cwd=git_repo)
        r = cli_runner.invoke(main, ["-C", str(git_repo), "rollback", "1"], input="n\n")
        assert r.exit_code == 1
        assert git_ops.current_commit(cwd=git_repo) == head

    def test_rollback_rejects_zero(self, cli_runner, git_repo):
        r = cli_runner.invoke(main, ["-C", str(git_repo), "rollback", "0", "--yes"])
        assert r.exit_code == 2

    def test_rollback_past_root_fails(self, cli_runner, git_repo):
        r = cli_runner.invoke(main, ["-C", str(git_repo), "rollback", "5", "--yes"])
        assert r.exit_code == 1

    def test_cleanup(self, cli_runner, git_repo):
        git(git_repo, "branch", "tandem/old")
        r = cli_runner.invoke(main, ["-C", str(git_repo), "cleanup"])
        assert r.exit_code == 0, r.output
        assert "Removed 1 leftover" in r.output
        assert not git_ops.branch_exists("tandem/old", cwd=git_repo)

    def test_cleanup_nothing(self, cli_runner, git_repo):
        r = cli_runner.invoke(main, ["-C", str(git_repo), "clean"])
        assert r.exit_code == 0
        assert "Nothing to clean up" in r.output

    def test_resources_json(self, cli_runner, git_repo):
        r = cli_runner.invoke(main, ["-C", str(git_repo), "resources", "--json"])
        assert r.exit_code == 0, r.output
        data = json.loads(r.output)
        assert set(data) == {"disk", "memory", "cpu", "overall"}
        assert data["overall"]["recommended_concurrency"] >= 1

    def test_config_reads_repo_file(self, cli_runner, git_repo):
        write_text(git_repo / ".tandem.yaml", "maxConcurrency: 3\nmerge_strategy: squash\n")
        r = cli_runner.invoke(main, ["-C", str(git_repo), "config"])
        assert r.exit_code == 0, r.output
        assert "max_concurrency: 3" in r.output
        assert "merge_strategy: squash" in r.output

    def test_config_reports_problems(self, cli_runner, git_repo):
        write_text(git_repo / ".tandem.yaml", "max_concurrency: 50\n")
        r = cli_runner.invoke(main, ["-C", str(git_repo), "config"])
        assert r.exit_code == 2
        assert "max_concurrency must be between 1 and 10" in r.output
