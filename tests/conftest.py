"""Shared fixtures for tandem tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Use tandem.io_utils read_text/write_text for consistent UTF-8 I/O.

Agents in tests are real subprocesses (``python -c``) wired through
CommandAgent. The fake agent reads its directive from argv:

- a directive containing ``FAIL`` exits 1 without committing;
- a directive containing ``HANG`` sleeps far past any test timeout;
- a directive containing ``NOOP`` exits 0 without committing;
- anything else writes the file named by the directive's last word and commits it.
"""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import pytest

from tandem.agents.command import CommandAgent
from tandem.io_utils import write_text
from tandem.tasks.model import Task, TaskKind

FAKE_AGENT_SCRIPT = """
import subprocess, sys, time
from pathlib import Path

directive = sys.argv[1]
if "FAIL" in directive:
    print("agent gave up on " + directive)
    sys.exit(1)
if "HANG" in directive:
    time.sleep(60)
    sys.exit(0)
if "NOOP" in directive:
    print("nothing to do")
    sys.exit(0)
name = directive.split()[-1]
path = Path(name)
path.parent.mkdir(parents=True, exist_ok=True)
path.write_text(directive + "\\n", encoding="utf-8")
subprocess.run(["git", "add", name], check=True)
subprocess.run(["git", "commit", "-q", "-m", "agent: " + name], check=True)
print("wrote " + name)
"""


def pytest_addoption(parser: pytest.Parser) -> None:
    """Register opt-in switch for expensive end-to-end tests."""
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run end-to-end tests marked with 'e2e'.",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip e2e tests unless explicitly enabled."""
    if config.getoption("--run-e2e"):
        return

    skip_e2e = pytest.mark.skip(
        reason="E2E tests are skipped by default. Use --run-e2e to include them.",
    )
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


def git(repo: Path, *args: str) -> str:
    r = subprocess.run(["git", *args], cwd=repo, capture_output=True, text=True, check=True)
    return r.stdout.strip()


def commit_file(repo: Path, name: str, content: str, msg: str) -> None:
    write_text(repo / name, content)
    git(repo, "add", name)
    git(repo, "commit", "-q", "-m", msg)


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a minimal git repo on branch ``main`` with one commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "config", "user.name", "Test")
    git(repo, "config", "user.email", "test@test")
    git(repo, "config", "commit.gpgsign", "false")
    commit_file(repo, "README.md", "# Test\n", "Initial")
    git(repo, "branch", "-M", "main")
    return repo


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    return tmp_path / "workspaces"


def _make_task(
    id: str,
    description: str = "",
    files: list[str] | None = None,
    depends_on: list[str] | None = None,
    kind: TaskKind = TaskKind.FILE,
) -> Task:
    return Task(
        id=id,
        description=description or f"Task {id}",
        kind=kind,
        declared_files=tuple(files or ()),
        declared_dependencies=tuple(depends_on or ()),
    )


@pytest.fixture
def make_task():
    """Factory fixture that creates Task instances."""
    return _make_task


@pytest.fixture
def fake_agent() -> CommandAgent:
    """A work-performing agent that honours the commit-on-success contract."""
    return CommandAgent([sys.executable, "-c", FAKE_AGENT_SCRIPT])
