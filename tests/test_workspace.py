"""Tests for tandem.workspace: worktree lifecycle against real git repos."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import commit_file, git
from tandem import git_ops, workspace
from tandem.errors import CapacityError, PreconditionError
from tandem.io_utils import read_text, write_text
from tandem.workspace import WorkspaceManager, WorkspaceStatus, precheck_repository, slugify


@pytest.fixture
def manager(git_repo: Path, workspace_root: Path) -> WorkspaceManager:
    mgr = WorkspaceManager(git_repo, workspace_root, max_workspaces=2)
    yield mgr
    mgr.cleanup_all()


# ── Precheck ─────────────────────────────────────────────────────────


class TestPrecheck:
    def test_clean_repo_passes(self, git_repo: Path) -> None:
        precheck_repository(git_repo)

    def test_untracked_files_are_ignored(self, git_repo: Path) -> None:
        write_text(git_repo / "scratch.txt", "x")
        precheck_repository(git_repo)

    def test_dirty_repo_refused(self, git_repo: Path) -> None:
        write_text(git_repo / "README.md", "edited\n")
        with pytest.raises(PreconditionError, match="Uncommitted changes"):
            precheck_repository(git_repo)

    def test_not_a_repo(self, tmp_path: Path) -> None:
        with pytest.raises(PreconditionError, match="Not a git repository"):
            precheck_repository(tmp_path)


# ── Creation ─────────────────────────────────────────────────────────


class TestCreate:
    def test_create_checks_out_fresh_branch(self, git_repo: Path, manager: WorkspaceManager) -> None:
        ws = manager.create("task-1")
        assert ws.branch == "tandem/task-1"
        assert ws.path.is_dir()
        assert ws.status == WorkspaceStatus.ACTIVE
        assert ws.base_commit == git_ops.current_commit(cwd=git_repo)
        assert ws.base_ref == "main"
        assert read_text(ws.path / "README.md") == "# Test\n"
        assert git_ops.current_branch(cwd=ws.path) == "tandem/task-1"

    def test_commits_in_workspace_stay_off_base(self, git_repo: Path, manager: WorkspaceManager) -> None:
        ws = manager.create("task-1")
        commit_file(ws.path, "feature.txt", "f", "feature")
        assert not (git_repo / "feature.txt").exists()
        assert git_ops.commit_count("main", ws.branch, cwd=git_repo) == 1

    def test_capacity_is_enforced(self, manager: WorkspaceManager) -> None:
        manager.create("a")
        manager.create("b")
        assert manager.remaining_capacity() == 0
        with pytest.raises(CapacityError, match="Maximum workspaces"):
            manager.create("c")

    def test_finished_workspaces_free_capacity(self, manager: WorkspaceManager) -> None:
        manager.create("a")
        manager.create("b")
        manager.mark_completed("a")
        assert manager.can_create()
        manager.create("c")

    def test_dirty_base_refused(self, git_repo: Path, manager: WorkspaceManager) -> None:
        write_text(git_repo / "README.md", "dirty\n")
        with pytest.raises(PreconditionError):
            manager.create("task-1")
        assert manager.workspaces() == []

    def test_duplicate_task_refused(self, manager: WorkspaceManager) -> None:
        manager.create("a")
        with pytest.raises(PreconditionError, match="already exists"):
            manager.create("a")

    def test_stale_branch_is_replaced(self, git_repo: Path, manager: WorkspaceManager) -> None:
        git(git_repo, "branch", "tandem/a")
        ws = manager.create("a")
        assert git_ops.current_branch(cwd=ws.path) == "tandem/a"

    def test_slugify(self) -> None:
        assert slugify("feat/login page") == "feat-login-page"
        assert slugify("///") == "task"


# ── Transitions and removal ──────────────────────────────────────────


class TestLifecycle:
    def test_transitions(self, manager: WorkspaceManager) -> None:
        manager.create("a")
        manager.create("b")
        manager.mark_completed("a")
        manager.mark_failed("b")
        assert [w.task_id for w in manager.completed()] == ["a"]
        assert [w.task_id for w in manager.failed()] == ["b"]
        with pytest.raises(ValueError, match="invalid transition"):
            manager.mark_failed("a")

    def test_active_workspace_is_failed_before_cleaning(self, manager: WorkspaceManager) -> None:
        ws = manager.create("a")
        with pytest.raises(ValueError, match="invalid transition active -> cleaning"):
            manager._transition("a", WorkspaceStatus.CLEANING)
        manager.remove("a")
        assert ws.status == WorkspaceStatus.CLEANING

    def test_force_remove_of_active_workspace(self, manager: WorkspaceManager) -> None:
        ws = manager.create("a")
        manager.force_remove("a")
        assert ws.status == WorkspaceStatus.CLEANING
        assert not ws.path.exists()

    def test_remove_deletes_worktree_and_branch(self, git_repo: Path, manager: WorkspaceManager) -> None:
        ws = manager.create("a")
        manager.mark_completed("a")
        manager.remove("a")
        assert not ws.path.exists()
        assert not git_ops.branch_exists("tandem/a", cwd=git_repo)
        assert not manager.has("a")

    def test_remove_is_idempotent(self, manager: WorkspaceManager) -> None:
        manager.create("a")
        manager.remove("a")
        manager.remove("a")
        manager.remove("never-created")

    def test_force_remove_after_manual_deletion(self, git_repo: Path, manager: WorkspaceManager) -> None:
        ws = manager.create("a")
        git_ops.worktree_remove(ws.path, cwd=git_repo)
        manager.force_remove("a")
        assert not git_ops.branch_exists("tandem/a", cwd=git_repo)
        assert manager.workspaces() == []

    def test_cleanup_all_keeps_caller_root(self, manager: WorkspaceManager, workspace_root: Path) -> None:
        manager.create("a")
        manager.create("b")
        manager.cleanup_all()
        assert manager.workspaces() == []
        assert workspace_root.exists()

    def test_cleanup_all_removes_logs_under_caller_root(
        self, manager: WorkspaceManager, workspace_root: Path
    ) -> None:
        manager.create("a")
        write_text(manager.log_dir / "a.log", "output\n")
        manager.cleanup_all()
        assert workspace_root.exists()
        assert not manager.log_dir.exists()

    def test_owned_root_is_removed(self, git_repo: Path) -> None:
        mgr = WorkspaceManager(git_repo)
        mgr.create("a")
        root = mgr.root
        mgr.cleanup_all()
        assert not root.exists()

    def test_to_dict(self, manager: WorkspaceManager) -> None:
        data = manager.create("a").to_dict()
        assert data["branch"] == "tandem/a"
        assert data["status"] == "active"


# ── Recovery ─────────────────────────────────────────────────────────


class TestRecovery:
    def test_sync_adopts_leftovers_as_failed(self, git_repo: Path, workspace_root: Path) -> None:
        first = WorkspaceManager(git_repo, workspace_root)
        first.create("left-over")

        second = WorkspaceManager(git_repo, workspace_root)
        adopted = second.sync()
        assert [w.task_id for w in adopted] == ["left-over"]
        assert adopted[0].status == WorkspaceStatus.FAILED
        assert second.remaining_capacity() == second.max_workspaces

        second.cleanup_all()
        assert not git_ops.branch_exists("tandem/left-over", cwd=git_repo)

    def test_sync_ignores_other_prefixes(self, git_repo: Path, workspace_root: Path) -> None:
        WorkspaceManager(git_repo, workspace_root, branch_prefix="other").create("x")
        assert WorkspaceManager(git_repo, workspace_root).sync() == []

    def test_shutdown_hook_removes_active_only(
        self, git_repo: Path, manager: WorkspaceManager, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(workspace, "_hook_ran", False)
        active = manager.create("a")
        manager.create("b")
        manager.mark_failed("b")

        workspace.run_shutdown_hook()
        workspace.run_shutdown_hook()

        assert not active.path.exists()
        assert [w.task_id for w in manager.workspaces()] == ["b"]
