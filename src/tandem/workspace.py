"""Isolated, branch-backed git worktrees, one per in-flight task."""

from __future__ import annotations

import atexit
import re
import shutil
import tempfile
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from rich.markup import escape

from tandem import git_ops, log
from tandem.errors import CapacityError, PreconditionError, WorkspaceError


class WorkspaceStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CLEANING = "cleaning"


_TRANSITIONS: dict[WorkspaceStatus, tuple[WorkspaceStatus, ...]] = {
    WorkspaceStatus.ACTIVE: (WorkspaceStatus.COMPLETED, WorkspaceStatus.FAILED),
    WorkspaceStatus.COMPLETED: (WorkspaceStatus.CLEANING,),
    WorkspaceStatus.FAILED: (WorkspaceStatus.CLEANING,),
    WorkspaceStatus.CLEANING: (),
}


@dataclass
class Workspace:
    path: Path
    branch: str
    base_commit: str
    task_id: str
    base_ref: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: WorkspaceStatus = WorkspaceStatus.ACTIVE

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "path": str(self.path),
            "branch": self.branch,
            "base_commit": self.base_commit,
            "base_ref": self.base_ref,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
        }


def slugify(task_id: str) -> str:
    return re.sub(r"[^\w.-]+", "-", task_id).strip("-") or "task"


def precheck_repository(base_dir: Path) -> None:
    """Refuse to proceed unless *base_dir* is a git repository without uncommitted changes."""
    if not git_ops.is_repository(cwd=base_dir):
        raise PreconditionError(f"Not a git repository: {base_dir}")
    dirty = git_ops.dirty_worktree_entries(cwd=base_dir)
    if dirty:
        preview = ", ".join(dirty[:5])
        raise PreconditionError(
            f"Uncommitted changes detected ({preview}). Commit or stash before running tasks."
        )


# ── Process-wide shutdown hook ───────────────────────────────────────

_managers: weakref.WeakSet[WorkspaceManager] = weakref.WeakSet()
_hook_registered = False
_hook_ran = False


def _register(manager: WorkspaceManager) -> None:
    global _hook_registered
    _managers.add(manager)
    if not _hook_registered:
        atexit.register(run_shutdown_hook)
        _hook_registered = True


def run_shutdown_hook() -> None:
    """Force-remove every active workspace of every live manager. Runs at most once."""
    global _hook_ran
    if _hook_ran:
        return
    _hook_ran = True
    for manager in list(_managers):
        manager.remove_active()


class WorkspaceManager:
    """Creates and destroys worktrees under *root* for tasks of the repo at *base_dir*.

    Usage::

        mgr = WorkspaceManager(repo, max_workspaces=4)
        mgr.precheck()                  # refuses a dirty base repository
        ws = mgr.create("task-1")       # branch tandem/task-1, status active
        mgr.mark_completed("task-1")    # or mark_failed
        mgr.remove("task-1")            # idempotent
    """

    def __init__(
        self,
        base_dir: Path,
        root: Path | None = None,
        *,
        max_workspaces: int = 4,
        branch_prefix: str = "tandem",
    ) -> None:
        self.base_dir = base_dir
        self._owns_root = root is None
        self.root = root if root is not None else Path(tempfile.mkdtemp(prefix="tandem-"))
        self.log_dir = self.root / "_logs"
        self.max_workspaces = max_workspaces
        self.branch_prefix = branch_prefix.strip("/") or "tandem"
        self._workspaces: dict[str, Workspace] = {}
        _register(self)

    # ── queries ──────────────────────────────────────────────────

    def branch_for(self, task_id: str) -> str:
        return f"{self.branch_prefix}/{task_id}"

    def path_for(self, task_id: str) -> Path:
        return self.root / slugify(task_id)

    def get(self, task_id: str) -> Workspace | None:
        return self._workspaces.get(task_id)

    def has(self, task_id: str) -> bool:
        return task_id in self._workspaces

    def workspaces(self) -> list[Workspace]:
        return list(self._workspaces.values())

    def _with_status(self, status: WorkspaceStatus) -> list[Workspace]:
        return [ws for ws in self._workspaces.values() if ws.status == status]

    def active(self) -> list[Workspace]:
        return self._with_status(WorkspaceStatus.ACTIVE)

    def completed(self) -> list[Workspace]:
        return self._with_status(WorkspaceStatus.COMPLETED)

    def failed(self) -> list[Workspace]:
        return self._with_status(WorkspaceStatus.FAILED)

    def remaining_capacity(self) -> int:
        return max(0, self.max_workspaces - len(self.active()))

    def can_create(self) -> bool:
        return self.remaining_capacity() > 0

    # ── lifecycle ────────────────────────────────────────────────

    def precheck(self) -> None:
        """Refuse to proceed unless the base repository has no uncommitted changes."""
        precheck_repository(self.base_dir)

    def create(self, task_id: str, base_ref: str | None = None) -> Workspace:
        """Materialize a worktree on a fresh branch derived from *base_ref*.

        Raises ``CapacityError`` at the active cap, ``PreconditionError`` for a
        dirty base, and ``WorkspaceError`` when git refuses (after removing any
        partial state).
        """
        if task_id in self._workspaces:
            raise PreconditionError(f"Workspace already exists for {task_id}")
        if not self.can_create():
            raise CapacityError(
                f"Maximum workspaces ({self.max_workspaces}) reached. "
                "Complete or remove existing workspaces first."
            )
        self.precheck()

        base = base_ref or git_ops.current_branch(cwd=self.base_dir)
        commit = git_ops.current_commit(base, cwd=self.base_dir)
        branch = self.branch_for(task_id)
        path = self.path_for(task_id)

        # Leftovers from an interrupted run
        git_ops.worktree_prune(cwd=self.base_dir)
        if git_ops.branch_exists(branch, cwd=self.base_dir):
            log.debug(f"Deleting stale branch {branch}")
            git_ops.delete_branch(branch, force=True, cwd=self.base_dir)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)

        self.root.mkdir(parents=True, exist_ok=True)
        r = git_ops.worktree_add_branch(path, branch, commit or base, cwd=self.base_dir)
        if r.returncode != 0:
            self.force_remove(task_id)
            raise WorkspaceError(f"Failed to create workspace for {task_id}: {git_ops.output_of(r)}")

        ws = Workspace(path=path, branch=branch, base_commit=commit, task_id=task_id, base_ref=base)
        self._workspaces[task_id] = ws
        log.debug(f"Created workspace {path} on {branch} at {commit[:8]}")
        return ws

    def _transition(self, task_id: str, status: WorkspaceStatus) -> None:
        ws = self._workspaces.get(task_id)
        if ws is None:
            return
        if status not in _TRANSITIONS[ws.status]:
            raise ValueError(f"Workspace {task_id}: invalid transition {ws.status.value} -> {status.value}")
        ws.status = status

    def mark_completed(self, task_id: str) -> None:
        self._transition(task_id, WorkspaceStatus.COMPLETED)

    def mark_failed(self, task_id: str) -> None:
        self._transition(task_id, WorkspaceStatus.FAILED)

    def _begin_cleaning(self, ws: Workspace) -> None:
        # active -> failed -> cleaning
        if ws.status == WorkspaceStatus.ACTIVE:
            self._transition(ws.task_id, WorkspaceStatus.FAILED)
        if ws.status != WorkspaceStatus.CLEANING:
            self._transition(ws.task_id, WorkspaceStatus.CLEANING)

    def remove(self, task_id: str) -> None:
        """Delete the worktree and its branch. Unknown ids are ignored."""
        ws = self._workspaces.get(task_id)
        if ws is None:
            return
        self._begin_cleaning(ws)

        if not git_ops.worktree_remove(ws.path, cwd=self.base_dir):
            log.debug(f"git worktree remove failed for {ws.path}; forcing")
            self.force_remove(task_id)
            return
        git_ops.delete_branch(ws.branch, force=True, cwd=self.base_dir)
        if ws.path.exists():
            shutil.rmtree(ws.path, ignore_errors=True)
        self._workspaces.pop(task_id, None)
        log.debug(f"Removed workspace for {task_id}")

    def force_remove(self, task_id: str) -> None:
        """Best-effort removal that also prunes stale worktree references. Never raises."""
        ws = self._workspaces.get(task_id)
        if ws is not None:
            self._begin_cleaning(ws)
        path = ws.path if ws else self.path_for(task_id)
        branch = ws.branch if ws else self.branch_for(task_id)
        try:
            git_ops.worktree_remove(path, cwd=self.base_dir)
            git_ops.worktree_prune(cwd=self.base_dir)
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
            git_ops.delete_branch(branch, force=True, cwd=self.base_dir)
        except OSError as e:
            log.warn(f"Failed to clean up workspace for {escape(task_id)}: {escape(str(e))}")
        self._workspaces.pop(task_id, None)

    def remove_active(self) -> None:
        """Force-remove workspaces that are still active or mid-cleanup."""
        for ws in list(self._workspaces.values()):
            if ws.status in (WorkspaceStatus.ACTIVE, WorkspaceStatus.CLEANING):
                self.force_remove(ws.task_id)

    def cleanup_all(self) -> None:
        """Force-remove every tracked workspace and the agent logs.

        The root itself is removed only when it was created here.
        """
        for task_id in list(self._workspaces):
            self.force_remove(task_id)
        if self._owns_root and self.root.exists():
            shutil.rmtree(self.root, ignore_errors=True)
        elif self.log_dir.exists():
            shutil.rmtree(self.log_dir, ignore_errors=True)

    def sync(self) -> list[Workspace]:
        """Adopt worktrees on this manager's branch prefix that git knows about.

        Adopted workspaces come from an earlier run; they are tracked as failed
        so they are never merged and never count against the active cap.
        """
        adopted: list[Workspace] = []
        prefix = f"{self.branch_prefix}/"
        for entry in git_ops.worktree_list(cwd=self.base_dir):
            branch = entry.get("branch", "")
            if not branch.startswith(prefix):
                continue
            task_id = branch[len(prefix):]
            if task_id in self._workspaces:
                continue
            ws = Workspace(
                path=Path(entry["path"]),
                branch=branch,
                base_commit=entry.get("head", ""),
                task_id=task_id,
                status=WorkspaceStatus.FAILED,
            )
            self._workspaces[task_id] = ws
            adopted.append(ws)
        return adopted
