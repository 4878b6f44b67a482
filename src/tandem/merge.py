"""Fold completed workspaces back into the target branch, one at a time."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from rich.markup import escape

from tandem import git_ops, log
from tandem.config import MERGE_STRATEGIES
from tandem.errors import MergeError, PreconditionError, looks_like_merge_conflict
from tandem.workspace import Workspace, WorkspaceManager, WorkspaceStatus


@dataclass
class MergeResult:
    task_id: str
    success: bool
    branch: str
    commits: int = 0
    files_changed: list[str] = field(default_factory=list)
    error: str = ""
    conflict: bool = False

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "success": self.success,
            "branch": self.branch,
            "commits": self.commits,
            "files_changed": list(self.files_changed),
            "error": self.error,
            "conflict": self.conflict,
        }


@dataclass
class MergeOrchestratorResult:
    merged: list[MergeResult] = field(default_factory=list)
    failed: list[MergeResult] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def total_commits(self) -> int:
        return sum(m.commits for m in self.merged)

    @property
    def total_files_changed(self) -> list[str]:
        return sorted({f for m in self.merged for f in m.files_changed})

    def extend(self, other: MergeOrchestratorResult) -> None:
        self.merged.extend(other.merged)
        self.failed.extend(other.failed)
        self.skipped.extend(other.skipped)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "merged": [m.to_dict() for m in self.merged],
            "failed": [m.to_dict() for m in self.failed],
            "skipped": list(self.skipped),
            "total_commits": self.total_commits,
            "total_files_changed": self.total_files_changed,
        }


class MergeOrchestrator:
    """Merges workspace branches into *target_branch* of the repository at *base_dir*.

    Every merge is preceded by a dry-run merge; a failed real merge resets the
    target to the commit it had before the attempt. Heads recorded before each
    successful merge back :meth:`rollback`.
    """

    def __init__(self, base_dir: Path, target_branch: str = "", strategy: str = "sequential") -> None:
        if strategy not in MERGE_STRATEGIES:
            raise PreconditionError(f"Unknown merge strategy: {strategy}")
        self.base_dir = base_dir
        self.target_branch = target_branch or git_ops.current_branch(cwd=base_dir)
        self.strategy = strategy
        self.history: list[str] = []

    def ensure_target_checked_out(self) -> None:
        git_ops.ensure_clean_git_state(cwd=self.base_dir)
        if git_ops.current_branch(cwd=self.base_dir) != self.target_branch:
            if not git_ops.checkout(self.target_branch, cwd=self.base_dir):
                raise PreconditionError(f"Cannot check out target branch {self.target_branch}")

    # ── merging ──────────────────────────────────────────────────

    def merge_all(self, workspaces: list[Workspace]) -> MergeOrchestratorResult:
        """Merge completed workspaces in order; everything else is reported as skipped."""
        result = MergeOrchestratorResult()
        completed = [ws for ws in workspaces if ws.status == WorkspaceStatus.COMPLETED]
        result.skipped = [ws.task_id for ws in workspaces if ws.status != WorkspaceStatus.COMPLETED]
        if not completed:
            return result

        self.ensure_target_checked_out()
        for ws in completed:
            merged = self.merge_workspace(ws)
            if merged.success:
                result.merged.append(merged)
            else:
                result.failed.append(merged)
        return result

    def merge_workspace(self, ws: Workspace) -> MergeResult:
        branch = ws.branch
        commits = git_ops.commit_count(self.target_branch, branch, cwd=self.base_dir)
        if commits == 0:
            log.debug(f"Task {ws.task_id}: no commits to merge")
            return MergeResult(ws.task_id, True, branch)
        files = git_ops.changed_files(self.target_branch, branch, cwd=self.base_dir)

        safe, reason = self.can_merge_safely(branch)
        if not safe:
            log.warn(f"Task {escape(ws.task_id)}: {escape(reason)}")
            return MergeResult(
                ws.task_id, False, branch, error=reason, conflict=reason.startswith("would conflict")
            )

        head_before = git_ops.current_commit(cwd=self.base_dir)
        try:
            self._merge_branch(ws, branch)
        except MergeError as e:
            self._restore(head_before)
            log.warn(f"Task {escape(ws.task_id)}: merge failed, target restored ({escape(str(e))})")
            return MergeResult(
                ws.task_id, False, branch, error=str(e), conflict=looks_like_merge_conflict(str(e))
            )

        self.history.append(head_before)
        log.success(f"Merged {ws.task_id} ({commits} commit(s), {len(files)} file(s))")
        return MergeResult(ws.task_id, True, branch, commits=commits, files_changed=files)

    def can_merge_safely(self, branch: str) -> tuple[bool, str]:
        """Dry-run merge: merge without committing, then abort. Returns ``(safe, reason)``."""
        head_before = git_ops.current_commit(cwd=self.base_dir)
        trial = git_ops.merge_trial(branch, cwd=self.base_dir)
        output = git_ops.output_of(trial)
        conflicts = git_ops.conflicted_files(cwd=self.base_dir) if trial.returncode != 0 else []
        self._restore(head_before)

        if trial.returncode == 0:
            return True, ""
        if conflicts or looks_like_merge_conflict(output):
            detail = f" in {', '.join(conflicts)}" if conflicts else ""
            return False, f"would conflict{detail}: file overlap prediction missed a shared file"
        return False, f"merge check failed: {output or f'exit code {trial.returncode}'}"

    def _merge_branch(self, ws: Workspace, branch: str) -> None:
        match self.strategy:
            case "squash":
                r = git_ops.merge_squash(branch, cwd=self.base_dir)
                if r.returncode != 0:
                    raise MergeError(git_ops.output_of(r) or "squash merge failed")
                r = git_ops.commit(self.squash_message(ws), cwd=self.base_dir)
                if r.returncode != 0:
                    raise MergeError(git_ops.output_of(r) or "squash commit failed")
            case "rebase":
                r = git_ops.cherry_pick_range("HEAD", branch, cwd=self.base_dir)
                if r.returncode != 0:
                    git_ops.cherry_pick_abort(cwd=self.base_dir)
                    raise MergeError(git_ops.output_of(r) or "cherry-pick failed")
            case _:
                r = git_ops.merge_no_ff(branch, f"Merge task {ws.task_id} ({branch})", cwd=self.base_dir)
                if r.returncode != 0:
                    raise MergeError(git_ops.output_of(r) or "merge failed")

    def squash_message(self, ws: Workspace) -> str:
        subjects = git_ops.commit_subjects(self.target_branch, ws.branch, cwd=self.base_dir)
        body = "\n".join(f"- {s}" for s in subjects)
        title = f"Task {ws.task_id}: squash of {len(subjects)} commit(s) from {ws.branch}"
        return f"{title}\n\n{body}" if body else title

    def _restore(self, head: str) -> None:
        if git_ops.merge_in_progress(cwd=self.base_dir):
            git_ops.merge_abort(cwd=self.base_dir)
        if git_ops.current_commit(cwd=self.base_dir) != head or git_ops.dirty_worktree_entries(cwd=self.base_dir):
            git_ops.reset_hard(head, cwd=self.base_dir)

    # ── undo and cleanup ─────────────────────────────────────────

    def rollback(self, count: int = 1) -> str:
        """Discard the last *count* merges on the target branch. Returns the new HEAD."""
        if count < 1:
            raise PreconditionError("Rollback count must be at least 1")
        self.ensure_target_checked_out()
        if len(self.history) >= count:
            target = self.history[-count]
            del self.history[-count:]
        else:
            target = f"HEAD~{count}"
        if not git_ops.reset_hard(target, cwd=self.base_dir):
            raise MergeError(f"Failed to reset {self.target_branch} to {target}")
        head = git_ops.current_commit(cwd=self.base_dir)
        log.info(f"Rolled back {count} merge(s); {self.target_branch} is at {head[:8]}")
        return head

    def cleanup_branches(self, manager: WorkspaceManager, results: list[MergeResult]) -> None:
        """Remove the workspaces (and branches) of successfully merged tasks."""
        for r in results:
            if r.success:
                try:
                    manager.remove(r.task_id)
                except (OSError, ValueError) as e:
                    log.warn(f"Failed to clean up workspace for {escape(r.task_id)}: {escape(str(e))}")

    def generate_summary(self, result: MergeOrchestratorResult) -> str:
        lines = [
            "## Merge Summary",
            "",
            f"Status: {'Success' if result.success else 'Failed'}",
            f"Strategy: {self.strategy}",
            f"Total commits merged: {result.total_commits}",
            f"Files changed: {len(result.total_files_changed)}",
            "",
        ]
        if result.merged:
            lines.append("### Successfully Merged")
            for m in result.merged:
                lines.append(f"- {m.task_id}: {m.commits} commits, {len(m.files_changed)} files")
            lines.append("")
        if result.failed:
            lines.append("### Failed to Merge")
            for f in result.failed:
                lines.append(f"- {f.task_id}: {f.error}")
            lines.append("")
        if result.skipped:
            lines.append("### Skipped (Failed Tasks)")
            lines += [f"- {s}" for s in result.skipped]
            lines.append("")
        files = result.total_files_changed
        if files:
            lines.append("### Files Changed")
            lines += [f"- {f}" for f in files[:20]]
            if len(files) > 20:
                lines.append(f"... and {len(files) - 20} more")
        return "\n".join(lines).rstrip()
