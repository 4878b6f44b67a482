"""Git operations: worktrees, branches, trial merges, history."""

from __future__ import annotations

import subprocess
from pathlib import Path

from tandem import log


def _git(*args: str, cwd: Path | None = None, check: bool = False) -> subprocess.CompletedProcess[str]:
    """Run a git command, capturing output."""
    return subprocess.run(
        ["git", *args],
        capture_output=True,
        text=True,
        cwd=cwd,
        check=check,
    )


def _lines(r: subprocess.CompletedProcess[str]) -> list[str]:
    if r.returncode != 0 or not r.stdout.strip():
        return []
    return [line.strip() for line in r.stdout.strip().splitlines() if line.strip()]


def output_of(r: subprocess.CompletedProcess[str]) -> str:
    """Combined stdout/stderr of a finished git command."""
    return "\n".join(part.strip() for part in (r.stdout, r.stderr) if part and part.strip())


def is_repository(cwd: Path | None = None) -> bool:
    r = _git("rev-parse", "--is-inside-work-tree", cwd=cwd)
    return r.returncode == 0 and r.stdout.strip() == "true"


def current_branch(cwd: Path | None = None) -> str:
    r = _git("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 else "main"


def current_commit(ref: str = "HEAD", cwd: Path | None = None) -> str:
    r = _git("rev-parse", ref, cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 else ""


def branch_exists(name: str, cwd: Path | None = None) -> bool:
    r = _git("show-ref", "--verify", "--quiet", f"refs/heads/{name}", cwd=cwd)
    return r.returncode == 0


def checkout(branch: str, cwd: Path | None = None) -> bool:
    r = _git("checkout", branch, cwd=cwd)
    return r.returncode == 0


def delete_branch(name: str, force: bool = False, cwd: Path | None = None) -> bool:
    flag = "-D" if force else "-d"
    r = _git("branch", flag, name, cwd=cwd)
    return r.returncode == 0


def list_branches(pattern: str, cwd: Path | None = None) -> list[str]:
    r = _git("branch", "--list", pattern, cwd=cwd)
    return [line.lstrip("*+ ").strip() for line in _lines(r)]


def dirty_worktree_entries(cwd: Path | None = None) -> list[str]:
    """Return tracked changes from `git status --porcelain` (untracked files are ignored)."""
    r = _git("status", "--porcelain", cwd=cwd)
    entries: list[str] = []
    for line in r.stdout.splitlines() if r.returncode == 0 else []:
        stripped = line.strip()
        if stripped and not stripped.startswith("??"):
            entries.append(stripped)
    return entries


# ── Commits and diffs ────────────────────────────────────────────────

def commit_count(base: str, head: str = "HEAD", cwd: Path | None = None) -> int:
    r = _git("rev-list", "--count", f"{base}..{head}", cwd=cwd)
    if r.returncode != 0:
        return 0
    try:
        return int(r.stdout.strip())
    except ValueError:
        return 0


def changed_files(base: str, head: str = "HEAD", cwd: Path | None = None) -> list[str]:
    """Files changed on *head* since it diverged from *base*."""
    return _lines(_git("diff", "--name-only", f"{base}...{head}", cwd=cwd))


def commit_subjects(base: str, head: str, cwd: Path | None = None) -> list[str]:
    return _lines(_git("log", "--reverse", "--pretty=format:%s", f"{base}..{head}", cwd=cwd))


def log_name_only(depth: int, cwd: Path | None = None) -> str:
    """Recent history as ``COMMIT:<subject>`` headers followed by touched paths."""
    r = _git("log", "--name-only", "--pretty=format:COMMIT:%s", f"-{depth}", cwd=cwd)
    return r.stdout if r.returncode == 0 else ""


def ls_files(cwd: Path | None = None) -> list[str]:
    return _lines(_git("ls-files", cwd=cwd))


# ── Merging ──────────────────────────────────────────────────────────

def merge_trial(branch: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    """Attempt a merge without committing. The caller must abort it afterwards."""
    return _git("merge", "--no-commit", "--no-ff", branch, cwd=cwd)


def merge_abort(cwd: Path | None = None) -> None:
    _git("merge", "--abort", cwd=cwd)


def merge_in_progress(cwd: Path | None = None) -> bool:
    return _git_dir(cwd).joinpath("MERGE_HEAD").exists()


def merge_no_ff(branch: str, message: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return _git("merge", "--no-ff", "-m", message, branch, cwd=cwd)


def merge_squash(branch: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return _git("merge", "--squash", branch, cwd=cwd)


def commit(message: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return _git("commit", "-m", message, cwd=cwd)


def cherry_pick_range(base: str, head: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return _git("cherry-pick", f"{base}..{head}", cwd=cwd)


def cherry_pick_abort(cwd: Path | None = None) -> None:
    _git("cherry-pick", "--abort", cwd=cwd)


def reset_hard(ref: str, cwd: Path | None = None) -> bool:
    r = _git("reset", "--hard", ref, cwd=cwd)
    return r.returncode == 0


def conflicted_files(cwd: Path | None = None) -> list[str]:
    return _lines(_git("diff", "--name-only", "--diff-filter=U", cwd=cwd))


# ── Worktree management ─────────────────────────────────────────────

def worktree_prune(cwd: Path | None = None) -> None:
    _git("worktree", "prune", cwd=cwd)


def worktree_add_branch(
    worktree_dir: Path, branch: str, base: str, cwd: Path | None = None
) -> subprocess.CompletedProcess[str]:
    """Create *branch* at *base* and check it out into *worktree_dir*."""
    return _git("worktree", "add", "-b", branch, str(worktree_dir), base, cwd=cwd)


def worktree_remove(worktree_dir: Path, cwd: Path | None = None) -> bool:
    r = _git("worktree", "remove", "--force", str(worktree_dir), cwd=cwd)
    return r.returncode == 0


def worktree_list(cwd: Path | None = None) -> list[dict[str, str]]:
    """Parse ``git worktree list --porcelain`` into ``{path, head, branch}`` records."""
    r = _git("worktree", "list", "--porcelain", cwd=cwd)
    if r.returncode != 0:
        return []
    entries: list[dict[str, str]] = []
    current: dict[str, str] = {}
    for line in r.stdout.splitlines():
        if line.startswith("worktree "):
            if current:
                entries.append(current)
            current = {"path": line[len("worktree "):].strip()}
        elif line.startswith("HEAD "):
            current["head"] = line[len("HEAD "):].strip()
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):].strip().removeprefix("refs/heads/")
    if current:
        entries.append(current)
    return entries


# ── Clean git state ──────────────────────────────────────────────────

def _git_dir(cwd: Path | None = None) -> Path:
    r = _git("rev-parse", "--git-dir", cwd=cwd)
    git_dir = Path(r.stdout.strip() or ".git")
    if not git_dir.is_absolute():
        git_dir = (cwd or Path.cwd()) / git_dir
    return git_dir


def ensure_clean_git_state(cwd: Path | None = None) -> None:
    """Abort any interrupted merge/rebase/cherry-pick."""
    git_dir = _git_dir(cwd)

    if (git_dir / "MERGE_HEAD").exists():
        log.warn("Detected interrupted git merge. Aborting…")
        merge_abort(cwd=cwd)
    if (git_dir / "REBASE_HEAD").exists():
        log.warn("Detected interrupted git rebase. Aborting…")
        _git("rebase", "--abort", cwd=cwd)
    if (git_dir / "CHERRY_PICK_HEAD").exists():
        log.warn("Detected interrupted git cherry-pick. Aborting…")
        cherry_pick_abort(cwd=cwd)
