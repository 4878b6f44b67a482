"""tandem command-line interface.

Installed as the ``tandem`` console_script; also runnable as ``python -m tandem``.
"""

from __future__ import annotations

import json
from pathlib import Path

import click
from rich.markup import escape

from tandem import __version__, log
from tandem.agents.registry import get_agent
from tandem.analyzer import TaskAnalyzer
from tandem.artifacts import show_summary, write_report
from tandem.config import AGENT_NAMES, MERGE_STRATEGIES, Config, load_config, resolve_repo_root
from tandem.errors import MergeError, PreconditionError
from tandem.merge import MergeOrchestrator
from tandem.overlap import OverlapDetector
from tandem.pipeline import ParallelRun, build_plan, cleanup, format_plan
from tandem.predictor import FilePredictor
from tandem.progress import ProgressReporter
from tandem.resources import ResourceMonitor, ResourceThresholds, format_summary
from tandem.tasks.io import load_task_file, parse_descriptions
from tandem.tasks.model import Task

EXIT_FAILED = 1
EXIT_PRECONDITION = 2


# ── Custom Click group that resolves command aliases ─────────────────

class TandemGroup(click.Group):
    """Accept a few short aliases for subcommands."""

    _ALIASES: dict[str, str] = {
        "exec": "run",
        "analyze": "plan",
        "clean": "cleanup",
        "undo": "rollback",
        "status": "resources",
    }

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        return super().get_command(ctx, self._ALIASES.get(cmd_name, cmd_name))


CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])


def _repo(ctx: click.Context) -> Path:
    return ctx.obj["repo"]


def _load_tasks(descriptions: tuple[str, ...], task_file: Path | None) -> list[Task]:
    if task_file is not None and descriptions:
        raise click.UsageError("Pass task descriptions or --file, not both.")
    if task_file is not None:
        try:
            return load_task_file(task_file)
        except PreconditionError as e:
            raise click.UsageError(str(e)) from e
    if not descriptions:
        raise click.UsageError("No tasks given. Pass task descriptions or --file FILE.")
    return parse_descriptions(list(descriptions))


def _fail(ctx: click.Context, message: str, code: int = EXIT_PRECONDITION) -> None:
    log.error(escape(message))
    ctx.exit(code)


def _predictor(cfg: Config, repo: Path) -> FilePredictor:
    return FilePredictor(
        repo,
        use_git_history=cfg.use_git_history,
        history_depth=cfg.history_depth,
        include_tests=cfg.include_tests,
        include_related=cfg.include_related,
    )


task_arguments = [
    click.argument("descriptions", nargs=-1),
    click.option(
        "-f",
        "--file",
        "task_file",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        default=None,
        help="YAML or JSON task list",
    ),
]


def with_task_arguments(func):
    for decorator in reversed(task_arguments):
        func = decorator(func)
    return func


@click.group(cls=TandemGroup, context_settings=CONTEXT_SETTINGS)
@click.option("-v", "--verbose", is_flag=True, help="Show debug output and raw agent output")
@click.option(
    "-C",
    "--repo",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Repository to operate on (default: the one containing the cwd)",
)
@click.version_option(__version__, prog_name="tandem")
@click.pass_context
def main(ctx: click.Context, verbose: bool, repo: Path | None) -> None:
    """tandem - run independent tasks in parallel git worktrees.

    Tasks are grouped by dependency level and predicted file footprint,
    executed by an agent in isolated workspaces, and merged back one at a time.

    \b
    EXAMPLES:
      tandem plan "Add login form in src/login.py" "Fix README typo"
      tandem run -f tasks.yaml --max-concurrency 3
      tandem run --agent command --agent-command "./do-task.sh {directive}" -f tasks.json
      tandem rollback 2 --yes
      tandem cleanup
    """
    log.set_verbose(verbose)
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["repo"] = resolve_repo_root(repo.resolve() if repo else None)


@main.command()
@with_task_arguments
@click.option("--max-concurrency", type=int, default=None, help="Hard ceiling on simultaneous tasks")
@click.option("--timeout", "timeout_seconds", type=int, default=None, help="Per-task timeout in seconds")
@click.option("--strategy", type=click.Choice(MERGE_STRATEGIES), default=None, help="Merge strategy")
@click.option("--no-cleanup", is_flag=True, help="Keep workspaces after merging")
@click.option("--dry-run", is_flag=True, help="Show the plan without executing")
@click.option("--agent", type=click.Choice(AGENT_NAMES), default=None, help="Agent adapter")
@click.option("--agent-command", default=None, help="Command for the 'command' agent ({directive} placeholder)")
@click.option("--target", "target_branch", default=None, help="Branch to merge into (default: current)")
@click.option("--report", "report_file", default=None, help="Write a JSON run report to this file")
@click.pass_context
def run(
    ctx: click.Context,
    descriptions: tuple[str, ...],
    task_file: Path | None,
    max_concurrency: int | None,
    timeout_seconds: int | None,
    strategy: str | None,
    no_cleanup: bool,
    dry_run: bool,
    agent: str | None,
    agent_command: str | None,
    target_branch: str | None,
    report_file: str | None,
) -> None:
    """Execute tasks in parallel workspaces and merge the results."""
    repo = _repo(ctx)
    tasks = _load_tasks(descriptions, task_file)
    if agent_command and agent is None:
        agent = "command"
    cfg = load_config(
        repo,
        max_concurrency=max_concurrency,
        timeout_seconds=timeout_seconds,
        merge_strategy=strategy,
        cleanup_on_complete=False if no_cleanup else None,
        dry_run=True if dry_run else None,
        agent=agent,
        agent_command=agent_command,
        target_branch=target_branch,
        report_file=report_file,
        verbose=True if ctx.obj["verbose"] else None,
    )

    try:
        worker = get_agent(cfg.agent, command=cfg.agent_command)
    except ValueError as e:
        raise click.UsageError(str(e)) from e
    if not cfg.dry_run:
        missing = worker.check_available()
        if missing:
            _fail(ctx, missing)

    reporter = ProgressReporter(verbose=cfg.verbose)
    try:
        report = ParallelRun(cfg, repo, worker, reporter=reporter).run(tasks)
    except PreconditionError as e:
        _fail(ctx, str(e))
        return

    if cfg.report_file:
        write_report(report, Path(cfg.report_file))

    if report.mode == "dry_run":
        log.console.print(format_plan(report.plan), markup=False)
        log.console.print("")
        log.console.print(reporter.explain(report.plan), markup=False)
        return

    show_summary(report)
    if not report.success:
        ctx.exit(EXIT_FAILED)


@main.command()
@with_task_arguments
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
@click.option("--details", is_flag=True, help="Also print the dependency summary and file overlap report")
@click.pass_context
def plan(
    ctx: click.Context, descriptions: tuple[str, ...], task_file: Path | None, as_json: bool, details: bool
) -> None:
    """Analyze tasks and show how they would be grouped, without running anything."""
    repo = _repo(ctx)
    tasks = _load_tasks(descriptions, task_file)
    cfg = load_config(repo)
    result = build_plan(tasks, _predictor(cfg, repo))
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return
    log.console.print(format_plan(result), markup=False)
    log.console.print("")
    log.console.print(ProgressReporter().explain(result), markup=False)
    if details:
        detector = OverlapDetector()
        overlap = detector.detect(list(result.predictions.values()))
        log.console.print("")
        log.console.print(TaskAnalyzer().generate_summary(result.graph), markup=False)
        log.console.print("")
        log.console.print(detector.generate_report(overlap), markup=False)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the sample as JSON")
@click.pass_context
def resources(ctx: click.Context, as_json: bool) -> None:
    """Sample disk, memory and CPU and show the recommended concurrency."""
    repo = _repo(ctx)
    cfg = load_config(repo)
    root = Path(cfg.workspace_root) if cfg.workspace_root else repo
    status = ResourceMonitor(root, ResourceThresholds.from_config(cfg)).status()
    if as_json:
        click.echo(json.dumps(status.to_dict(), indent=2))
        return
    log.console.print(format_summary(status), markup=False)


@main.command(name="cleanup")
@click.pass_context
def cleanup_cmd(ctx: click.Context) -> None:
    """Remove workspaces and branches left behind by earlier runs."""
    repo = _repo(ctx)
    cfg = load_config(repo)
    try:
        root = Path(cfg.workspace_root) if cfg.workspace_root else None
        cleaned = cleanup(repo, cfg.branch_prefix, root)
    except PreconditionError as e:
        _fail(ctx, str(e))
        return
    if cleaned:
        log.success(f"Removed {len(cleaned)} leftover workspace(s): {escape(', '.join(cleaned))}")
    else:
        log.info("Nothing to clean up")


@main.command()
@click.argument("count", type=click.IntRange(min=1))
@click.option("--target", "target_branch", default=None, help="Branch to roll back (default: current)")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def rollback(ctx: click.Context, count: int, target_branch: str | None, yes: bool) -> None:
    """Discard the last COUNT merge commits on the target branch."""
    repo = _repo(ctx)
    cfg = load_config(repo, target_branch=target_branch)
    try:
        orchestrator = MergeOrchestrator(repo, cfg.target_branch, cfg.merge_strategy)
        if not yes:
            click.confirm(
                f"Reset {orchestrator.target_branch} by {count} merge(s)? Uncommitted work is lost.",
                abort=True,
            )
        orchestrator.rollback(count)
    except PreconditionError as e:
        _fail(ctx, str(e))
    except MergeError as e:
        _fail(ctx, str(e), EXIT_FAILED)


@main.command(name="config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Print the effective configuration."""
    cfg = load_config(_repo(ctx))
    problems = cfg.validate()
    log.console.print(cfg.to_yaml().rstrip(), markup=False)
    for problem in problems:
        log.warn(problem)
    if problems:
        ctx.exit(EXIT_PRECONDITION)
