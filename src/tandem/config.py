"""Configuration defaults, ``.tandem.yaml`` loading, and validation."""

from __future__ import annotations

import os
import re
import subprocess
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import yaml
from rich.markup import escape

from tandem import log
from tandem.io_utils import read_text

VERSION = "0.4.0"

CONFIG_FILENAME = ".tandem.yaml"

MERGE_STRATEGIES = ("sequential", "squash", "rebase")

AGENT_NAMES = ("claude", "command")


@dataclass
class Config:
    """Runtime configuration for one orchestration run."""

    # Execution
    max_concurrency: int = 4
    timeout_seconds: int = 300
    dry_run: bool = False
    cleanup_on_complete: bool = True
    verbose: bool = False

    # Merge
    merge_strategy: str = "sequential"
    target_branch: str = ""

    # Agent
    agent: str = "claude"
    agent_command: str = ""

    # File prediction
    use_git_history: bool = True
    history_depth: int = 50
    include_tests: bool = True
    include_related: bool = True

    # Resource thresholds
    min_disk_gb: float = 2.0
    max_disk_usage_percent: float = 90.0
    min_memory_gb: float = 1.0
    max_memory_usage_percent: float = 85.0
    max_cpu_load_percent: float = 80.0
    workspace_size_mb: int = 500
    task_memory_mb: int = 200
    concurrency_ceiling: int = 4
    resource_poll_seconds: int = 30

    # Workspaces
    workspace_root: str = ""
    branch_prefix: str = "tandem"

    # Reporting
    report_file: str = ""

    def __post_init__(self) -> None:
        self.merge_strategy = (self.merge_strategy or "sequential").strip().lower()
        if not self.agent_command:
            self.agent_command = os.environ.get("TANDEM_AGENT_COMMAND", "")
            if self.agent_command and self.agent == "claude":
                self.agent = "command"
        self.branch_prefix = self.branch_prefix.strip("/") or "tandem"

    def validate(self) -> list[str]:
        """Return human-readable problems with this configuration (empty when valid)."""
        errors: list[str] = []
        if not 1 <= self.max_concurrency <= 10:
            errors.append("max_concurrency must be between 1 and 10")
        for name in ("max_disk_usage_percent", "max_memory_usage_percent", "max_cpu_load_percent"):
            value = getattr(self, name)
            if not 50 <= value <= 95:
                errors.append(f"{name} must be between 50 and 95")
        if not 10 <= self.timeout_seconds <= 3600:
            errors.append("timeout_seconds must be between 10 seconds and 1 hour")
        if self.merge_strategy not in MERGE_STRATEGIES:
            errors.append(f"merge_strategy must be one of: {', '.join(MERGE_STRATEGIES)}")
        if self.agent not in AGENT_NAMES:
            errors.append(f"agent must be one of: {', '.join(AGENT_NAMES)}")
        if self.agent == "command" and not self.agent_command:
            errors.append("agent 'command' requires agent_command")
        if self.concurrency_ceiling < 1:
            errors.append("concurrency_ceiling must be at least 1")
        return errors

    def to_yaml(self) -> str:
        return yaml.safe_dump(asdict(self), sort_keys=False)


_FIELD_NAMES = {f.name for f in fields(Config)}


def _snake_case(key: str) -> str:
    return re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", key).lower()


def load_config(base_dir: Path | None = None, **overrides: Any) -> Config:
    """Build a :class:`Config` from ``.tandem.yaml`` under *base_dir* plus overrides.

    Overrides whose value is ``None`` are ignored so unset CLI flags do not
    clobber file values. An unreadable file falls back to defaults with a warning.
    """
    values: dict[str, Any] = {}
    path = (base_dir or Path.cwd()) / CONFIG_FILENAME
    if path.is_file():
        try:
            loaded = yaml.safe_load(read_text(path)) or {}
        except (yaml.YAMLError, OSError) as e:
            log.warn(f"Failed to load {CONFIG_FILENAME}: {escape(str(e))}")
            loaded = {}
        if not isinstance(loaded, dict):
            log.warn(f"Ignoring {CONFIG_FILENAME}: expected a mapping")
            loaded = {}
        for key, value in loaded.items():
            name = _snake_case(str(key))
            if name not in _FIELD_NAMES:
                log.warn(f"Unknown config key in {CONFIG_FILENAME}: {key}")
                continue
            values[name] = value
        log.debug(f"Loaded {len(values)} setting(s) from {path}")

    for key, value in overrides.items():
        if value is None:
            continue
        if key not in _FIELD_NAMES:
            raise TypeError(f"Unknown config override: {key}")
        values[key] = value

    return Config(**values)


def resolve_repo_root(cwd: Path | None = None) -> Path:
    """Return the git repository root, falling back to cwd."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            capture_output=True,
            text=True,
            check=True,
            cwd=cwd,
        )
        return Path(result.stdout.strip())
    except (subprocess.CalledProcessError, FileNotFoundError):
        return cwd or Path.cwd()
