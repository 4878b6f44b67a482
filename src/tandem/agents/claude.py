"""Claude Code agent adapter."""

from __future__ import annotations

import shutil

from tandem.agents.base import AgentBase

_COMMIT_INSTRUCTION = (
    "Work only inside the current directory. When finished, stage and commit "
    "all of your changes on the current branch with a descriptive message."
)


class ClaudeAgent(AgentBase):
    name = "claude"

    def build_cmd(self, directive: str) -> list[str]:
        # Resolved path so the child does not depend on PATH lookup.
        claude = shutil.which("claude") or "claude"
        return [
            claude,
            "--dangerously-skip-permissions",
            "-p",
            f"{directive}\n\n{_COMMIT_INSTRUCTION}",
        ]

    def check_available(self) -> str | None:
        if not shutil.which("claude"):
            return "Claude Code CLI not found. Install from https://github.com/anthropics/claude-code"
        return None
