"""Agent adapter for an arbitrary command template."""

from __future__ import annotations

import shlex

from tandem.agents.base import AgentBase

PLACEHOLDER = "{directive}"


class CommandAgent(AgentBase):
    """Runs a user-supplied command.

    ``{directive}`` inside any argument is replaced by the task directive;
    without a placeholder the directive is appended as the last argument.
    """

    name = "command"

    def __init__(self, command: list[str] | str) -> None:
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not argv:
            raise ValueError("Agent command must not be empty")
        self.argv = argv

    def build_cmd(self, directive: str) -> list[str]:
        if any(PLACEHOLDER in arg for arg in self.argv):
            return [arg.replace(PLACEHOLDER, directive) for arg in self.argv]
        return [*self.argv, directive]
