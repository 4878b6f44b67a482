"""Agent registry: get the right adapter by name."""

from __future__ import annotations

from tandem.agents.base import AgentBase
from tandem.agents.claude import ClaudeAgent
from tandem.agents.command import CommandAgent
from tandem.config import AGENT_NAMES


def get_agent(name: str, *, command: str = "") -> AgentBase:
    """Return an agent adapter for *name*."""
    match name:
        case "claude":
            return ClaudeAgent()
        case "command":
            if not command:
                raise ValueError("The 'command' agent needs an agent command")
            return CommandAgent(command)
        case _:
            raise ValueError(f"Unknown agent: {name} (expected one of {', '.join(AGENT_NAMES)})")
