"""Task records consumed by the analyzer, predictor and executor."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TaskKind(str, Enum):
    FILE = "file"
    MODULE = "module"
    FEATURE = "feature"


@dataclass(frozen=True)
class Task:
    """One unit of work. Immutable once analysis starts."""

    id: str
    description: str = ""
    kind: TaskKind = TaskKind.FEATURE
    declared_files: tuple[str, ...] = ()
    declared_dependencies: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def directive(self) -> str:
        """Text handed to the work-performing agent."""
        return self.description or f"Execute task {self.id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "kind": self.kind.value,
            "files": list(self.declared_files),
            "dependsOn": list(self.declared_dependencies),
            "metadata": dict(self.metadata),
        }
