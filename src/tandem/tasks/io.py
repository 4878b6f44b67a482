"""Turn free-text descriptions and YAML/JSON task files into :class:`Task` records."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from tandem import log
from tandem.errors import PreconditionError
from tandem.io_utils import read_structured
from tandem.predictor import find_path_tokens
from tandem.tasks.model import Task, TaskKind

_MODULE_WORDS = ("module", "component", "service", "class")
_FEATURE_WORDS = ("feature", "implement", "add", "create")

_DEPENDENCY_HINT_RE = re.compile(
    r"\b(?:after|depends\s+on|requires)\s+tasks?\s*#?\s*(\d+)",
    re.IGNORECASE,
)
_THEN_RE = re.compile(r"\bthen\b", re.IGNORECASE)

_DESCRIPTION_KEYS = ("description", "title", "task")
_KIND_KEYS = ("kind", "type")
_FILES_KEYS = ("files", "touches", "estimatedFiles", "estimated_files")
_DEPS_KEYS = ("dependsOn", "depends_on", "dependencies")


def infer_kind(description: str) -> TaskKind:
    lower = description.lower()
    if any(word in lower for word in _MODULE_WORDS):
        return TaskKind.MODULE
    if any(word in lower for word in _FEATURE_WORDS):
        return TaskKind.FEATURE
    return TaskKind.FILE


def extract_dependency_hints(description: str, index: int) -> list[str]:
    """Return ``task-N`` ids referenced by natural-language cues.

    *index* is the zero-based position of the description; "then" links a
    task to the one immediately before it.
    """
    hints: list[str] = []
    for number in _DEPENDENCY_HINT_RE.findall(description):
        hint = f"task-{int(number)}"
        if hint not in hints:
            hints.append(hint)
    if index > 0 and _THEN_RE.search(description):
        previous = f"task-{index}"
        if previous not in hints:
            hints.append(previous)
    return hints


def parse_descriptions(descriptions: list[str]) -> list[Task]:
    """Build tasks ``task-1..N`` from plain descriptions."""
    tasks: list[Task] = []
    for index, desc in enumerate(descriptions):
        tasks.append(
            Task(
                id=f"task-{index + 1}",
                description=desc,
                kind=infer_kind(desc),
                declared_files=tuple(find_path_tokens(desc)),
                declared_dependencies=tuple(extract_dependency_hints(desc, index)),
            )
        )
    return tasks


def _first(record: dict[str, Any], keys: tuple[str, ...], default: Any = None) -> Any:
    for key in keys:
        if key in record and record[key] is not None:
            return record[key]
    return default


def _as_str_list(value: Any, task_id: str, key: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return [str(value)]
    if not isinstance(value, (list, tuple)):
        raise PreconditionError(f"Task {task_id}: '{key}' must be a list")
    return [str(v) for v in value if str(v).strip()]


def _task_from_record(record: dict[str, Any], index: int) -> Task:
    task_id = str(record.get("id") or f"task-{index + 1}")
    description = str(_first(record, _DESCRIPTION_KEYS, ""))
    raw_kind = _first(record, _KIND_KEYS)
    try:
        kind = TaskKind(str(raw_kind).lower()) if raw_kind else infer_kind(description)
    except ValueError:
        log.warn(f"Task {task_id}: unknown kind '{raw_kind}', inferring from description")
        kind = infer_kind(description)

    files = _as_str_list(_first(record, _FILES_KEYS), task_id, "files")
    if not files:
        files = find_path_tokens(description)
    deps = _as_str_list(_first(record, _DEPS_KEYS), task_id, "dependsOn")

    metadata = record.get("metadata") or {}
    if not isinstance(metadata, dict):
        metadata = {"value": metadata}

    return Task(
        id=task_id,
        description=description,
        kind=kind,
        declared_files=tuple(files),
        declared_dependencies=tuple(deps),
        metadata=dict(metadata),
    )


def tasks_from_records(records: list[Any]) -> list[Task]:
    """Convert a list of strings and/or mappings into tasks.

    Strings are treated like free-text descriptions (including dependency cues).
    """
    tasks: list[Task] = []
    seen: set[str] = set()
    for index, item in enumerate(records):
        if isinstance(item, str):
            task = Task(
                id=f"task-{index + 1}",
                description=item,
                kind=infer_kind(item),
                declared_files=tuple(find_path_tokens(item)),
                declared_dependencies=tuple(extract_dependency_hints(item, index)),
            )
        elif isinstance(item, dict):
            task = _task_from_record(item, index)
        else:
            raise PreconditionError(f"Task entry {index + 1} must be a string or a mapping")
        if task.id in seen:
            raise PreconditionError(f"Duplicate task id: {task.id}")
        seen.add(task.id)
        tasks.append(task)
    return tasks


def load_task_file(path: Path) -> list[Task]:
    """Load tasks from a YAML or JSON file (a list, or a mapping with ``tasks``)."""
    if not path.is_file():
        raise PreconditionError(f"Task file not found: {path}")
    try:
        data = read_structured(path)
    except ValueError as e:
        raise PreconditionError(str(e)) from e

    if isinstance(data, dict):
        data = data.get("tasks")
    if not isinstance(data, list):
        raise PreconditionError(f"{path}: expected a list of tasks or a 'tasks' key")

    tasks = tasks_from_records(data)
    log.debug(f"Loaded {len(tasks)} task(s) from {path}")
    return tasks
