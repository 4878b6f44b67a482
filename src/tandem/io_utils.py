"""UTF-8 file helpers plus the YAML/JSON readers used for task lists and config."""

from __future__ import annotations

import json
from io import TextIOWrapper
from pathlib import Path
from typing import Any

import yaml

PathLike = Path | str

YAML_SUFFIXES = (".yaml", ".yml")


def read_text(path: PathLike, errors: str = "strict", **kwargs: Any) -> str:
    """Read path as text with UTF-8 encoding. Forwards extra kwargs to Path.read_text."""
    p = path if isinstance(path, Path) else Path(path)
    return p.read_text(encoding="utf-8", errors=errors, **kwargs)


def write_text(path: PathLike, text: str, **kwargs: Any) -> None:
    """Write text to path with UTF-8 encoding, creating parent directories."""
    p = path if isinstance(path, Path) else Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text, encoding="utf-8", **kwargs)


def open_text(
    path: PathLike,
    mode: str = "r",
    *,
    encoding: str = "utf-8",
    errors: str = "strict",
    **kwargs: Any,
) -> TextIOWrapper:
    """Open path for text I/O with UTF-8 by default. Use for subprocess output capture."""
    return open(path, mode, encoding=encoding, errors=errors, **kwargs)


def read_structured(path: PathLike) -> Any:
    """Parse a YAML or JSON document, choosing the parser by suffix.

    Raises ``ValueError`` when the content cannot be parsed.
    """
    p = path if isinstance(path, Path) else Path(path)
    raw = read_text(p)
    if p.suffix.lower() in YAML_SUFFIXES:
        try:
            return yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {p}: {e}") from e
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {p}: {e}") from e


def write_json(path: PathLike, data: Any) -> None:
    write_text(path, json.dumps(data, indent=2, default=str) + "\n")
