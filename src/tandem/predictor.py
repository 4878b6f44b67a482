"""Heuristic prediction of the files a task will touch.

Each method is a plain function returning ``(files, confidence)``. The
predictor unions every method's files and reports the highest confidence;
over-predicting only costs parallelism, while a missed file can corrupt a merge.
An empty prediction is valid and means "unknown".
"""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath

from tandem import git_ops, log
from tandem.tasks.model import Task


class PredictionMethod(str, Enum):
    DECLARED = "declared"
    EXPLICIT = "explicit"
    PATTERN = "pattern"
    MODULE = "module"
    GIT_HISTORY = "git_history"
    HEURISTIC = "heuristic"


METHOD_CONFIDENCE: dict[PredictionMethod, float] = {
    PredictionMethod.DECLARED: 1.0,
    PredictionMethod.EXPLICIT: 0.95,
    PredictionMethod.PATTERN: 0.8,
    PredictionMethod.MODULE: 0.7,
    PredictionMethod.GIT_HISTORY: 0.6,
    PredictionMethod.HEURISTIC: 0.5,
}

_EXTENSIONS = (
    "py|pyi|ts|tsx|js|jsx|mjs|cjs|json|yaml|yml|toml|ini|cfg|md|rst|txt"
    "|css|scss|html|sh|sql|go|rs|java|rb|c|h|cpp|hpp"
)
_PATH_TOKEN_RE = re.compile(rf"[\w\-./]+\.(?:{_EXTENSIONS})\b", re.IGNORECASE)
_DIRECTORY_RE = re.compile(r"\b(?:in|under|within)\s+(?:the\s+)?([\w\-./]+)", re.IGNORECASE)
_IDENTIFIER_RE = re.compile(r"\b([A-Z][a-zA-Z0-9]+|[a-z]+[A-Z][a-zA-Z0-9]*)\b")

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "been", "be",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "shall", "can", "need", "dare",
    "ought", "used", "fix", "add", "update", "remove", "change", "make",
    "then", "after", "task", "this", "that", "into", "all", "new",
})

_HEURISTICS: tuple[tuple[re.Pattern[str], tuple[str, ...]], ...] = (
    (
        re.compile(r"\b(?:auth|login|session)", re.IGNORECASE),
        ("**/*auth*", "**/*login*", "**/*session*"),
    ),
    (
        re.compile(r"\b(?:apis?|endpoints?|routes?)\b", re.IGNORECASE),
        ("**/routes/**", "**/api/**", "**/*.route.*"),
    ),
    (
        re.compile(r"\b(?:database|schemas?|models?)\b", re.IGNORECASE),
        ("**/models/**", "**/schemas/**", "**/*.model.*", "**/models.py", "**/schema.*"),
    ),
    (
        re.compile(r"\b(?:styles?|styling|css|ui)\b", re.IGNORECASE),
        ("**/*.css", "**/*.scss", "**/styles/**"),
    ),
    (
        re.compile(r"\b(?:config\w*|settings?)\b", re.IGNORECASE),
        ("**/*.config.*", "**/config/**", "**/config.*", "**/settings.*"),
    ),
)

_TEST_PATTERNS = ("**/*.test.*", "**/*.spec.*", "**/test_*.py", "**/*_test.py", "tests/**", "**/__tests__/**")


def find_path_tokens(text: str) -> list[str]:
    """Return path-like tokens with a known file extension, in order of appearance."""
    found: list[str] = []
    for match in _PATH_TOKEN_RE.findall(text):
        if "//" in match:
            continue
        token = match.removeprefix("./").rstrip(".")
        if token and token not in found:
            found.append(token)
    return found


def extract_keywords(text: str) -> list[str]:
    words = re.sub(r"[^a-z0-9\s]", " ", text.lower()).split()
    return [w for w in words if len(w) > 2 and w not in STOP_WORDS]


def _kebab(name: str) -> str:
    return re.sub(r"([a-z0-9])([A-Z])", r"\1-\2", name).lower()


def _snake(name: str) -> str:
    return re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", name).lower()


def _camel(name: str) -> str:
    return name[:1].lower() + name[1:]


def name_variants(name: str) -> list[str]:
    """Naming-convention spellings of an identifier, without duplicates."""
    variants: list[str] = []
    for v in (name, _kebab(name), _camel(name), _snake(name), name.lower()):
        if v not in variants:
            variants.append(v)
    return variants


class RepoIndex:
    """Tracked files of a repository, matched with ``**``-aware globs."""

    def __init__(self, files: list[str]) -> None:
        self.files = sorted(set(files))
        self._set = set(self.files)
        self._dirs: set[str] = set()
        for f in self.files:
            for parent in PurePosixPath(f).parents:
                if str(parent) != ".":
                    self._dirs.add(str(parent))

    @classmethod
    def from_repo(cls, base_dir: Path) -> RepoIndex:
        return cls(git_ops.ls_files(cwd=base_dir))

    def has_file(self, path: str) -> bool:
        return path in self._set

    def has_dir(self, path: str) -> bool:
        return path.rstrip("/") in self._dirs

    def match(self, pattern: str) -> list[str]:
        """Files matching *pattern*; a leading ``**/`` also matches at the root."""
        patterns = [pattern]
        if pattern.startswith("**/"):
            patterns.append(pattern[3:])
        if pattern.endswith("/**"):
            patterns = [p[:-3] + "/*" for p in patterns]
        return [f for f in self.files if any(fnmatch.fnmatchcase(f, p) for p in patterns)]


def related_files(files: set[str], index: RepoIndex, include_tests: bool = True) -> set[str]:
    """Existing test and index files that accompany *files*."""
    related: set[str] = set()
    for f in files:
        p = PurePosixPath(f)
        directory = "" if str(p.parent) == "." else f"{p.parent}/"
        stem, ext = p.stem, p.suffix
        candidates = [f"{directory}index{ext}"]
        if include_tests:
            candidates += [
                f"{directory}{stem}.test{ext}",
                f"{directory}__tests__/{stem}{ext}",
                f"{directory}test_{stem}{ext}",
                f"{directory}{stem}_test{ext}",
                f"tests/test_{stem}{ext}",
            ]
        related.update(c for c in candidates if c != f and index.has_file(c))
    return related


# ── prediction methods ───────────────────────────────────────────────

def predict_explicit(description: str, index: RepoIndex) -> tuple[set[str], float]:
    """Paths named verbatim in the description.

    A named file that does not exist yet is kept as-is; it is also widened to
    tracked files with a similar stem.
    """
    files: set[str] = set()
    for token in find_path_tokens(description):
        files.add(token)
        if not index.has_file(token):
            stem = PurePosixPath(token).stem
            if len(stem) >= 3:
                files.update(index.match(f"**/*{stem}*")[:5])
    return files, METHOD_CONFIDENCE[PredictionMethod.EXPLICIT]


def predict_patterns(description: str, index: RepoIndex) -> tuple[set[str], float]:
    files: set[str] = set()
    lower = description.lower()
    if "all test" in lower or "every test" in lower:
        for pattern in _TEST_PATTERNS:
            files.update(index.match(pattern))
    if "all component" in lower or "every component" in lower:
        files.update(index.match("**/components/**"))
    for directory in _DIRECTORY_RE.findall(description):
        directory = directory.removeprefix("./").rstrip("/.")
        if directory and index.has_dir(directory):
            files.add(directory)
            files.update(index.match(f"{directory}/**"))
    return files, METHOD_CONFIDENCE[PredictionMethod.PATTERN]


def predict_modules(description: str, index: RepoIndex) -> tuple[set[str], float]:
    files: set[str] = set()
    for name in _IDENTIFIER_RE.findall(description):
        if name.lower() in STOP_WORDS:
            continue
        for variant in name_variants(name):
            files.update(index.match(f"**/{variant}.*"))
            files.update(index.match(f"**/{variant}/index.*"))
            files.update(index.match(f"**/{variant}/__init__.py"))
    return files, METHOD_CONFIDENCE[PredictionMethod.MODULE]


def predict_from_history(description: str, history: dict[str, set[str]]) -> tuple[set[str], float]:
    files: set[str] = set()
    for keyword in extract_keywords(description):
        files.update(history.get(keyword, ()))
    return files, METHOD_CONFIDENCE[PredictionMethod.GIT_HISTORY]


def predict_heuristics(description: str, index: RepoIndex) -> tuple[set[str], float]:
    files: set[str] = set()
    for keyword_re, patterns in _HEURISTICS:
        if keyword_re.search(description):
            for pattern in patterns:
                files.update(index.match(pattern))
    return files, METHOD_CONFIDENCE[PredictionMethod.HEURISTIC]


def parse_history(log_output: str) -> dict[str, set[str]]:
    """Map commit-subject keywords to the files changed alongside them."""
    commits: dict[str, set[str]] = {}
    message = ""
    for line in log_output.splitlines():
        if line.startswith("COMMIT:"):
            message = line[len("COMMIT:"):].strip().lower()
            commits.setdefault(message, set())
        elif line.strip() and message:
            commits[message].add(line.strip())

    history: dict[str, set[str]] = {}
    for message, files in commits.items():
        for keyword in extract_keywords(message):
            history.setdefault(keyword, set()).update(files)
    return history


# ── predictor ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FilePrediction:
    task_id: str
    files: frozenset[str] = frozenset()
    confidence: float = 0.0
    method: PredictionMethod | None = None
    reasoning: str = ""
    contributions: dict[str, int] = field(default_factory=dict, compare=False, hash=False)

    @property
    def is_empty(self) -> bool:
        return not self.files

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "files": sorted(self.files),
            "confidence": self.confidence,
            "method": self.method.value if self.method else None,
            "reasoning": self.reasoning,
        }


class FilePredictor:
    """Combines every prediction method into one :class:`FilePrediction` per task."""

    def __init__(
        self,
        base_dir: Path,
        *,
        use_git_history: bool = True,
        history_depth: int = 50,
        include_tests: bool = True,
        include_related: bool = True,
        index: RepoIndex | None = None,
        history: dict[str, set[str]] | None = None,
    ) -> None:
        self.base_dir = base_dir
        self.use_git_history = use_git_history
        self.history_depth = history_depth
        self.include_tests = include_tests
        self.include_related = include_related
        self._index = index
        self._history = history

    @property
    def index(self) -> RepoIndex:
        if self._index is None:
            self._index = RepoIndex.from_repo(self.base_dir)
        return self._index

    @property
    def history(self) -> dict[str, set[str]]:
        if self._history is None:
            self._history = {}
            if self.use_git_history:
                raw = git_ops.log_name_only(self.history_depth, cwd=self.base_dir)
                self._history = parse_history(raw)
                log.debug(f"Loaded {len(self._history)} history keyword(s)")
        return self._history

    def predict(self, task: Task) -> FilePrediction:
        text = task.description
        results: list[tuple[PredictionMethod, set[str], float]] = []

        declared = set(task.declared_files)
        if declared:
            results.append((PredictionMethod.DECLARED, declared, METHOD_CONFIDENCE[PredictionMethod.DECLARED]))

        explicit, conf = predict_explicit(text, self.index)
        results.append((PredictionMethod.EXPLICIT, explicit, conf))

        if self.include_related:
            named = declared | explicit
            extra = related_files(named, self.index, include_tests=self.include_tests)
            results[-1] = (PredictionMethod.EXPLICIT, explicit | extra, conf)

        results.append((PredictionMethod.PATTERN, *predict_patterns(text, self.index)))
        results.append((PredictionMethod.MODULE, *predict_modules(text, self.index)))
        if self.use_git_history:
            results.append((PredictionMethod.GIT_HISTORY, *predict_from_history(text, self.history)))
        results.append((PredictionMethod.HEURISTIC, *predict_heuristics(text, self.index)))

        contributing = [(m, f, c) for m, f, c in results if f]
        if not contributing:
            return FilePrediction(
                task_id=task.id,
                reasoning="No files could be predicted for this task.",
            )

        method, _, confidence = max(contributing, key=lambda r: r[2])
        files: set[str] = set()
        for _, f, _ in contributing:
            files |= f
        parts = [f"{m.value}: {len(f)} files ({round(c * 100)}% confidence)" for m, f, c in contributing]
        return FilePrediction(
            task_id=task.id,
            files=frozenset(files),
            confidence=confidence,
            method=method,
            reasoning=f"Predictions based on: {', '.join(parts)}",
            contributions={m.value: len(f) for m, f, _ in contributing},
        )

    def predict_all(self, tasks: list[Task]) -> dict[str, FilePrediction]:
        return {task.id: self.predict(task) for task in tasks}
