"""Partition tasks into safe groups whose predicted files never overlap.

Overlap means literal path equality or directory-prefix containment. Derived
paths (generated files, globs resolving elsewhere) are not detected.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from itertools import combinations

from tandem.predictor import FilePrediction

_SOURCE_RE = re.compile(r"\.(?:ts|tsx|js|jsx|py|java|go|rs|rb|c|h|cpp|hpp)$")
_DATA_RE = re.compile(r"\.(?:json|ya?ml|toml|xml|ini|cfg)$")


def _normalize(path: str) -> str:
    return path.strip().removeprefix("./").rstrip("/")


def paths_overlap(a: str, b: str) -> bool:
    """True when *a* and *b* are the same path or one contains the other."""
    a, b = _normalize(a), _normalize(b)
    if not a or not b:
        return False
    return a == b or a.startswith(b + "/") or b.startswith(a + "/")


def overlapping_files(first: frozenset[str] | set[str], second: frozenset[str] | set[str]) -> list[str]:
    """Paths from *first* that collide with any path in *second*."""
    exact = first & second
    hits = set(exact)
    for a in first - exact:
        if any(paths_overlap(a, b) for b in second):
            hits.add(a)
    return sorted(hits)


def assess_severity(path: str) -> str:
    if _SOURCE_RE.search(path):
        return "critical"
    if _DATA_RE.search(path):
        return "warning"
    if "." not in path.rsplit("/", 1)[-1]:
        # A directory: anything beneath it may be source.
        return "critical"
    return "info"


@dataclass
class SafeGroup:
    """Tasks that may execute concurrently; ``files`` is the union of their predictions."""

    id: str
    task_ids: list[str] = field(default_factory=list)
    files: set[str] = field(default_factory=set)
    isolated: bool = False

    def accepts(self, files: frozenset[str]) -> bool:
        if self.isolated or not files:
            return False
        return not overlapping_files(files, self.files)

    def add(self, task_id: str, files: frozenset[str]) -> None:
        self.task_ids.append(task_id)
        self.files |= files

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "task_ids": list(self.task_ids),
            "files": sorted(self.files),
            "isolated": self.isolated,
        }


@dataclass
class OverlapPair:
    task_a: str
    task_b: str
    files: list[str]
    severity: str


@dataclass
class OverlapResult:
    groups: list[SafeGroup]
    pairs: list[OverlapPair]
    unknown: list[str]

    @property
    def has_overlap(self) -> bool:
        return bool(self.pairs)

    @property
    def max_parallelism(self) -> int:
        return max((len(g.task_ids) for g in self.groups), default=1)


class OverlapDetector:
    """Greedy, most-constrained-first grouping of file predictions."""

    def group(self, predictions: list[FilePrediction], id_prefix: str = "group") -> list[SafeGroup]:
        ordered = sorted(predictions, key=lambda p: len(p.files), reverse=True)
        groups: list[SafeGroup] = []

        for prediction in ordered:
            if prediction.is_empty:
                # Unknown footprint: run alone.
                isolated = SafeGroup(id=f"{id_prefix}-{len(groups)}", isolated=True)
                isolated.add(prediction.task_id, prediction.files)
                groups.append(isolated)
                continue

            # Newest group first.
            target = next((g for g in reversed(groups) if g.accepts(prediction.files)), None)
            if target is None:
                target = SafeGroup(id=f"{id_prefix}-{len(groups)}")
                groups.append(target)
            target.add(prediction.task_id, prediction.files)

        return groups

    def find_pairs(self, predictions: list[FilePrediction]) -> list[OverlapPair]:
        pairs: list[OverlapPair] = []
        for first, second in combinations(predictions, 2):
            shared = overlapping_files(first.files, second.files)
            if not shared:
                continue
            severities = [assess_severity(f) for f in shared]
            severity = next(
                (s for s in ("critical", "warning") if s in severities),
                "info",
            )
            pairs.append(OverlapPair(first.task_id, second.task_id, shared, severity))
        return pairs

    def detect(self, predictions: list[FilePrediction], id_prefix: str = "group") -> OverlapResult:
        return OverlapResult(
            groups=self.group(predictions, id_prefix=id_prefix),
            pairs=self.find_pairs(predictions),
            unknown=[p.task_id for p in predictions if p.is_empty],
        )

    def generate_report(self, result: OverlapResult) -> str:
        total = sum(len(g.task_ids) for g in result.groups)
        blocked = {t for p in result.pairs if p.severity == "critical" for t in (p.task_a, p.task_b)}
        lines = [
            "## File Overlap Analysis",
            "",
            f"Total tasks: {total}",
            f"Blocked by overlaps: {len(blocked)}",
            f"Unknown footprint: {len(result.unknown)}",
            "",
        ]

        if result.has_overlap:
            lines += ["### Overlapping File Pairs", ""]
            for pair in result.pairs:
                lines.append(f"[{pair.severity}] {pair.task_a} <-> {pair.task_b}")
                lines.append(f"   Files: {', '.join(pair.files)}")
            lines.append("")

        lines += ["### Safe Parallel Groups", ""]
        for g in result.groups:
            suffix = " (isolated)" if g.isolated else ""
            lines.append(f"- {g.id}: {', '.join(g.task_ids)}{suffix}")

        lines += ["", "### Recommendations", ""]
        if result.has_overlap:
            lines.append("- Consider splitting tasks to avoid file overlaps for better parallelization.")
            counts: dict[str, int] = {}
            for pair in result.pairs:
                for f in pair.files:
                    counts[f] = counts.get(f, 0) + 1
            top = sorted(counts, key=lambda f: (-counts[f], f))[:3]
            lines.append(f"- Most conflicting files: {', '.join(top)}")
        else:
            lines.append("- All tasks can be safely parallelized.")
        lines.append(f"- Maximum parallel group size: {result.max_parallelism} tasks")
        return "\n".join(lines)
