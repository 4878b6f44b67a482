"""Host resource sampling and the derived safe concurrency."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path

import psutil

from tandem import log
from tandem.config import Config

GB = 1024 ** 3
MB = 1024 ** 2


@dataclass
class ResourceThresholds:
    min_disk_gb: float = 2.0
    max_disk_usage_percent: float = 90.0
    min_memory_gb: float = 1.0
    max_memory_usage_percent: float = 85.0
    max_cpu_load_percent: float = 80.0
    workspace_size_mb: int = 500
    task_memory_mb: int = 200
    concurrency_ceiling: int = 4

    @classmethod
    def from_config(cls, config: Config) -> ResourceThresholds:
        return cls(
            min_disk_gb=config.min_disk_gb,
            max_disk_usage_percent=config.max_disk_usage_percent,
            min_memory_gb=config.min_memory_gb,
            max_memory_usage_percent=config.max_memory_usage_percent,
            max_cpu_load_percent=config.max_cpu_load_percent,
            workspace_size_mb=config.workspace_size_mb,
            task_memory_mb=config.task_memory_mb,
            concurrency_ceiling=config.concurrency_ceiling,
        )


@dataclass
class DiskStatus:
    available: int
    total: int
    used_percent: float
    sufficient: bool


@dataclass
class MemoryStatus:
    available: int
    total: int
    used_percent: float
    sufficient: bool


@dataclass
class CpuStatus:
    load_average: tuple[float, float, float]
    cores: int
    load_percent: float
    sufficient: bool


@dataclass
class OverallStatus:
    can_parallelize: bool
    recommended_concurrency: int
    reason: str = ""
    limits: dict[str, int] = field(default_factory=dict)


@dataclass
class ResourceStatus:
    disk: DiskStatus
    memory: MemoryStatus
    cpu: CpuStatus
    overall: OverallStatus

    def to_dict(self) -> dict:
        return asdict(self)


def _existing(path: Path) -> Path:
    """Nearest existing ancestor of *path* (the workspace root may not exist yet)."""
    p = path.resolve()
    while not p.exists() and p != p.parent:
        p = p.parent
    return p


def calculate_overall(
    disk: DiskStatus, memory: MemoryStatus, cpu: CpuStatus, thresholds: ResourceThresholds
) -> OverallStatus:
    """Derive the recommended concurrency from one resource sample."""
    if not (disk.sufficient and memory.sufficient and cpu.sufficient):
        reasons = []
        if not disk.sufficient:
            reasons.append("insufficient disk space")
        if not memory.sufficient:
            reasons.append("insufficient memory")
        if not cpu.sufficient:
            reasons.append("high CPU load")
        return OverallStatus(
            can_parallelize=False,
            recommended_concurrency=1,
            reason=f"Resource constraints: {', '.join(reasons)}",
        )

    by_disk = int(disk.available // (thresholds.workspace_size_mb * MB))
    by_memory = int(memory.available // (thresholds.task_memory_mb * MB))
    headroom = thresholds.max_cpu_load_percent - cpu.load_percent
    by_cpu = max(1, int(cpu.cores * headroom // 100))
    limits = {"disk": by_disk, "memory": by_memory, "cpu": by_cpu, "ceiling": thresholds.concurrency_ceiling}

    recommended = min(limits.values())
    if recommended <= 1:
        if by_disk <= 1:
            bottleneck = "disk space"
        elif by_memory <= 1:
            bottleneck = "memory"
        elif by_cpu <= 1:
            bottleneck = "CPU capacity"
        else:
            bottleneck = "resource limits"
        return OverallStatus(
            can_parallelize=False,
            recommended_concurrency=1,
            reason=f"Insufficient {bottleneck} for parallel execution",
            limits=limits,
        )

    return OverallStatus(can_parallelize=True, recommended_concurrency=recommended, limits=limits)


class ResourceMonitor:
    """Samples disk, memory and CPU with psutil. Every call takes a fresh sample."""

    def __init__(self, root: Path, thresholds: ResourceThresholds | None = None) -> None:
        self.root = root
        self.thresholds = thresholds or ResourceThresholds()
        self._last: ResourceStatus | None = None

    def disk_status(self) -> DiskStatus:
        usage = psutil.disk_usage(str(_existing(self.root)))
        sufficient = (
            usage.free >= self.thresholds.min_disk_gb * GB
            and usage.percent <= self.thresholds.max_disk_usage_percent
        )
        return DiskStatus(usage.free, usage.total, float(usage.percent), sufficient)

    def memory_status(self) -> MemoryStatus:
        vm = psutil.virtual_memory()
        sufficient = (
            vm.available >= self.thresholds.min_memory_gb * GB
            and vm.percent <= self.thresholds.max_memory_usage_percent
        )
        return MemoryStatus(vm.available, vm.total, float(vm.percent), sufficient)

    def cpu_status(self) -> CpuStatus:
        load = psutil.getloadavg()
        cores = psutil.cpu_count() or 1
        load_percent = load[0] / cores * 100
        return CpuStatus(
            load_average=(load[0], load[1], load[2]),
            cores=cores,
            load_percent=load_percent,
            sufficient=load_percent <= self.thresholds.max_cpu_load_percent,
        )

    def status(self) -> ResourceStatus:
        disk = self.disk_status()
        memory = self.memory_status()
        cpu = self.cpu_status()
        overall = calculate_overall(disk, memory, cpu, self.thresholds)
        current = ResourceStatus(disk, memory, cpu, overall)
        self._last = current
        return current

    def poll(self) -> list[str]:
        """Resample and return warnings for resources that became insufficient."""
        previous = self._last
        current = self.status()
        warnings: list[str] = []
        if previous is not None:
            if previous.disk.sufficient and not current.disk.sufficient:
                warnings.append("Disk space running low - consider reducing parallelism")
            if previous.memory.sufficient and not current.memory.sufficient:
                warnings.append("Memory running low - consider reducing parallelism")
            if previous.cpu.sufficient and not current.cpu.sufficient:
                warnings.append("CPU load high - consider reducing parallelism")
        for w in warnings:
            log.warn(w)
        return warnings

    def can_add_workspace(self, current_count: int) -> tuple[bool, str]:
        status = self.status()
        if not status.overall.can_parallelize:
            return False, status.overall.reason or "Resources insufficient for parallelization"
        if current_count >= status.overall.recommended_concurrency:
            return False, (
                f"Maximum recommended concurrency ({status.overall.recommended_concurrency}) reached"
            )
        return True, ""


def format_summary(status: ResourceStatus) -> str:
    def mark(ok: bool) -> str:
        return "✓" if ok else "✗"

    lines = [
        "Resource Status:",
        f"  Disk: {status.disk.available / GB:.1f}GB available "
        f"({status.disk.used_percent:.1f}% used) {mark(status.disk.sufficient)}",
        f"  Memory: {status.memory.available / GB:.1f}GB available "
        f"({status.memory.used_percent:.1f}% used) {mark(status.memory.sufficient)}",
        f"  CPU: {status.cpu.load_percent:.1f}% load ({status.cpu.cores} cores) {mark(status.cpu.sufficient)}",
        f"  Recommended concurrency: {status.overall.recommended_concurrency}",
    ]
    if status.overall.reason:
        lines.append(f"  Note: {status.overall.reason}")
    return "\n".join(lines)
