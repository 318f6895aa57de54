from __future__ import annotations

import os
import resource
import sys
import threading
import time
from dataclasses import dataclass
from typing import List, Optional

from printsentry.models import AgentMetrics

ISSUE_COMMUNICATION = "Communication failure rate elevated"
ISSUE_CENTRAL_UNREACHABLE = "Central service unreachable"


@dataclass
class ProcessStats:
    cpu_percent: float
    memory_mb: float


def memory_usage_mb() -> float:
    """Resident set size of this process in MiB."""
    try:
        with open("/proc/self/statm", "r", encoding="ascii") as f:
            resident_pages = int(f.read().split()[1])
        return resident_pages * os.sysconf("SC_PAGE_SIZE") / (1024 * 1024)
    except (OSError, ValueError, IndexError):
        pass
    # Peak RSS; kilobytes on Linux, bytes on macOS
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
    return peak / divisor


class ProcessSampler:
    """CPU usage of this process between successive samples, as a percentage."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_cpu = time.process_time()
        self._last_wall = time.monotonic()

    def sample(self) -> ProcessStats:
        with self._lock:
            cpu = time.process_time()
            wall = time.monotonic()
            elapsed = wall - self._last_wall
            used = cpu - self._last_cpu
            self._last_cpu, self._last_wall = cpu, wall
        percent = (used / elapsed * 100.0) if elapsed > 0 else 0.0
        return ProcessStats(cpu_percent=round(max(percent, 0.0), 2), memory_mb=round(memory_usage_mb(), 2))


def derive_issues(
    metrics: AgentMetrics,
    offline: int,
    errors: int,
    latency_ms: Optional[float] = None,
) -> List[str]:
    issues = []
    if metrics.failed_communications > metrics.successful_communications:
        issues.append(ISSUE_COMMUNICATION)
    if offline > 0:
        issues.append(f"{offline} devices offline")
    if errors > 0:
        issues.append(f"{errors} devices reporting errors")
    if latency_ms is not None and latency_ms < 0:
        issues.append(ISSUE_CENTRAL_UNREACHABLE)
    return issues
