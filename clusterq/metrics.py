"""CPU and memory load figures read from the Linux proc filesystem."""

from __future__ import annotations

from pathlib import Path

DEFAULT_STAT_PATH = "/proc/stat"
DEFAULT_MEMINFO_PATH = "/proc/meminfo"

_CPU_FIELDS = 8
_MEMORY_FIELDS = ("MemTotal:", "MemFree:", "Buffers:", "Cached:", "SReclaimable:")


def _cpu_counters(stat_line: str) -> list[int]:
    """Return the eight counters of a ``cpu`` line; missing or bad ones read as 0."""
    values = []
    for word in stat_line.split()[1 : _CPU_FIELDS + 1]:
        try:
            values.append(int(word))
        except ValueError:
            break
    return values + [0] * (_CPU_FIELDS - len(values))


class CpuSampler:
    """Turns successive ``cpu`` lines of the stat file into usage percentages."""

    def __init__(self) -> None:
        self.prev_total = 0
        self.prev_idle = 0

    def sample(self, stat_line: str) -> float:
        """Return the CPU usage since the previous sample, in percent."""
        user, nice, system, idle, iowait, irq, softirq, steal = _cpu_counters(stat_line)
        idle_time = idle + iowait
        non_idle = user + nice + system + irq + softirq + steal
        total = idle_time + non_idle
        total_diff = total - self.prev_total
        idle_diff = idle_time - self.prev_idle
        self.prev_total = total
        self.prev_idle = idle_time
        if total_diff == 0:
            return 0.0
        return 100.0 * (total_diff - idle_diff) / total_diff


def read_cpu_line(path: str | Path = DEFAULT_STAT_PATH) -> str:
    """Return the first line of the stat file, or an empty string if it is unreadable."""
    try:
        with open(path, encoding="utf-8") as handle:
            return handle.readline().rstrip("\n")
    except OSError:
        return ""


def _kilobytes(line: str) -> int:
    words = line.split()
    if len(words) < 2:
        return 0
    try:
        return int(words[1])
    except ValueError:
        return 0


def memory_usage(meminfo_text: str) -> float:
    """Return the share of memory in use, in percent, from meminfo contents.

    Free, buffer, page-cache and reclaimable slab memory count as unused.
    """
    fields = dict.fromkeys(_MEMORY_FIELDS, 0)
    for line in meminfo_text.splitlines():
        for key in _MEMORY_FIELDS:
            if line.startswith(key):
                fields[key] = _kilobytes(line)
                break
    total = fields["MemTotal:"]
    if total == 0:
        return 0.0
    unused = sum(value for key, value in fields.items() if key != "MemTotal:")
    used = max(total - unused, 0)
    return used / total * 100.0


def read_memory_usage(path: str | Path = DEFAULT_MEMINFO_PATH) -> float:
    """Return the memory usage from a meminfo file; 0.0 if it is unreadable."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError:
        return 0.0
    return memory_usage(text)


def format_usage_report(cpu: float, mem: float) -> str:
    """Render the two usage lines a node sends to the manager."""
    return f"CPU_USAGE {cpu:g}\nMEM_USAGE {mem:g}\n"