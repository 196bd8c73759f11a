"""
Statistics helpers for backplane.

Pure functions shared by the runtime adapter, the store and the renderer:

  - cpu_percent / network_totals / sample_from_raw: turn a raw docker
    stats payload into a StatsSample
  - counter_rate: bytes/s from two readings of a monotonic counter
  - sparkline: unicode sparkline for the CPU/MEM history columns
  - format_bytes / format_rate: human readable sizes
  - vram_for: per-container GPU memory lookup by full or short id
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .model import StatsSample

logger = logging.getLogger(__name__)

SPARK_CHARS = "▁▂▃▄▅▆▇█"


def cpu_percent(stats: Dict[str, Any]) -> float:
    """CPU usage in percent of one core, like `docker stats`."""
    cpu_stats = stats.get('cpu_stats', {}) or {}
    precpu_stats = stats.get('precpu_stats', {}) or {}
    cpu_usage = cpu_stats.get('cpu_usage', {}).get('total_usage', 0)
    precpu_usage = precpu_stats.get('cpu_usage', {}).get('total_usage', 0)
    system_cpu_usage = cpu_stats.get('system_cpu_usage', 0) or 0
    presystem_cpu_usage = precpu_stats.get('system_cpu_usage', 0) or 0
    online_cpus = cpu_stats.get('online_cpus') or len(cpu_stats.get('cpu_usage', {}).get('percpu_usage') or []) or 1
    cpu_delta = cpu_usage - precpu_usage
    system_delta = system_cpu_usage - presystem_cpu_usage
    if system_delta > 0 and cpu_delta > 0:
        return (cpu_delta / system_delta) * online_cpus * 100.0
    return 0.0


def network_totals(stats: Dict[str, Any]) -> Tuple[int, int]:
    """RX/TX byte counters summed across all interfaces."""
    rx_total = 0
    tx_total = 0
    for iface in (stats.get('networks') or {}).values():
        rx_total += int(iface.get('rx_bytes', 0) or 0)
        tx_total += int(iface.get('tx_bytes', 0) or 0)
    return rx_total, tx_total


def sample_from_raw(stats: Dict[str, Any], timestamp: float) -> StatsSample:
    memory = stats.get('memory_stats', {}) or {}
    rx, tx = network_totals(stats)
    return StatsSample(
        cpu_percent=cpu_percent(stats),
        memory_used=int(memory.get('usage', 0) or 0),
        memory_limit=int(memory.get('limit', 0) or 0),
        rx_bytes=rx,
        tx_bytes=tx,
        timestamp=timestamp,
    )


def counter_rate(previous: int, current: int, elapsed: float) -> float:
    """Rate of a monotonic counter. A reset (current < previous) yields 0."""
    if elapsed <= 0 or current < previous:
        return 0.0
    return (current - previous) / elapsed


def sparkline(values: Iterable[float], width: int = 10) -> str:
    """Percent sparkline, newest value last, left padded to ``width``."""
    window: List[float] = list(values)[-width:] if width > 0 else []
    if not window:
        return " " * width
    top = min(max(max(window), 1.0), 100.0)
    chars = []
    for value in window:
        normalized = min(max(value, 0.0) / top, 1.0)
        chars.append(SPARK_CHARS[min(round(normalized * (len(SPARK_CHARS) - 1)), len(SPARK_CHARS) - 1)])
    return " " * (width - len(chars)) + "".join(chars)


def format_bytes(num: Optional[float], suffix: str = "B") -> str:
    if num is None:
        return "--"
    for unit in ("", "K", "M", "G", "T"):
        if abs(num) < 1024.0:
            return f"{num:.1f}{unit}{suffix}" if unit else f"{num:.0f}{suffix}"
        num /= 1024.0
    return f"{num:.1f}P{suffix}"


def format_rate(rate: Optional[float]) -> str:
    if rate is None:
        return "--"
    return f"{format_bytes(rate)}/s"


def vram_for(usage: Dict[str, float], container_id: str) -> Optional[float]:
    """VRAM (MB) of a container; ids from cgroups may be full or short."""
    if container_id in usage:
        return usage[container_id]
    for cid, mb in usage.items():
        if cid and (cid.startswith(container_id) or container_id.startswith(cid)):
            return mb
    return None
