"""Host-wide metrics: CPU, memory, local disks and GPU memory (total and per container)."""

import logging
import re
import subprocess
import time
from typing import Dict, Optional, Tuple

import psutil

from .model import HostMetrics

logger = logging.getLogger(__name__)

REAL_FILESYSTEMS = {"ext2", "ext3", "ext4", "xfs", "btrfs", "ntfs", "vfat", "f2fs", "zfs", "apfs"}
EXCLUDED_MOUNT_PREFIXES = ("/snap", "/boot")
_CGROUP_PATTERNS = (
    re.compile(r"/docker/([0-9a-f]{12,64})"),
    re.compile(r"docker-([0-9a-f]{12,64})\.scope"),
    re.compile(r"/containerd/([0-9a-f]{12,64})"),
)


def disk_usage() -> Tuple[int, int]:
    """(used, total) bytes summed over real local file systems."""
    used = total = 0
    seen = set()
    for part in psutil.disk_partitions(all=False):
        if part.fstype.lower() not in REAL_FILESYSTEMS:
            continue
        if part.mountpoint.startswith(EXCLUDED_MOUNT_PREFIXES):
            continue
        # Same device mounted twice (bind mounts) counts once
        if part.device in seen:
            continue
        seen.add(part.device)
        try:
            usage = psutil.disk_usage(part.mountpoint)
        except (PermissionError, OSError) as e:
            logger.debug(f"Skipping {part.mountpoint}: {e}")
            continue
        used += usage.used
        total += usage.total
    return used, total


def gpu_memory_percent() -> Optional[float]:
    """VRAM usage of the first GPU via nvidia-smi, None when unavailable."""
    try:
        result = subprocess.run(
            ["nvidia-smi", "--query-gpu=memory.used,memory.total", "--format=csv,noheader,nounits"],
            capture_output=True, text=True, timeout=2, check=False,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired, OSError):
        return None
    if result.returncode != 0 or not result.stdout.strip():
        return None
    parts = [p.strip() for p in result.stdout.splitlines()[0].split(",")]
    try:
        used, total = float(parts[0]), float(parts[1])
    except (IndexError, ValueError):
        return None
    return used / total * 100.0 if total > 0 else None


def container_id_from_cgroup(path: str) -> Optional[str]:
    """Container id from a cgroup path (/docker/<id>, docker-<id>.scope, /containerd/<id>)."""
    for pattern in _CGROUP_PATTERNS:
        match = pattern.search(path)
        if match:
            return match.group(1)
    return None


def _pid_container(pid: int) -> Optional[str]:
    try:
        with open(f"/proc/{pid}/cgroup") as f:
            lines = f.read().splitlines()
    except OSError:
        return None
    # cgroup v2 ("0::/path") first, then any v1 controller ("N:ctrl:/path")
    lines.sort(key=lambda line: not line.startswith("0::"))
    for line in lines:
        parts = line.split(":", 2)
        if len(parts) == 3:
            cid = container_id_from_cgroup(parts[2])
            if cid:
                return cid
    return None


def container_gpu_memory() -> Dict[str, float]:
    """VRAM in MB per container id, from nvidia-smi compute processes."""
    try:
        result = subprocess.run(
            ["nvidia-smi", "--query-compute-apps=pid,used_memory", "--format=csv,noheader,nounits"],
            capture_output=True, text=True, timeout=2, check=False,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired, OSError):
        return {}
    if result.returncode != 0:
        return {}
    usage: Dict[str, float] = {}
    for line in result.stdout.splitlines():
        parts = [p.strip() for p in line.split(",")]
        try:
            pid, mb = int(parts[0]), float(parts[1])
        except (IndexError, ValueError):
            continue
        cid = _pid_container(pid)
        if cid:
            usage[cid] = usage.get(cid, 0.0) + mb
    return usage


def collect_host_metrics() -> HostMetrics:
    memory = psutil.virtual_memory()
    disk_used, disk_total = disk_usage()
    return HostMetrics(
        # Non-blocking: compares against the previous call
        cpu_percent=psutil.cpu_percent(interval=None),
        memory_used=memory.total - memory.available,
        memory_total=memory.total,
        disk_used=disk_used,
        disk_total=disk_total,
        gpu_memory_percent=gpu_memory_percent(),
        timestamp=time.monotonic(),
    )
